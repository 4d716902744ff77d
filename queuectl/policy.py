"""Retry and backoff policy.

Pure functions: given a job's counters and an attempt's outcome they
compute the next state. Nothing here touches the database.
"""

from datetime import datetime
from typing import Optional

from queuectl.jobstate import Completed, Dead, JobState, Pending
from queuectl.utils.time import seconds_from, utcnow


# Output is tail-truncated to this many characters before storage
MAX_OUTPUT_CHARS = 100_000
# Fault messages are head-truncated to this many characters
MAX_ERROR_CHARS = 500

RETRIES_EXHAUSTED = "retries_exhausted"


def backoff_delay(attempts: int, base: float) -> float:
    """Delay in seconds before retry number ``attempts``.

    Uses ``base ** attempts`` with no cap, so the delay grows without
    bound. A base of 1 gives a constant one second; a base of 0 gives no
    delay at all once ``attempts >= 1``.

    Args:
        attempts: Failed attempts so far (>= 1 on the retry path).
        base: Exponent base from the ``backoff_base`` config key.

    Returns:
        Delay in seconds (``inf`` if it overflows a float).
    """
    try:
        return float(base) ** attempts
    except OverflowError:
        return float("inf")


def next_run_at(attempts: int, base: float, now: datetime | None = None) -> datetime:
    """Earliest time a job may be claimed again after a failure."""
    return seconds_from(now or utcnow(), backoff_delay(attempts, base))


def tail(text: Optional[str], limit: int = MAX_OUTPUT_CHARS) -> Optional[str]:
    """Keep the last ``limit`` characters; empty output is stored as None."""
    if not text:
        return None
    return text[-limit:]


def settle(
    attempts: int,
    max_retries: int,
    base: float,
    exit_code: int,
    stdout: Optional[str],
    stderr: Optional[str],
    now: datetime | None = None,
) -> tuple[int, JobState]:
    """Next attempt count and state after a command ran to completion.

    Args:
        attempts: Attempts recorded before this one.
        max_retries: The job's retry ceiling.
        base: Backoff base read from config at this moment.
        exit_code: Process exit status.
        stdout: Captured standard output.
        stderr: Captured standard error.
        now: Reference time for ``run_at`` (default: current time).

    Returns:
        Tuple of (attempts, state).
    """
    stdout, stderr = tail(stdout), tail(stderr)
    if exit_code == 0:
        return attempts, Completed(rc=0, stdout=stdout, stderr=stderr)

    attempts += 1
    if attempts < max_retries:
        return attempts, Pending(
            run_at=next_run_at(attempts, base, now),
            last_error=f"nonzero exit {exit_code}",
            last_rc=exit_code,
            stdout=stdout,
            stderr=stderr,
        )
    return attempts, Dead(
        last_error=f"{RETRIES_EXHAUSTED} (rc={exit_code})",
        last_rc=exit_code,
        stdout=stdout,
        stderr=stderr,
    )


def settle_fault(
    attempts: int,
    max_retries: int,
    base: float,
    message: str,
    now: datetime | None = None,
) -> tuple[int, JobState]:
    """Next attempt count and state when the command never produced an exit code.

    Same counting and backoff as ``settle``; ``last_rc`` stays unset and
    output fields are cleared.
    """
    message = (message or "execution fault")[:MAX_ERROR_CHARS]
    attempts += 1
    if attempts < max_retries:
        return attempts, Pending(run_at=next_run_at(attempts, base, now), last_error=message)
    return attempts, Dead(last_error=f"{RETRIES_EXHAUSTED} ({message})")
