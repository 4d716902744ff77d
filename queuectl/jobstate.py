"""Typed view of a job's state.

Storage keeps one flat row per job with nullable columns. In memory each
state is its own variant carrying only the fields that state may have, so
illegal combinations (a completed job with a pending ``run_at``, a dead
job with an owner) cannot be expressed. ``state_of`` and ``flatten``
convert at the storage boundary.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from queuectl.models import Job


@dataclass(frozen=True)
class Pending:
    """Waiting to be claimed. After a failed attempt it keeps that attempt's diagnostics."""

    run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_rc: Optional[int] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None

    name = "pending"


@dataclass(frozen=True)
class Processing:
    worker_id: str

    name = "processing"


@dataclass(frozen=True)
class Completed:
    rc: int
    stdout: Optional[str] = None
    stderr: Optional[str] = None

    name = "completed"


@dataclass(frozen=True)
class Dead:
    last_error: str
    last_rc: Optional[int] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None

    name = "dead"


JobState = Union[Pending, Processing, Completed, Dead]


def state_of(job: Job) -> JobState:
    """Rebuild the typed state from a stored row.

    Raises:
        ValueError: If the row is in a state that is never at rest.
    """
    if job.state == "pending":
        return Pending(
            run_at=job.run_at,
            last_error=job.last_error,
            last_rc=job.last_rc,
            stdout=job.stdout,
            stderr=job.stderr,
        )
    if job.state == "processing":
        return Processing(worker_id=job.worker_id or "")
    if job.state == "completed":
        return Completed(rc=job.last_rc if job.last_rc is not None else 0, stdout=job.stdout, stderr=job.stderr)
    if job.state == "dead":
        return Dead(
            last_error=job.last_error or "",
            last_rc=job.last_rc,
            stdout=job.stdout,
            stderr=job.stderr,
        )
    raise ValueError(f"Job {job.id} has no resting state (state={job.state})")


def flatten(state: JobState) -> dict[str, Any]:
    """Column values to write for a state.

    ``worker_id`` is only written on claim; later states leave it as a trace.
    """
    if isinstance(state, Pending):
        return {
            "state": state.name,
            "run_at": state.run_at,
            "last_error": state.last_error,
            "last_rc": state.last_rc,
            "stdout": state.stdout,
            "stderr": state.stderr,
        }
    if isinstance(state, Processing):
        return {"state": state.name, "worker_id": state.worker_id}
    if isinstance(state, Completed):
        return {
            "state": state.name,
            "run_at": None,
            "last_error": None,
            "last_rc": state.rc,
            "stdout": state.stdout,
            "stderr": state.stderr,
        }
    if isinstance(state, Dead):
        return {
            "state": state.name,
            "run_at": None,
            "last_error": state.last_error,
            "last_rc": state.last_rc,
            "stdout": state.stdout,
            "stderr": state.stderr,
        }
    raise TypeError(f"Unknown job state {state!r}")
