"""Job executor for running shell commands."""

import subprocess
import time
from dataclasses import dataclass

from queuectl.errors import ExecutionFault


@dataclass
class ExecutionResult:
    """Result of a job execution."""

    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int


def execute_job(command: str) -> ExecutionResult:
    """Run a job command through the platform shell and wait for it.

    There is no timeout: the call returns when the command exits. A child
    killed by a signal reports the negative signal number as exit code.

    Args:
        command: Shell command string.

    Returns:
        Exit code, captured output and wall-clock duration.

    Raises:
        ExecutionFault: If the shell itself could not be started.
    """
    start_time = time.monotonic()

    try:
        result = subprocess.run(
            command,
            shell=True,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            errors="replace",
        )
    except (OSError, ValueError) as e:
        raise ExecutionFault(f"exec error: {e}") from e

    return ExecutionResult(
        exit_code=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
        duration_ms=int((time.monotonic() - start_time) * 1000),
    )
