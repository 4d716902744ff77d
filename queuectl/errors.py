"""Exception types raised by the queue engine."""


class QueueError(Exception):
    """Base class for queuectl errors."""

    def __init__(self, message: str, job_id: str | None = None):
        """Initialize error.

        Args:
            message: Human-readable description.
            job_id: Job the error refers to, if any.
        """
        self.job_id = job_id
        super().__init__(message)


class ValidationError(QueueError, ValueError):
    """Job payload or config value rejected before anything was persisted."""


class NotFound(QueueError, LookupError):
    """Referenced job, worker or key does not exist."""


class InvalidState(QueueError):
    """Operation requires a state the job is not in."""

    def __init__(self, message: str, job_id: str | None = None, state: str | None = None):
        self.state = state
        super().__init__(message, job_id)


class ExecutionFault(QueueError):
    """The job's command could not be started or observed.

    Never surfaced to queue clients: workers absorb it into job state
    through the same retry path as a non-zero exit.
    """
