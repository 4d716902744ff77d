"""Repository layer for database operations."""

import logging
import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from queuectl.claim import claim_next
from queuectl.config import ConfigManager
from queuectl.errors import InvalidState, NotFound, ValidationError
from queuectl.jobstate import JobState, Processing, flatten, state_of
from queuectl.models import JOB_STATES, WORKER_STATUSES, Job, Worker
from queuectl.policy import settle, settle_fault
from queuectl.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class JobRepository:
    """Job Store: every read and write of a job goes through here."""

    def __init__(self, session: Session):
        """Initialize repository.

        Args:
            session: Database session.
        """
        self.session = session
        self.config = ConfigManager(session)

    def create_job(
        self,
        command: str,
        job_id: str | None = None,
        priority: int = 0,
        run_at: datetime | str | None = None,
        max_retries: int | None = None,
    ) -> Job:
        """Validate and persist a new pending job.

        Args:
            command: Shell command to execute.
            job_id: Optional job ID (UUID4 generated if None).
            priority: Higher claims first.
            run_at: Earliest claim time; None means immediately.
            max_retries: Retry ceiling; defaults to the ``max_retries`` config key.

        Returns:
            Created job.

        Raises:
            ValidationError: If a field is invalid or the ID already exists.
        """
        if not isinstance(command, str) or not command.strip():
            raise ValidationError("Job requires a non-empty 'command'")
        if job_id is not None and (not isinstance(job_id, str) or not job_id.strip()):
            raise ValidationError("Job 'id' must be a non-empty string")
        if not _is_int(priority):
            raise ValidationError(f"Job 'priority' must be an integer, got {priority!r}")
        if max_retries is not None and (not _is_int(max_retries) or max_retries < 0):
            raise ValidationError(f"Job 'max_retries' must be a non-negative integer, got {max_retries!r}")
        try:
            run_at = ensure_utc(run_at)
        except (AttributeError, TypeError, ValueError) as e:
            raise ValidationError(f"Job 'run_at' is not an ISO-8601 timestamp: {run_at!r}") from e

        if job_id is None:
            job_id = str(uuid.uuid4())

        if self.session.get(Job, job_id):
            self.session.rollback()
            raise ValidationError(f"Job with ID '{job_id}' already exists", job_id)

        if max_retries is None:
            max_retries = self.config.snapshot()["max_retries"]

        now = utcnow()
        job = Job(
            id=job_id,
            command=command,
            state="pending",
            attempts=0,
            max_retries=max_retries,
            priority=priority,
            run_at=run_at,
            created_at=now,
            updated_at=now,
        )

        self.session.add(job)
        self.session.commit()
        logger.info("Enqueued job %s (priority=%s, max_retries=%s)", job.id, priority, max_retries)

        return job

    def enqueue(self, payload: Any) -> Job:
        """Create a job from a submission payload.

        Payload keys: ``id``, ``command`` (required), ``max_retries``,
        ``priority``, ``run_at``. Other keys are ignored.

        Raises:
            ValidationError: If the payload is not an object or is invalid.
        """
        if not isinstance(payload, dict):
            raise ValidationError(f"Job payload must be a JSON object, got {type(payload).__name__}")
        if "command" not in payload:
            raise ValidationError("Job requires a 'command' field")

        return self.create_job(
            command=payload["command"],
            job_id=payload.get("id"),
            priority=0 if payload.get("priority") is None else payload["priority"],
            run_at=payload.get("run_at"),
            max_retries=payload.get("max_retries"),
        )

    # Claim protocol store operations

    def select_candidate(self, now: datetime) -> Optional[str]:
        stmt = (
            select(Job.id)
            .where(
                Job.state == "pending",
                (Job.run_at.is_(None)) | (Job.run_at <= now),
            )
            .order_by(Job.priority.desc(), Job.created_at.asc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def mark_processing(self, job_id: str, worker_id: str, now: datetime) -> bool:
        values = flatten(Processing(worker_id=worker_id))
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.state == "pending")
            .values(updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def claim_job(self, worker_id: str) -> Optional[Job]:
        """Atomically claim the next eligible job for a worker.

        Selection and the conditional update run in one transaction.

        Args:
            worker_id: ID of the worker claiming the job.

        Returns:
            Claimed job or None if nothing is eligible.
        """
        job_id = claim_next(self, worker_id, utcnow())
        if job_id is None:
            self.session.rollback()
            return None

        job = self.session.get(Job, job_id, populate_existing=True)
        self.session.commit()
        logger.info("Worker %s claimed job %s", worker_id, job_id)
        return job

    # Outcomes

    def apply_outcome(self, job_id: str, exit_code: int, stdout: str | None, stderr: str | None) -> Job:
        """Record a finished attempt: completed, retry with backoff, or dead.

        Args:
            job_id: Job ID, which must be processing.
            exit_code: Process exit status.
            stdout: Captured stdout (tail-truncated before storage).
            stderr: Captured stderr (tail-truncated before storage).

        Returns:
            Updated job.

        Raises:
            NotFound: If the job does not exist.
            InvalidState: If the job is not processing.
        """
        job = self._require_processing(job_id)
        base = self.config.snapshot()["backoff_base"]
        attempts, state = settle(job.attempts, job.max_retries, base, exit_code, stdout, stderr)
        return self._transition(job, attempts, state)

    def apply_execution_fault(self, job_id: str, message: str) -> Job:
        """Record an attempt whose command could not be run at all.

        Raises:
            NotFound: If the job does not exist.
            InvalidState: If the job is not processing.
        """
        job = self._require_processing(job_id)
        base = self.config.snapshot()["backoff_base"]
        attempts, state = settle_fault(job.attempts, job.max_retries, base, message)
        return self._transition(job, attempts, state)

    def _require_processing(self, job_id: str) -> Job:
        job = self.require_job(job_id)
        if job.state != "processing":
            self.session.rollback()
            raise InvalidState(f"Job {job_id} is {job.state}, not processing", job_id, job.state)
        return job

    def _transition(self, job: Job, attempts: int, state: JobState) -> Job:
        stmt = (
            update(Job)
            .where(Job.id == job.id, Job.state == "processing")
            .values(attempts=attempts, updated_at=utcnow(), **flatten(state))
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount != 1:
            self.session.rollback()
            raise InvalidState(f"Job {job.id} left processing before it was settled", job.id)

        job = self.session.get(Job, job.id, populate_existing=True)
        self.session.commit()

        if job.state == "dead":
            logger.warning("Job %s moved to DLQ after %d attempts: %s", job.id, job.attempts, job.last_error)
        elif job.state == "pending":
            logger.info("Job %s failed (attempt %d/%d), retry at %s", job.id, job.attempts, job.max_retries, job.run_at)
        else:
            logger.info("Job %s completed", job.id)
        return job

    # Queries

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.session.get(Job, job_id, populate_existing=True)

    def require_job(self, job_id: str) -> Job:
        """Get job by ID or raise ``NotFound``."""
        job = self.get_job(job_id)
        if job is None:
            self.session.rollback()
            raise NotFound(f"No such job: {job_id}", job_id)
        return job

    def get_state(self, job_id: str) -> JobState:
        """Typed state of a job."""
        return state_of(self.require_job(job_id))

    def list_jobs(self, state: str | None = None, limit: int | None = None) -> list[Job]:
        """List jobs, optionally filtered by state.

        A state filter orders by claim order (priority desc, oldest first);
        otherwise newest first.

        Raises:
            ValidationError: If ``state`` is not a job state.
        """
        stmt = select(Job)

        if state:
            if state not in JOB_STATES:
                raise ValidationError(f"Unknown state '{state}' (expected one of {', '.join(JOB_STATES)})")
            stmt = stmt.where(Job.state == state).order_by(Job.priority.desc(), Job.created_at.asc())
        else:
            stmt = stmt.order_by(Job.created_at.desc())

        if limit is not None:
            stmt = stmt.limit(limit)

        return list(self.session.scalars(stmt).all())

    def get_state_counts(self) -> dict[str, int]:
        """Count of jobs in every state, zeros included."""
        counts = dict.fromkeys(JOB_STATES, 0)
        rows = self.session.execute(select(Job.state, func.count(Job.id)).group_by(Job.state))
        for state, count in rows:
            counts[state] = count
        return counts

    # Dead letter queue

    def list_dead(self, limit: int | None = None, order: str = "newest") -> list[Job]:
        """List dead jobs.

        Args:
            limit: Maximum number of jobs to return.
            order: ``newest`` (most recently dead first) or ``priority``.
        """
        stmt = select(Job).where(Job.state == "dead")
        if order == "priority":
            stmt = stmt.order_by(Job.priority.desc(), Job.created_at.asc())
        elif order == "newest":
            stmt = stmt.order_by(Job.updated_at.desc(), Job.created_at.desc())
        else:
            raise ValidationError(f"Unknown DLQ order '{order}'")

        if limit is not None:
            stmt = stmt.limit(limit)

        return list(self.session.scalars(stmt).all())

    def requeue(self, job_id: str) -> Job:
        """Move a dead job back to pending with a fresh attempt budget.

        Raises:
            NotFound: If the job does not exist.
            InvalidState: If the job is not dead. Nothing is modified.
        """
        job = self.require_job(job_id)
        if job.state != "dead":
            self.session.rollback()
            raise InvalidState(f"Job {job_id} is not in the DLQ (state={job.state})", job_id, job.state)

        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.state == "dead")
            .values(
                state="pending",
                attempts=0,
                run_at=None,
                last_error=None,
                last_rc=None,
                stdout=None,
                stderr=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount != 1:
            self.session.rollback()
            raise InvalidState(f"Job {job_id} left the DLQ concurrently", job_id)

        job = self.session.get(Job, job_id, populate_existing=True)
        self.session.commit()
        logger.info("Requeued job %s from DLQ", job_id)
        return job


class WorkerRepository:
    """Repository for the worker registry."""

    def __init__(self, session: Session):
        """Initialize repository.

        Args:
            session: Database session.
        """
        self.session = session

    def register(self, worker_id: str, pid: int = 0, status: str = "starting") -> Worker:
        """Insert or replace a worker row.

        Args:
            worker_id: Unique worker ID.
            pid: OS process ID (0 until known).
            status: Initial status.

        Returns:
            Registered worker.
        """
        self._check_status(status)
        now = utcnow()
        worker = self.session.merge(
            Worker(id=worker_id, pid=pid, status=status, started_at=now, updated_at=now)
        )
        self.session.commit()
        return worker

    def set_status(self, worker_id: str, status: str, pid: int | None = None) -> Worker:
        """Update a worker's status (and pid, when given).

        Raises:
            NotFound: If the worker is not registered.
        """
        self._check_status(status)
        worker = self.session.get(Worker, worker_id, populate_existing=True)
        if worker is None:
            self.session.rollback()
            raise NotFound(f"No such worker: {worker_id}")

        worker.status = status
        if pid is not None:
            worker.pid = pid
        worker.updated_at = utcnow()
        self.session.commit()
        return worker

    def set_pid(self, worker_id: str, pid: int) -> None:
        stmt = (
            update(Worker)
            .where(Worker.id == worker_id)
            .values(pid=pid, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.execute(stmt)
        self.session.commit()

    def transition(self, worker_id: str, from_statuses: Iterable[str], status: str) -> bool:
        """Set ``status`` only if the worker is currently in ``from_statuses``."""
        self._check_status(status)
        stmt = (
            update(Worker)
            .where(Worker.id == worker_id, Worker.status.in_(list(from_statuses)))
            .values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        changed = self.session.execute(stmt).rowcount == 1
        self.session.commit()
        return changed

    def get_worker(self, worker_id: str) -> Optional[Worker]:
        return self.session.get(Worker, worker_id, populate_existing=True)

    def list_workers(self, statuses: Iterable[str] | None = None) -> list[Worker]:
        """Registry snapshot, oldest first, optionally filtered by status."""
        stmt = select(Worker)
        if statuses is not None:
            stmt = stmt.where(Worker.status.in_(list(statuses)))
        stmt = stmt.order_by(Worker.started_at.asc(), Worker.id.asc())
        return list(self.session.scalars(stmt).all())

    @staticmethod
    def _check_status(status: str) -> None:
        if status not in WORKER_STATUSES:
            raise ValidationError(f"Unknown worker status '{status}'")
