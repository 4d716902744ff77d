"""Worker process for executing jobs."""

import os
import signal
import time
import uuid
from typing import Optional

from queuectl.config import ConfigManager
from queuectl.db import dispose_engines, session_scope
from queuectl.errors import ExecutionFault, InvalidState, NotFound
from queuectl.executor import execute_job
from queuectl.logging_conf import setup_logging
from queuectl.models import Job
from queuectl.repo import JobRepository, WorkerRepository


class Worker:
    """Claims jobs one at a time, runs them and records the outcome.

    A worker stops when it receives SIGTERM/SIGINT or when the shared
    ``graceful_stop`` flag is raised. Both are checked only between jobs,
    so a claimed job is always carried through to a recorded outcome.
    """

    def __init__(
        self,
        worker_id: str | None = None,
        db_path: str | None = None,
        handle_signals: bool = True,
    ):
        """Initialize worker.

        Args:
            worker_id: Unique worker ID (generated if None).
            db_path: Optional database path.
            handle_signals: Install SIGTERM/SIGINT handlers (main thread only).
        """
        self.worker_id = worker_id or str(uuid.uuid4())
        self.db_path = db_path
        self.running = True
        self.logger = setup_logging(self.worker_id)

        if handle_signals:
            if os.name == "nt":
                # Windows only delivers SIGINT and SIGBREAK
                signal.signal(signal.SIGINT, self._handle_shutdown)
                if hasattr(signal, "SIGBREAK"):
                    signal.signal(signal.SIGBREAK, self._handle_shutdown)
            else:
                signal.signal(signal.SIGTERM, self._handle_shutdown)
                signal.signal(signal.SIGINT, self._handle_shutdown)

        self.logger.info(f"Worker {self.worker_id} initialized")

    def _handle_shutdown(self, signum, frame):
        """Record a local stop request; the loop exits after the current job."""
        self.logger.info(f"Received signal {signum}, stopping after current job")
        self.running = False

    def run(self) -> None:
        """Main loop: mark running, claim/execute/settle until told to stop."""
        self.logger.info(f"Worker {self.worker_id} starting (pid {os.getpid()})")
        self._mark_running()

        try:
            while not self.should_stop():
                if not self.run_once():
                    time.sleep(self._poll_interval())
        finally:
            self.logger.info(f"Worker {self.worker_id} shutting down")
            with session_scope(self.db_path) as session:
                WorkerRepository(session).set_status(self.worker_id, "stopped")
            dispose_engines()

    def should_stop(self) -> bool:
        """Local signal or the shared ``graceful_stop`` flag, re-read every time."""
        if not self.running:
            return True
        with session_scope(self.db_path) as session:
            if ConfigManager(session).stop_requested():
                self.logger.info("graceful_stop is set")
                return True
        return False

    def run_once(self) -> bool:
        """Claim and process at most one job.

        Returns:
            True if a job was processed, False if none was eligible.
        """
        job = self._claim_job()
        if job is None:
            return False
        self._process_job(job)
        return True

    def _mark_running(self) -> None:
        with session_scope(self.db_path) as session:
            workers = WorkerRepository(session)
            try:
                workers.set_status(self.worker_id, "running", pid=os.getpid())
            except NotFound:
                # Launched directly rather than through the supervisor
                workers.register(self.worker_id, pid=os.getpid(), status="running")

    def _poll_interval(self) -> float:
        with session_scope(self.db_path) as session:
            return ConfigManager(session).snapshot()["poll_interval_sec"]

    def _claim_job(self) -> Optional[Job]:
        with session_scope(self.db_path) as session:
            job = JobRepository(session).claim_job(self.worker_id)

        if job:
            self.logger.info(f"Claimed job {job.id}")
        return job

    def _process_job(self, job: Job) -> None:
        """Execute a claimed job and record the outcome.

        Job failures never escape: a non-zero exit or a command that cannot
        start becomes job state, and the loop carries on.
        """
        self.logger.info(f"Processing job {job.id}: {job.command}")

        try:
            result = execute_job(job.command)
        except ExecutionFault as e:
            self.logger.error(f"Job {job.id} could not be executed: {e}")
            self._settle(job.id, fault=str(e))
            return

        if result.exit_code == 0:
            self.logger.info(f"Job {job.id} completed successfully in {result.duration_ms}ms")
        else:
            self.logger.warning(f"Job {job.id} failed with exit code {result.exit_code}")
        self._settle(job.id, result=(result.exit_code, result.stdout, result.stderr))

    def _settle(self, job_id: str, result: tuple | None = None, fault: str | None = None) -> None:
        try:
            with session_scope(self.db_path) as session:
                repo = JobRepository(session)
                if result is not None:
                    repo.apply_outcome(job_id, *result)
                else:
                    repo.apply_execution_fault(job_id, fault)
        except (InvalidState, NotFound) as e:
            self.logger.error(f"Could not record outcome of job {job_id}: {e}")


def run_worker(worker_id: str | None = None, db_path: str | None = None) -> None:
    """Run a worker process.

    Args:
        worker_id: Optional worker ID.
        db_path: Optional database path.
    """
    worker = Worker(worker_id, db_path)
    worker.run()
