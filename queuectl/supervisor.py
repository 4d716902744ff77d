"""Supervisor for starting and stopping worker processes."""

import logging
import os
import signal
import subprocess
import sys
import uuid
from pathlib import Path
from typing import Protocol, runtime_checkable

from queuectl.config import ConfigManager
from queuectl.db import resolve_db_path, session_scope
from queuectl.errors import ValidationError
from queuectl.repo import WorkerRepository
from queuectl.utils.time import to_iso

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("starting", "running")


@runtime_checkable
class ProcessLauncher(Protocol):
    """Starts and signals worker processes on behalf of the supervisor."""

    def spawn(self, worker_id: str, db_path: str) -> int:
        """Start a detached worker process bound to ``worker_id`` and ``db_path``.

        Returns:
            OS process ID.
        """
        ...

    def terminate(self, pid: int) -> bool:
        """Ask a worker process to stop.

        Returns:
            False if the process no longer exists or cannot be signalled.
        """
        ...


class SubprocessLauncher(ProcessLauncher):
    """Runs each worker as ``python -m queuectl.cli worker run`` in its own session."""

    def __init__(self):
        # Popen handles by pid, so exited children can be reaped
        self.processes: dict[int, subprocess.Popen] = {}

    def spawn(self, worker_id: str, db_path: str) -> int:
        args = [
            sys.executable, "-m", "queuectl.cli",
            "worker", "run", "--id", worker_id, "--db-path", db_path,
        ]
        kwargs = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
            "close_fds": True,
        }
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # Detach from our session so workers outlive the starting command
            kwargs["start_new_session"] = True

        process = subprocess.Popen(args, **kwargs)
        self.processes[process.pid] = process
        return process.pid

    def terminate(self, pid: int) -> bool:
        process = self.processes.get(pid)
        if process is not None and process.poll() is not None:
            del self.processes[pid]
            return False

        if os.name == "nt":
            result = subprocess.run(
                ["taskkill", "/PID", str(pid), "/T"],
                capture_output=True,
                check=False,
            )
            return result.returncode == 0

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return False
        except PermissionError:
            logger.warning("Permission denied signalling worker pid %s", pid)
            return False
        return True


class Supervisor:
    """Manages the worker pool through the shared registry."""

    def __init__(self, db_path: str | Path | None = None, launcher: ProcessLauncher | None = None):
        """Initialize supervisor.

        Args:
            db_path: Optional database path.
            launcher: Process launcher (default: ``SubprocessLauncher``).
        """
        self.db_path = str(resolve_db_path(db_path))
        self.launcher = launcher or SubprocessLauncher()

    def start_workers(self, count: int) -> list[tuple[str, int]]:
        """Start ``count`` detached worker processes.

        Clears ``graceful_stop`` first so a stopped pool can be restarted.
        Each worker is registered as ``starting`` before its process exists
        and marked ``running`` once its pid is known.

        Args:
            count: Number of workers to start.

        Returns:
            List of (worker_id, pid).

        Raises:
            ValidationError: If ``count`` is less than 1.
        """
        if count < 1:
            raise ValidationError("Worker count must be >= 1")

        with session_scope(self.db_path) as session:
            ConfigManager(session).clear_stop()

        started = []
        for _ in range(count):
            worker_id = str(uuid.uuid4())

            with session_scope(self.db_path) as session:
                WorkerRepository(session).register(worker_id, pid=0, status="starting")

            try:
                pid = self.launcher.spawn(worker_id, self.db_path)
            except OSError:
                with session_scope(self.db_path) as session:
                    WorkerRepository(session).set_status(worker_id, "stopped")
                logger.exception("Failed to start worker %s", worker_id)
                raise

            with session_scope(self.db_path) as session:
                workers = WorkerRepository(session)
                workers.set_pid(worker_id, pid)
                # The worker may already have moved itself past starting
                workers.transition(worker_id, ["starting"], "running")

            logger.info("Started worker %s (pid %s)", worker_id, pid)
            started.append((worker_id, pid))

        return started

    def stop_workers(self) -> int:
        """Raise ``graceful_stop`` and signal every starting or running worker.

        Does not wait: workers exit after their current job. A worker whose
        process is already gone is marked stopped.

        Returns:
            Number of workers signalled.
        """
        with session_scope(self.db_path) as session:
            ConfigManager(session).request_stop()
            targets = [(w.id, w.pid) for w in WorkerRepository(session).list_workers(ACTIVE_STATUSES)]

        signalled = 0
        for worker_id, pid in targets:
            # pid 0 means the process was never recorded; never signal our own group
            delivered = pid > 0 and self.launcher.terminate(pid)

            with session_scope(self.db_path) as session:
                workers = WorkerRepository(session)
                if delivered:
                    signalled += 1
                    workers.transition(worker_id, ACTIVE_STATUSES, "stopping")
                    logger.info("Sent stop to worker %s (pid %s)", worker_id, pid)
                else:
                    workers.transition(worker_id, ACTIVE_STATUSES, "stopped")
                    logger.info("Worker %s (pid %s) already gone", worker_id, pid)

        return signalled

    def get_worker_status(self) -> dict:
        """Snapshot of the worker registry."""
        with session_scope(self.db_path) as session:
            workers = WorkerRepository(session).list_workers()
            stop_requested = ConfigManager(session).stop_requested()

        counts: dict[str, int] = {}
        for w in workers:
            counts[w.status] = counts.get(w.status, 0) + 1

        return {
            "graceful_stop": stop_requested,
            "counts": counts,
            "workers": [
                {
                    "id": w.id,
                    "pid": w.pid,
                    "status": w.status,
                    "started_at": to_iso(w.started_at),
                    "updated_at": to_iso(w.updated_at),
                }
                for w in workers
            ],
        }
