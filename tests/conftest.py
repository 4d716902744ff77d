"""Shared fixtures for queuectl tests."""

import pytest

from queuectl.db import dispose_engines, init_db, session_scope
from queuectl.repo import JobRepository


@pytest.fixture(autouse=True)
def log_dir(tmp_path, monkeypatch):
    """Keep worker and CLI logs out of the home directory."""
    path = tmp_path / "logs"
    monkeypatch.setenv("QUEUECTL_LOG_DIR", str(path))
    return path


@pytest.fixture
def temp_db(tmp_path):
    """Create temporary database for testing."""
    db_path = str(tmp_path / "queue.db")

    init_db(db_path)
    yield db_path

    dispose_engines()


@pytest.fixture
def claimed_job(temp_db):
    """Factory: enqueue a job and claim it so its outcome can be applied."""

    def _make(command="false", job_id=None, max_retries=3, worker_id="test-worker"):
        with session_scope(temp_db) as session:
            repo = JobRepository(session)
            repo.create_job(command=command, job_id=job_id, max_retries=max_retries)
            job = repo.claim_job(worker_id)
        assert job is not None
        return job

    return _make
