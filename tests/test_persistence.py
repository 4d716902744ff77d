"""Tests for the persistent schema and data surviving across sessions."""

from datetime import timedelta

import pytest
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import IntegrityError

from queuectl.db import dispose_engines, get_engine, init_db, session_scope
from queuectl.repo import JobRepository, WorkerRepository
from queuectl.utils.time import utcnow


def test_jobs_persist_across_sessions(temp_db):
    with session_scope(temp_db) as session:
        repo = JobRepository(session)
        repo.create_job(command="echo test1", job_id="persist-1")
        repo.create_job(command="echo test2", job_id="persist-2")

    with session_scope(temp_db) as session:
        jobs = JobRepository(session).list_jobs()

        assert {j.id for j in jobs} == {"persist-1", "persist-2"}


def test_database_survives_engine_recreation(temp_db):
    with session_scope(temp_db) as session:
        repo = JobRepository(session)
        for i in range(10):
            repo.create_job(command=f"echo {i}", job_id=f"survive-{i}")

    dispose_engines()
    init_db(temp_db)

    with session_scope(temp_db) as session:
        assert len(JobRepository(session).list_jobs()) == 10


def test_init_db_keeps_existing_config(temp_db):
    from queuectl.config import ConfigManager

    with session_scope(temp_db) as session:
        ConfigManager(session).set("max_retries", 7)

    init_db(temp_db)

    with session_scope(temp_db) as session:
        assert ConfigManager(session).get_int("max_retries") == 7


def test_worker_registry_persists(temp_db):
    with session_scope(temp_db) as session:
        WorkerRepository(session).register("persist-worker-1", pid=123)

    with session_scope(temp_db) as session:
        workers = WorkerRepository(session).list_workers()

        assert [(w.id, w.pid, w.status) for w in workers] == [("persist-worker-1", 123, "starting")]


def test_timestamps_are_utc_aware(temp_db):
    future = utcnow() + timedelta(hours=1)
    with session_scope(temp_db) as session:
        JobRepository(session).create_job(command="echo", job_id="tz", run_at=future)

    with session_scope(temp_db) as session:
        job = JobRepository(session).get_job("tz")

        for value in (job.run_at, job.created_at, job.updated_at):
            assert value.utcoffset() == timedelta(0)
        assert abs((job.run_at - future).total_seconds()) < 1e-3


def test_indexes_created(temp_db):
    inspector = inspect(get_engine(temp_db))

    index_columns = {idx["name"]: idx["column_names"] for idx in inspector.get_indexes("jobs")}

    assert index_columns["idx_jobs_state_run_at"] == ["state", "run_at"]
    assert "idx_jobs_priority_created" in index_columns


def test_job_state_domain_enforced(temp_db):
    with session_scope(temp_db) as session:
        with pytest.raises(IntegrityError):
            session.execute(
                text(
                    "INSERT INTO jobs (id, command, state, attempts, max_retries, priority, created_at, updated_at) "
                    "VALUES ('bad', 'echo', 'sleeping', 0, 3, 0, '2025-01-01', '2025-01-01')"
                )
            )


def test_worker_status_domain_enforced(temp_db):
    with session_scope(temp_db) as session:
        with pytest.raises(IntegrityError):
            session.execute(
                text(
                    "INSERT INTO workers (id, pid, status, started_at, updated_at) "
                    "VALUES ('w', 1, 'zombie', '2025-01-01', '2025-01-01')"
                )
            )


def test_queue_engine_uses_wal_and_immediate_transactions(temp_db):
    with get_engine(temp_db).connect() as conn:
        assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"
        assert conn.connection.dbapi_connection.isolation_level is None


def test_other_engines_are_left_alone(temp_db, tmp_path):
    """Connection setup is scoped to queue engines, not every engine in the process."""
    other = create_engine(f"sqlite:///{tmp_path / 'other.db'}")
    try:
        with other.connect() as conn:
            assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "delete"
            assert conn.connection.dbapi_connection.isolation_level is not None
    finally:
        other.dispose()
