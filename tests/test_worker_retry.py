"""Tests for applying execution outcomes: completion, retry with backoff, DLQ."""

from datetime import timedelta

import pytest

from queuectl.config import ConfigManager
from queuectl.db import session_scope
from queuectl.errors import InvalidState, NotFound
from queuectl.jobstate import Completed, Dead, Pending, Processing
from queuectl.policy import MAX_OUTPUT_CHARS
from queuectl.repo import JobRepository
from queuectl.utils.time import utcnow


def test_successful_job_completes(temp_db, claimed_job):
    job = claimed_job(command="echo ok", job_id="ok", max_retries=3)

    with session_scope(temp_db) as session:
        repo = JobRepository(session)
        repo.apply_outcome(job.id, 0, "ok\n", "")

        updated = repo.get_job(job.id)

        assert updated.state == "completed"
        assert updated.attempts == 0
        assert updated.last_rc == 0
        assert updated.stdout == "ok\n"
        assert updated.stderr is None
        assert updated.worker_id == "test-worker"
        assert repo.get_state(job.id) == Completed(rc=0, stdout="ok\n", stderr=None)


def test_failed_job_is_repended_with_backoff(temp_db, claimed_job):
    job = claimed_job(job_id="retry", max_retries=3)

    with session_scope(temp_db) as session:
        repo = JobRepository(session)
        before = utcnow()
        repo.apply_outcome(job.id, 1, "", "error")

        updated = repo.get_job(job.id)

        assert updated.state == "pending"
        assert updated.attempts == 1
        assert updated.last_rc == 1
        assert updated.last_error == "nonzero exit 1"
        assert updated.stderr == "error"
        # backoff_base defaults to 2 -> 2**1 seconds
        assert updated.run_at >= before + timedelta(seconds=2)
        assert updated.run_at <= utcnow() + timedelta(seconds=2)


def test_backoff_base_read_at_settle_time(temp_db, claimed_job):
    job = claimed_job(job_id="base", max_retries=3)

    with session_scope(temp_db) as session:
        ConfigManager(session).set("backoff_base", 10)
        repo = JobRepository(session)
        before = utcnow()
        repo.apply_outcome(job.id, 1, "", "")

        assert repo.get_job(job.id).run_at >= before + timedelta(seconds=10)


def test_backoff_base_zero_makes_retry_immediate(temp_db, claimed_job):
    job = claimed_job(job_id="zero", max_retries=3)

    with session_scope(temp_db) as session:
        ConfigManager(session).set("backoff_base", 0)
        repo = JobRepository(session)
        repo.apply_outcome(job.id, 1, "", "")

        again = repo.claim_job("test-worker")

        assert again is not None
        assert again.id == job.id


def test_retry_then_dead_sequence(temp_db):
    """pending -> processing -> pending(attempts=1) -> processing -> dead(attempts=2)."""
    seen = []
    with session_scope(temp_db) as session:
        ConfigManager(session).set("backoff_base", 0)
        repo = JobRepository(session)
        repo.create_job(command="exit 1", job_id="seq", max_retries=2)
        seen.append((repo.get_job("seq").state, 0))

        for _ in range(2):
            job = repo.claim_job("w")
            seen.append((job.state, job.attempts))
            job = repo.apply_outcome("seq", 1, "", "")
            seen.append((job.state, job.attempts))

    assert seen == [
        ("pending", 0),
        ("processing", 0),
        ("pending", 1),
        ("processing", 1),
        ("dead", 2),
    ]


def test_job_moves_to_dlq_after_max_retries(temp_db):
    with session_scope(temp_db) as session:
        ConfigManager(session).set("backoff_base", 0)
        repo = JobRepository(session)
        repo.create_job(command="false", job_id="dlq", max_retries=3)

        for _ in range(3):
            repo.claim_job("w")
            repo.apply_outcome("dlq", 2, "", "bad")

        dead = repo.get_job("dlq")

        assert dead.state == "dead"
        assert dead.attempts == 3
        assert dead.attempts >= dead.max_retries
        assert dead.last_rc == 2
        assert dead.last_error == "retries_exhausted (rc=2)"
        assert isinstance(repo.get_state("dlq"), Dead)
        # Never auto-transitioned again
        assert repo.claim_job("w") is None


def test_attempts_never_decrease(temp_db):
    history = []
    with session_scope(temp_db) as session:
        ConfigManager(session).set("backoff_base", 0)
        repo = JobRepository(session)
        repo.create_job(command="flaky", job_id="mono", max_retries=4)

        for rc in (1, 1, 0):
            repo.claim_job("w")
            history.append(repo.apply_outcome("mono", rc, "", "").attempts)

    assert history == [1, 2, 2]


def test_execution_fault_follows_retry_path(temp_db, claimed_job):
    job = claimed_job(job_id="fault", max_retries=2)

    with session_scope(temp_db) as session:
        repo = JobRepository(session)
        repo.apply_execution_fault(job.id, "exec error: " + "y" * 1000)

        updated = repo.get_job(job.id)

        assert updated.state == "pending"
        assert updated.attempts == 1
        assert updated.last_rc is None
        assert len(updated.last_error) == 500
        assert isinstance(repo.get_state(job.id), Pending)


def test_execution_fault_exhausts_to_dead(temp_db, claimed_job):
    job = claimed_job(job_id="fault-dead", max_retries=1)

    with session_scope(temp_db) as session:
        repo = JobRepository(session)
        updated = repo.apply_execution_fault(job.id, "cannot start shell")

        assert updated.state == "dead"
        assert updated.attempts == 1
        assert updated.last_rc is None
        assert updated.last_error == "retries_exhausted (cannot start shell)"


def test_outcome_refused_unless_processing(temp_db):
    with session_scope(temp_db) as session:
        repo = JobRepository(session)
        repo.create_job(command="echo", job_id="idle")

        with pytest.raises(InvalidState):
            repo.apply_outcome("idle", 0, "", "")
        with pytest.raises(InvalidState):
            repo.apply_execution_fault("idle", "boom")

        job = repo.get_job("idle")
        assert job.state == "pending"
        assert job.attempts == 0


def test_outcome_applied_once(temp_db, claimed_job):
    job = claimed_job(job_id="once")

    with session_scope(temp_db) as session:
        repo = JobRepository(session)
        repo.apply_outcome(job.id, 0, "", "")

        with pytest.raises(InvalidState):
            repo.apply_outcome(job.id, 1, "", "")

        assert repo.get_job(job.id).state == "completed"


def test_outcome_for_missing_job(temp_db):
    with session_scope(temp_db) as session:
        with pytest.raises(NotFound):
            JobRepository(session).apply_outcome("ghost", 0, "", "")


def test_output_truncation_keeps_tail(temp_db, claimed_job):
    job = claimed_job(command="echo big", job_id="big")
    large_output = "head" + "x" * MAX_OUTPUT_CHARS

    with session_scope(temp_db) as session:
        repo = JobRepository(session)
        repo.apply_outcome(job.id, 0, large_output, large_output)

        updated = repo.get_job(job.id)

        assert len(updated.stdout) == MAX_OUTPUT_CHARS
        assert len(updated.stderr) == MAX_OUTPUT_CHARS
        assert not updated.stdout.startswith("head")


def test_claimed_job_state_is_processing(temp_db, claimed_job):
    job = claimed_job(job_id="proc")

    with session_scope(temp_db) as session:
        assert JobRepository(session).get_state(job.id) == Processing(worker_id="test-worker")
