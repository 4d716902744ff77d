"""Tests for the command-line surface."""

import json

import pytest
from typer.testing import CliRunner

from queuectl.cli import app
from queuectl.db import session_scope
from queuectl.repo import JobRepository


@pytest.fixture
def runner():
    return CliRunner()


def invoke(runner, temp_db, *args):
    return runner.invoke(app, [*args, "--db-path", temp_db])


def _kill(temp_db, job_id):
    with session_scope(temp_db) as session:
        repo = JobRepository(session)
        repo.create_job(command="false", job_id=job_id, max_retries=1)
        repo.claim_job("w")
        repo.apply_outcome(job_id, 1, "", "")


def test_enqueue_inline_json(runner, temp_db):
    result = invoke(runner, temp_db, "enqueue", '{"id": "cli-1", "command": "echo hi"}')

    assert result.exit_code == 0
    assert "cli-1" in result.output
    with session_scope(temp_db) as session:
        assert JobRepository(session).get_job("cli-1").state == "pending"


def test_enqueue_from_file(runner, temp_db, tmp_path):
    jobs_file = tmp_path / "jobs.json"
    jobs_file.write_text(json.dumps([{"command": "echo a"}, {"command": "echo b", "priority": 3}]))

    result = invoke(runner, temp_db, "enqueue", "--file", str(jobs_file))

    assert result.exit_code == 0
    with session_scope(temp_db) as session:
        assert len(JobRepository(session).list_jobs()) == 2


def test_enqueue_without_command_fails(runner, temp_db):
    result = invoke(runner, temp_db, "enqueue", '{"id": "no-cmd"}')

    assert result.exit_code == 1
    assert "command" in result.output
    with session_scope(temp_db) as session:
        assert JobRepository(session).get_job("no-cmd") is None


def test_enqueue_invalid_json_fails(runner, temp_db):
    result = invoke(runner, temp_db, "enqueue", "{not json")

    assert result.exit_code == 1


def test_dlq_retry_dead_job(runner, temp_db):
    _kill(temp_db, "dead-1")

    result = invoke(runner, temp_db, "dlq", "retry", "dead-1")

    assert result.exit_code == 0
    with session_scope(temp_db) as session:
        job = JobRepository(session).get_job("dead-1")
        assert (job.state, job.attempts, job.run_at) == ("pending", 0, None)


def test_dlq_retry_pending_job_fails(runner, temp_db):
    with session_scope(temp_db) as session:
        JobRepository(session).create_job(command="echo", job_id="alive")

    result = invoke(runner, temp_db, "dlq", "retry", "alive")

    assert result.exit_code == 1
    with session_scope(temp_db) as session:
        assert JobRepository(session).get_job("alive").state == "pending"


def test_dlq_retry_unknown_job_fails(runner, temp_db):
    result = invoke(runner, temp_db, "dlq", "retry", "missing")

    assert result.exit_code == 1


def test_dlq_list_json(runner, temp_db):
    _kill(temp_db, "dead-2")

    result = invoke(runner, temp_db, "dlq", "list", "--json")

    assert result.exit_code == 0
    assert [j["id"] for j in json.loads(result.stdout)] == ["dead-2"]


def test_status_json(runner, temp_db):
    with session_scope(temp_db) as session:
        JobRepository(session).create_job(command="echo")

    result = invoke(runner, temp_db, "status", "--json")

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["job_counts"]["pending"] == 1
    assert data["job_counts"]["dead"] == 0
    assert data["workers"] == []


def test_config_set_and_get(runner, temp_db):
    assert invoke(runner, temp_db, "config", "set", "backoff_base", "3").exit_code == 0

    result = invoke(runner, temp_db, "config", "get", "backoff_base")

    assert result.exit_code == 0
    assert "backoff_base=3" in result.stdout


def test_config_set_rejects_invalid_flag(runner, temp_db):
    result = invoke(runner, temp_db, "config", "set", "graceful_stop", "maybe")

    assert result.exit_code == 1


def test_list_by_state(runner, temp_db):
    with session_scope(temp_db) as session:
        JobRepository(session).create_job(command="echo", job_id="listed")

    result = invoke(runner, temp_db, "list", "--state", "pending", "--json")

    assert result.exit_code == 0
    assert [j["id"] for j in json.loads(result.stdout)] == ["listed"]
