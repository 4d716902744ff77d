"""CLI interface for queuectl using Typer."""

import json
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from queuectl.config import ConfigManager
from queuectl.db import init_db, resolve_db_path, session_scope
from queuectl.errors import QueueError
from queuectl.jobstate import Pending, state_of
from queuectl.logging_conf import setup_logging
from queuectl.repo import JobRepository, WorkerRepository
from queuectl.supervisor import Supervisor
from queuectl.utils.time import to_iso
from queuectl.worker import run_worker

app = typer.Typer(
    name="queuectl",
    help="CLI-based background job queue with retries, backoff and a dead letter queue",
)
console = Console()
err_console = Console(stderr=True)


# Subcommands
worker_app = typer.Typer(help="Manage worker processes")
dlq_app = typer.Typer(help="Manage dead letter queue")
config_app = typer.Typer(help="Manage configuration")

app.add_typer(worker_app, name="worker")
app.add_typer(dlq_app, name="dlq")
app.add_typer(config_app, name="config")

DbPathOption = typer.Option(None, "--db-path", envvar="QUEUECTL_DB_PATH", help="SQLite database file")


def _prepare(db_path: Optional[str]) -> None:
    setup_logging()
    init_db(db_path)


def _fail(message: str) -> None:
    err_console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


def _preview(command: str, width: int = 40) -> str:
    return (command[: width - 3] + "...") if len(command) > width else command


@app.command()
def init(db_path: Optional[str] = DbPathOption) -> None:
    """Initialize database and default configuration."""
    _prepare(db_path)
    console.print(f"[green]✓[/green] Database initialized at {resolve_db_path(db_path)}")


@app.command()
def enqueue(
    job_data: Optional[str] = typer.Argument(None, help="JSON job object or array"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="JSON file with job(s)"),
    db_path: Optional[str] = DbPathOption,
) -> None:
    """Enqueue one or more jobs.

    Job fields: id (optional), command (required), max_retries, priority, run_at
    """
    _prepare(db_path)

    if file:
        try:
            data = json.loads(file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            _fail(f"cannot read {file}: {e}")
    elif job_data:
        try:
            data = json.loads(job_data)
        except json.JSONDecodeError as e:
            _fail(f"invalid JSON: {e}")
    else:
        _fail("provide inline JSON or --file")

    jobs = data if isinstance(data, list) else [data]

    failed = 0
    with session_scope(db_path) as session:
        repo = JobRepository(session)
        for payload in jobs:
            try:
                job = repo.enqueue(payload)
            except QueueError as e:
                err_console.print(f"[red]Error enqueueing job: {e}[/red]")
                failed += 1
                continue
            console.print(f"[green]✓[/green] Enqueued job {job.id}")

    if failed:
        sys.exit(1)


@worker_app.command("start")
def worker_start(
    count: int = typer.Option(1, "--count", "-c", help="Number of workers to start"),
    db_path: Optional[str] = DbPathOption,
) -> None:
    """Start N detached worker processes."""
    _prepare(db_path)

    try:
        started = Supervisor(db_path).start_workers(count)
    except QueueError as e:
        _fail(str(e))

    for worker_id, pid in started:
        console.print(f"Started worker {worker_id} (PID: {pid})")
    console.print(f"[bold green]Started {len(started)} worker(s)[/bold green]")


@worker_app.command("stop")
def worker_stop(db_path: Optional[str] = DbPathOption) -> None:
    """Ask all workers to stop after their current job."""
    _prepare(db_path)

    stopped = Supervisor(db_path).stop_workers()

    if stopped > 0:
        console.print(f"[bold green]Stop requested for {stopped} worker(s)[/bold green]")
    else:
        console.print("[yellow]No running workers to stop[/yellow]")


@worker_app.command("run", hidden=True)
def worker_run(
    worker_id: Optional[str] = typer.Option(None, "--id", help="Worker ID"),
    db_path: Optional[str] = DbPathOption,
) -> None:
    """Run a worker in the foreground (used by ``worker start``)."""
    init_db(db_path)
    run_worker(worker_id, db_path)


@app.command()
def status(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    db_path: Optional[str] = DbPathOption,
) -> None:
    """Show job counts per state and the worker registry."""
    _prepare(db_path)

    with session_scope(db_path) as session:
        state_counts = JobRepository(session).get_state_counts()
        workers = WorkerRepository(session).list_workers()
        all_config = ConfigManager(session).get_all()

    status_data = {
        "db_path": str(resolve_db_path(db_path)),
        "job_counts": state_counts,
        "workers": [
            {"id": w.id, "pid": w.pid, "status": w.status, "updated_at": to_iso(w.updated_at)}
            for w in workers
        ],
        "config": all_config,
    }

    if json_output:
        print(json.dumps(status_data, indent=2))
        return

    console.print("\n[bold cyan]QueueCtl Status[/bold cyan]\n")
    console.print(f"Database: {status_data['db_path']}\n")

    console.print("[bold]Jobs:[/bold]")
    for state, count in state_counts.items():
        console.print(f"  {state:<10} {count}")

    console.print("\n[bold]Workers:[/bold]")
    if not workers:
        console.print("  (none)")
    for w in status_data["workers"]:
        console.print(f"  {w['id']} pid={w['pid']} status={w['status']} updated={w['updated_at']}")
    console.print()


@app.command("list")
def list_jobs(
    state: Optional[str] = typer.Option(None, "--state", "-s", help="Filter by state"),
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum jobs to show"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    db_path: Optional[str] = DbPathOption,
) -> None:
    """List jobs with optional state filter."""
    _prepare(db_path)

    try:
        with session_scope(db_path) as session:
            jobs = JobRepository(session).list_jobs(state=state, limit=limit)
    except QueueError as e:
        _fail(str(e))

    if json_output:
        print(json.dumps([_job_dict(j) for j in jobs], indent=2))
        return

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title=f"Jobs ({len(jobs)})")
    table.add_column("ID", style="cyan")
    table.add_column("State", style="magenta")
    table.add_column("Attempts", justify="right")
    table.add_column("RC", justify="right")
    table.add_column("Run At", style="dim")
    table.add_column("Priority", justify="right")
    table.add_column("Command", style="white")

    for job in jobs:
        table.add_row(
            job.id,
            job.state,
            f"{job.attempts}/{job.max_retries}",
            "" if job.last_rc is None else str(job.last_rc),
            to_iso(job.run_at) or "-",
            str(job.priority),
            _preview(job.command),
        )

    console.print(table)


@app.command("logs")
def logs(
    job_id: str = typer.Argument(..., help="Job ID"),
    db_path: Optional[str] = DbPathOption,
) -> None:
    """Show a job's last attempt: exit code, error and captured output."""
    _prepare(db_path)

    with session_scope(db_path) as session:
        job = JobRepository(session).get_job(job_id)

    if not job:
        _fail(f"no such job: {job_id}")

    console.print(f"\n[bold cyan]Job {job.id}[/bold cyan]\n")
    console.print(f"Command: {job.command}")
    console.print(f"State: {job.state}")
    console.print(f"Attempts: {job.attempts}/{job.max_retries}")
    console.print(f"Exit Code: {'N/A' if job.last_rc is None else job.last_rc}")
    console.print(f"Worker: {job.worker_id or 'N/A'}")
    console.print(f"Created: {to_iso(job.created_at)}")
    console.print(f"Updated: {to_iso(job.updated_at)}")

    current = state_of(job)
    if isinstance(current, Pending) and current.run_at is not None:
        console.print(f"Next run: {to_iso(current.run_at)}")
    if job.last_error:
        console.print(f"Last error: {job.last_error}", markup=False)

    if job.stdout:
        console.print("\n[bold]STDOUT:[/bold]")
        console.print(job.stdout, markup=False)

    if job.stderr:
        console.print("\n[bold]STDERR:[/bold]")
        console.print(job.stderr, markup=False)

    if not job.stdout and not job.stderr:
        console.print("\n[dim]No output captured[/dim]")


@dlq_app.command("list")
def dlq_list(
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum jobs to show"),
    by_priority: bool = typer.Option(False, "--by-priority", help="Order by priority instead of newest"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    db_path: Optional[str] = DbPathOption,
) -> None:
    """List dead letter queue jobs."""
    _prepare(db_path)

    with session_scope(db_path) as session:
        jobs = JobRepository(session).list_dead(limit=limit, order="priority" if by_priority else "newest")

    if json_output:
        print(json.dumps([_job_dict(j) for j in jobs], indent=2))
        return

    if not jobs:
        console.print("[green]Dead letter queue is empty[/green]")
        return

    table = Table(title=f"Dead Letter Queue ({len(jobs)} jobs)")
    table.add_column("ID", style="cyan")
    table.add_column("Attempts", justify="right")
    table.add_column("Last Error", style="red")
    table.add_column("Updated", style="dim")
    table.add_column("Command", style="white")

    for job in jobs:
        table.add_row(
            job.id,
            str(job.attempts),
            (job.last_error or "")[:80],
            to_iso(job.updated_at),
            _preview(job.command),
        )

    console.print(table)


@dlq_app.command("retry")
def dlq_retry(
    job_id: str = typer.Argument(..., help="Job ID to requeue"),
    db_path: Optional[str] = DbPathOption,
) -> None:
    """Move a dead job back to pending with attempts reset."""
    _prepare(db_path)

    try:
        with session_scope(db_path) as session:
            JobRepository(session).requeue(job_id)
    except QueueError as e:
        _fail(str(e))

    console.print(f"[green]✓[/green] Requeued job {job_id}")


@config_app.command("get")
def config_get(
    key: Optional[str] = typer.Argument(None, help="Config key (omit to show all)"),
    db_path: Optional[str] = DbPathOption,
) -> None:
    """Get configuration value(s)."""
    _prepare(db_path)

    with session_scope(db_path) as session:
        config_mgr = ConfigManager(session)
        if key:
            value = config_mgr.get(key)
            if value is None:
                _fail(f"key '{key}' not found")
            print(f"{key}={value}")
        else:
            for k, v in config_mgr.get_all().items():
                print(f"{k}={v}")


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Config key"),
    value: str = typer.Argument(..., help="Config value"),
    db_path: Optional[str] = DbPathOption,
) -> None:
    """Set configuration value."""
    _prepare(db_path)

    try:
        with session_scope(db_path) as session:
            ConfigManager(session).set(key, value)
    except QueueError as e:
        _fail(str(e))

    console.print(f"[green]✓[/green] Set {key}={value}")


def _job_dict(job) -> dict:
    return {
        "id": job.id,
        "command": job.command,
        "state": job.state,
        "attempts": job.attempts,
        "max_retries": job.max_retries,
        "priority": job.priority,
        "run_at": to_iso(job.run_at),
        "created_at": to_iso(job.created_at),
        "updated_at": to_iso(job.updated_at),
        "last_error": job.last_error,
        "last_rc": job.last_rc,
        "worker_id": job.worker_id,
    }


if __name__ == "__main__":
    app()
