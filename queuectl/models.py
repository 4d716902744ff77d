"""SQLAlchemy models for the queuectl job store."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from queuectl.utils.time import ensure_utc


JOB_STATES = ("pending", "processing", "completed", "failed", "dead")
WORKER_STATUSES = ("starting", "running", "stopping", "stopped")


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class UTCDateTime(TypeDecorator):
    """DateTime stored as naive UTC and loaded back as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Job(Base):
    """Flat storage row for a job. See ``queuectl.jobstate`` for the typed view."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    command: Mapped[str] = mapped_column(Text, nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Claimable only when NULL or in the past
    run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Diagnostics from the most recent attempt
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_rc: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stdout: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stderr: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Set on claim, kept afterwards as a trace
    worker_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint(_in_clause("state", JOB_STATES), name="ck_jobs_state"),
        CheckConstraint("attempts >= 0", name="ck_jobs_attempts"),
        CheckConstraint("max_retries >= 0", name="ck_jobs_max_retries"),
        Index("idx_jobs_state_run_at", "state", "run_at"),
    )

    def __repr__(self) -> str:
        return f"<Job {self.id} state={self.state} attempts={self.attempts}/{self.max_retries}>"


# Claim order: priority desc, then oldest first
Index("idx_jobs_priority_created", Job.priority.desc(), Job.created_at)


class Worker(Base):
    """Worker registry row. Rows are kept after exit as a ledger."""

    __tablename__ = "workers"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    pid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="starting")
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        CheckConstraint(_in_clause("status", WORKER_STATUSES), name="ck_workers_status"),
    )


class Config(Base):
    """Configuration key-value store."""

    __tablename__ = "config"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
