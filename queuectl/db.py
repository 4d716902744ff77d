"""Database initialization and session management."""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from queuectl.models import Base, Config


# Default database location
DEFAULT_DB_PATH = Path.home() / ".queuectl" / "queue.db"

DEFAULT_CONFIG = {
    "max_retries": "3",
    "backoff_base": "2",
    "poll_interval_sec": "1",
    "graceful_stop": "0",
}

# Engines are per process: a forked child must not reuse its parent's pool.
_engines: dict[tuple[int, str], Engine] = {}


def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable WAL and foreign keys, and hand transaction control to SQLAlchemy.

    The driver's implicit BEGIN is disabled so ``begin_immediate`` decides
    how every transaction starts.
    """
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def begin_immediate(conn):
    """Take the write lock up front so read-then-write units are serializable."""
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def resolve_db_path(db_path: str | Path | None = None) -> Path:
    """Resolve the database file location.

    Args:
        db_path: Explicit path; falls back to ``QUEUECTL_DB_PATH`` and then
            ``~/.queuectl/queue.db``.

    Returns:
        Absolute path with its parent directory created.
    """
    if db_path is None:
        db_path = os.environ.get("QUEUECTL_DB_PATH", str(DEFAULT_DB_PATH))

    path = Path(db_path).expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def get_db_url(db_path: str | Path | None = None) -> str:
    """Get the SQLite URL for a database path."""
    return f"sqlite:///{resolve_db_path(db_path)}"


def get_engine(db_path: str | Path | None = None) -> Engine:
    """Return this process's engine for the database, creating it once.

    Args:
        db_path: Optional custom database path.

    Returns:
        SQLAlchemy engine.
    """
    url = get_db_url(db_path)
    key = (os.getpid(), url)
    engine = _engines.get(key)
    if engine is None:
        engine = create_engine(
            url,
            echo=False,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        event.listen(engine, "connect", set_sqlite_pragma)
        event.listen(engine, "begin", begin_immediate)
        _engines[key] = engine
    return engine


def init_db(db_path: str | Path | None = None) -> Engine:
    """Create tables and indexes if needed and seed default config.

    Existing config values are never overwritten.

    Args:
        db_path: Optional custom database path.

    Returns:
        Database engine.
    """
    engine = get_engine(db_path)
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed_default_config(session)

    return engine


def _seed_default_config(session: Session) -> None:
    for key, value in DEFAULT_CONFIG.items():
        if session.get(Config, key) is None:
            session.add(Config(key=key, value=value))
    session.commit()


@contextmanager
def session_scope(db_path: str | Path | None = None) -> Iterator[Session]:
    """Open a short-lived session.

    Keep scopes short: any open transaction holds the database write lock.

    Args:
        db_path: Optional custom database path.

    Yields:
        Database session, closed (and rolled back if uncommitted) on exit.
    """
    SessionLocal = sessionmaker(bind=get_engine(db_path), expire_on_commit=False)
    session = SessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def dispose_engines() -> None:
    """Close every pooled connection held by this process."""
    for key in [k for k in _engines if k[0] == os.getpid()]:
        _engines.pop(key).dispose()
