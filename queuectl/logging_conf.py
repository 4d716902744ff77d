"""Logging configuration with rotating file handler."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def get_log_dir() -> Path:
    """Log directory: ``QUEUECTL_LOG_DIR`` or ``~/.queuectl/logs``."""
    return Path(os.environ.get("QUEUECTL_LOG_DIR", Path.home() / ".queuectl" / "logs"))


def setup_logging(
    worker_id: str | None = None,
    log_dir: Path | None = None,
    level: int = logging.INFO,
) -> logging.Logger:
    """Route the ``queuectl`` logger hierarchy to a rotating file.

    Worker processes log to ``worker-<id>.log``, everything else to
    ``queuectl.log``. Errors are echoed to stderr.

    Args:
        worker_id: Worker ID for worker-specific logs.
        log_dir: Log directory (default: ``get_log_dir()``).
        level: Logging level.

    Returns:
        The worker's logger, or the ``queuectl`` root logger.
    """
    if log_dir is None:
        log_dir = get_log_dir()

    log_dir.mkdir(parents=True, exist_ok=True)

    if worker_id:
        log_file = log_dir / f"worker-{worker_id}.log"
    else:
        log_file = log_dir / "queuectl.log"

    root = logging.getLogger("queuectl")
    root.setLevel(level)
    root.propagate = False

    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    # 10MB per file, 5 backups
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.ERROR)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    root.addHandler(file_handler)
    root.addHandler(console_handler)

    if worker_id:
        return logging.getLogger(f"queuectl.worker.{worker_id}")
    return root
