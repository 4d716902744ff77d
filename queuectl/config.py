"""Configuration management for queuectl."""

import logging
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from queuectl.errors import ValidationError
from queuectl.models import Config

logger = logging.getLogger(__name__)


def _non_negative_int(value: str) -> int:
    parsed = int(value)
    if parsed < 0:
        raise ValueError("must be >= 0")
    return parsed


def _non_negative_float(value: str) -> float:
    parsed = float(value)
    if parsed < 0:
        raise ValueError("must be >= 0")
    return parsed


def _positive_float(value: str) -> float:
    parsed = float(value)
    if parsed <= 0:
        raise ValueError("must be > 0")
    return parsed


def _flag(value: str) -> str:
    if value not in ("0", "1"):
        raise ValueError("must be '0' or '1'")
    return value


# Recognized keys and their validators. Other keys are stored verbatim.
KNOWN_KEYS: dict[str, Callable[[str], Any]] = {
    "max_retries": _non_negative_int,
    "backoff_base": _non_negative_float,
    "poll_interval_sec": _positive_float,
    "graceful_stop": _flag,
}


class ConfigManager:
    """Live view of the config table.

    Every read goes to the database, so a change made by any process is
    seen on the next read.
    """

    def __init__(self, session: Session):
        """Initialize config manager.

        Args:
            session: Database session.
        """
        self.session = session

    def get(self, key: str, default: str | None = None) -> str | None:
        """Get configuration value.

        Args:
            key: Configuration key.
            default: Default value if key not found.

        Returns:
            Configuration value or default.
        """
        value = self.session.scalar(select(Config.value).where(Config.key == key))
        return value if value is not None else default

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        return int(value) if value else default

    def get_float(self, key: str, default: float = 0.0) -> float:
        value = self.get(key)
        return float(value) if value else default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value, validating recognized keys.

        Args:
            key: Configuration key.
            value: Configuration value (stored as a string).

        Raises:
            ValidationError: If a recognized key gets an invalid value.
        """
        text = str(value).strip()
        validator = KNOWN_KEYS.get(key)
        if validator is not None:
            try:
                validator(text)
            except ValueError as e:
                raise ValidationError(f"Invalid value {text!r} for {key}: {e}") from e

        config = self.session.get(Config, key, populate_existing=True)
        if config:
            config.value = text
        else:
            self.session.add(Config(key=key, value=text))
        self.session.commit()
        logger.info("config %s=%s", key, text)

    def get_all(self) -> dict[str, str]:
        """Get all configuration values."""
        rows = self.session.execute(select(Config.key, Config.value).order_by(Config.key))
        return {key: value for key, value in rows}

    def stop_requested(self) -> bool:
        """Whether the cooperative stop flag is raised."""
        return self.get("graceful_stop", "0") == "1"

    def request_stop(self) -> None:
        self.set("graceful_stop", "1")

    def clear_stop(self) -> None:
        self.set("graceful_stop", "0")

    def snapshot(self) -> dict[str, Any]:
        """Typed values consulted when a job is created or settled."""
        return {
            "max_retries": self.get_int("max_retries", 3),
            "backoff_base": self.get_float("backoff_base", 2.0),
            "poll_interval_sec": self.get_float("poll_interval_sec", 1.0),
        }
