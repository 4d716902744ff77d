"""UTC time helpers. Everything stored or compared by queuectl is UTC."""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | str | None) -> datetime | None:
    """Normalize a datetime or ISO-8601 string to aware UTC.

    Naive values are taken to be UTC already. A trailing ``Z`` is accepted.

    Args:
        dt: Datetime object, ISO string, or None.

    Returns:
        UTC timezone-aware datetime or None.

    Raises:
        ValueError: If the string is not valid ISO format.
    """
    if dt is None:
        return None

    if isinstance(dt, str):
        text = dt.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def seconds_from(start: datetime, seconds: float) -> datetime:
    """Return ``start`` shifted by ``seconds``.

    Delays past the largest representable datetime saturate to
    ``datetime.max`` in UTC rather than raising.
    """
    try:
        return start + timedelta(seconds=seconds)
    except OverflowError:
        return datetime.max.replace(tzinfo=timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    """Render a datetime as ISO-8601 in UTC, or None."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()
