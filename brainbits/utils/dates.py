"""UTC timestamp helpers shared by models and repositories."""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_iso(value: datetime | None) -> str | None:
    """Serialize for storage. All stored timestamps share one UTC format so they sort as text."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_iso(value: str | datetime | None) -> datetime | None:
    """
    Parse an ISO-8601 string into an aware UTC datetime.

    Returns None for missing or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return ensure_utc(parsed)
