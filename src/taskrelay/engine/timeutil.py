"""Timestamp helpers shared by the state document and sidecar stores."""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def from_iso(value: object) -> datetime | None:
    """Parse ISO datetime and ensure timezone-aware UTC fallback.

    Returns ``None`` for missing or unparsable values so that a damaged
    annotation never aborts a load.
    """

    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
