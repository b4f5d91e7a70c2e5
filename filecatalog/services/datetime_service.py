"""Datetime helpers: lax parsing of remote timestamps, strict UTC output."""

from __future__ import annotations

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import pendulum

# Column layout used by nginx/Apache HTML autoindex pages
AUTOINDEX_FORMATS = ("%d-%b-%Y %H:%M", "%d-%b-%Y %H:%M:%S", "%Y-%m-%d %H:%M")


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive values and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    return ensure_utc(dt).isoformat()


def format_optional_iso(dt: datetime | None) -> str | None:
    """Like ``format_iso`` but passes ``None`` through."""
    return None if dt is None else format_iso(dt)


def parse_remote_timestamp(value: str | int | float | None) -> datetime | None:
    """Parse a modification time as reported by a directory listing.

    Accepts:
    - RFC 1123 dates (nginx JSON autoindex): ``Wed, 05 Mar 2025 10:00:00 GMT``
    - autoindex HTML dates: ``05-Mar-2025 10:00``
    - ISO 8601 variants
    - Unix timestamps (int/float)

    Values without a timezone are taken as UTC. Returns None when the value
    cannot be parsed; a bad date never fails a listing.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, UTC)
        except (OverflowError, OSError, ValueError):
            return None

    text = value.strip()
    if not text:
        return None

    try:
        return ensure_utc(parsedate_to_datetime(text))
    except (TypeError, ValueError, IndexError):
        pass

    for fmt in AUTOINDEX_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue

    try:
        parsed = pendulum.parse(text, tz="UTC", strict=False)
    except ValueError:
        return None
    if not isinstance(parsed, pendulum.DateTime):
        return None
    return ensure_utc(parsed)
