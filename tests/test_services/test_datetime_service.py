"""Tests for datetime helpers."""

from datetime import UTC, datetime, timedelta, timezone

from filecatalog.services.datetime_service import (
    ensure_utc,
    format_iso,
    format_optional_iso,
    now_utc,
    parse_remote_timestamp,
)


class TestParseRemoteTimestamp:
    def test_rfc1123(self) -> None:
        result = parse_remote_timestamp("Wed, 05 Mar 2025 10:00:00 GMT")
        assert result == datetime(2025, 3, 5, 10, 0, tzinfo=UTC)

    def test_autoindex_format(self) -> None:
        result = parse_remote_timestamp("05-Mar-2025 10:00")
        assert result == datetime(2025, 3, 5, 10, 0, tzinfo=UTC)

    def test_autoindex_format_with_seconds(self) -> None:
        result = parse_remote_timestamp("05-Mar-2025 10:00:42")
        assert result == datetime(2025, 3, 5, 10, 0, 42, tzinfo=UTC)

    def test_iso_with_offset_is_converted(self) -> None:
        result = parse_remote_timestamp("2025-03-05T12:00:00+02:00")
        assert result is not None
        assert result.utcoffset() == timedelta(0)
        assert result.hour == 10

    def test_naive_iso_is_utc(self) -> None:
        result = parse_remote_timestamp("2025-03-05 10:00")
        assert result == datetime(2025, 3, 5, 10, 0, tzinfo=UTC)

    def test_unix_timestamp(self) -> None:
        result = parse_remote_timestamp(0)
        assert result == datetime(1970, 1, 1, tzinfo=UTC)

    def test_unparseable_returns_none(self) -> None:
        assert parse_remote_timestamp("yesterday-ish") is None
        assert parse_remote_timestamp("") is None
        assert parse_remote_timestamp(None) is None
        assert parse_remote_timestamp(True) is None  # type: ignore[arg-type]


class TestFormatting:
    def test_format_iso_is_utc(self) -> None:
        dt = datetime(2026, 2, 2, 22, 21, 29, tzinfo=timezone(timedelta(hours=1)))
        assert format_iso(dt) == "2026-02-02T21:21:29+00:00"

    def test_format_optional_iso(self) -> None:
        assert format_optional_iso(None) is None
        assert format_optional_iso(datetime(2026, 1, 1, tzinfo=UTC)) == "2026-01-01T00:00:00+00:00"

    def test_ensure_utc_attaches_tz(self) -> None:
        assert ensure_utc(datetime(2026, 1, 1)).tzinfo is UTC

    def test_now_utc(self) -> None:
        result = now_utc()
        assert result.tzinfo is not None
