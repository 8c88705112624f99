"""Tests for UTC clock helpers."""
from datetime import datetime, timedelta, timezone

from domus.clock import (
    ensure_utc,
    format_timestamp,
    generate_id,
    parse_timestamp,
)


class TestParseTimestamp:
    def test_parses_trailing_z(self):
        dt = parse_timestamp("2025-01-15T07:30:00Z")
        assert dt == datetime(2025, 1, 15, 7, 30, tzinfo=timezone.utc)

    def test_parses_milliseconds(self):
        dt = parse_timestamp("2025-01-15T07:30:00.250Z")
        assert dt.microsecond == 250000

    def test_converts_offsets_to_utc(self):
        dt = parse_timestamp("2025-01-15T09:30:00+02:00")
        assert dt == datetime(2025, 1, 15, 7, 30, tzinfo=timezone.utc)

    def test_naive_string_is_utc(self):
        assert parse_timestamp("2025-01-15T07:30:00").tzinfo == timezone.utc

    def test_invalid_values_return_none(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp(1736926200) is None

    def test_datetime_passthrough(self):
        naive = datetime(2025, 1, 15, 7, 30)
        assert parse_timestamp(naive) == naive.replace(tzinfo=timezone.utc)


class TestFormatTimestamp:
    def test_uses_z_suffix(self):
        assert format_timestamp(datetime(2025, 1, 15, 7, 30, tzinfo=timezone.utc)) == "2025-01-15T07:30:00Z"

    def test_round_trip_preserves_instant(self):
        dt = datetime(2025, 1, 15, 7, 30, 0, 123456, tzinfo=timezone(timedelta(hours=-5)))
        assert parse_timestamp(format_timestamp(dt)) == dt


class TestStorageHelpers:
    def test_ensure_utc_converts_offsets(self):
        dt = datetime(2025, 1, 15, 9, 30, tzinfo=timezone(timedelta(hours=2)))
        converted = ensure_utc(dt)
        assert converted == datetime(2025, 1, 15, 7, 30, tzinfo=timezone.utc)
        assert converted.tzinfo == timezone.utc

    def test_ensure_utc_tags_naive_values(self):
        assert ensure_utc(datetime(2025, 1, 15, 7, 30)).tzinfo == timezone.utc

    def test_ensure_utc_none(self):
        assert ensure_utc(None) is None


class TestGenerateId:
    def test_prefix(self):
        assert generate_id("chr").startswith("chr_")

    def test_unique(self):
        assert generate_id("chr") != generate_id("chr")
