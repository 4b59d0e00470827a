"""Tests for day bucketing by each sample's recorded timezone."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from src.healthsync.base import NormalizedSample
from src.healthsync.buckets import bucket, day_key, resolve_timezone, sort_samples
from src.healthsync.tests.conftest import UTC


def _sample(
    start: datetime,
    tz_name: str | None = None,
    source: str = "Apple Watch",
    minutes: int = 1,
) -> NormalizedSample:
    return NormalizedSample(
        type="step-count",
        start=start,
        end=start + timedelta(minutes=minutes),
        value=10.0,
        unit="count",
        source=source,
        metadata={"HKTimeZone": tz_name} if tz_name else None,
    )


class TestDayKey:
    def test_sample_timezone_decides_the_day(self) -> None:
        """07:30Z is still the previous evening in Los Angeles."""
        start = datetime(2026, 2, 21, 7, 30, tzinfo=timezone.utc)
        assert day_key(start, {"HKTimeZone": "America/Los_Angeles"}, UTC) == "2026-02-20"

    def test_local_zone_used_without_metadata(self) -> None:
        start = datetime(2026, 2, 21, 7, 30, tzinfo=timezone.utc)
        assert day_key(start, None, UTC) == "2026-02-21"
        assert day_key(start, {}, ZoneInfo("America/New_York")) == "2026-02-21"
        assert day_key(start, {}, ZoneInfo("America/Denver")) == "2026-02-21"
        assert day_key(start, {}, ZoneInfo("Pacific/Honolulu")) == "2026-02-20"

    def test_invalid_zone_falls_back_to_local(self) -> None:
        zone = resolve_timezone({"HKTimeZone": "Mars/Olympus_Mons"}, UTC)
        assert zone is UTC

    def test_non_string_zone_falls_back_to_local(self) -> None:
        assert resolve_timezone({"HKTimeZone": 42}, UTC) is UTC


class TestBucket:
    def test_same_instant_different_zones_split(self) -> None:
        instant = datetime(2026, 2, 21, 20, 0, tzinfo=timezone.utc)
        buckets = bucket(
            [_sample(instant, "Asia/Tokyo"), _sample(instant, "America/Los_Angeles")], UTC
        )
        assert list(buckets) == ["2026-02-21", "2026-02-22"]
        assert buckets["2026-02-22"][0].metadata == {"HKTimeZone": "Asia/Tokyo"}

    def test_keys_ascending_and_samples_sorted(self) -> None:
        day1 = datetime(2026, 2, 19, 9, 0, tzinfo=timezone.utc)
        day2 = datetime(2026, 2, 20, 9, 0, tzinfo=timezone.utc)
        late = _sample(day2 + timedelta(hours=3))
        early = _sample(day2)
        buckets = bucket([late, _sample(day1), early], UTC)
        assert list(buckets) == ["2026-02-19", "2026-02-20"]
        assert buckets["2026-02-20"] == [early, late]

    def test_empty_input(self) -> None:
        assert bucket([], UTC) == {}

    def test_untagged_samples_use_given_local_zone(self) -> None:
        start = datetime(2026, 2, 21, 16, 0, tzinfo=timezone.utc)
        assert list(bucket([_sample(start)], ZoneInfo("Asia/Tokyo"))) == ["2026-02-22"]


class TestSortSamples:
    def test_ties_broken_by_end_then_source(self) -> None:
        start = datetime(2026, 2, 20, 9, 0, tzinfo=timezone.utc)
        a = _sample(start, source="iPhone", minutes=5)
        b = _sample(start, source="Apple Watch", minutes=5)
        c = _sample(start, source="Apple Watch", minutes=1)
        assert sort_samples([a, b, c]) == [c, b, a]
