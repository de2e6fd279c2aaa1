from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from models.records import HodProfile, HodSlot, HourlyBucket
from services.forecaster import ForecastSource, build_hod_profile, forecast, free_ratio

NOW = datetime(2024, 5, 10, 8, 25, tzinfo=timezone.utc)


def _bucket(day: int, hour: int, free: int, total: int, occ: int = 0) -> HourlyBucket:
    return HourlyBucket(
        ts=datetime(2024, 5, day, hour, tzinfo=timezone.utc), free=free, occ=occ, total=total
    )


def test_free_ratio_uses_free_plus_occ_when_total_missing() -> None:
    assert free_ratio(HourlyBucket(ts=NOW, free=3, occ=1, total=0)) == 0.75
    assert free_ratio(HourlyBucket(ts=NOW, free=0, occ=0, total=0)) == 0.0
    assert free_ratio(HourlyBucket(ts=NOW, free=12, total=10)) == 1.0


def test_profile_mean_and_percentiles() -> None:
    buckets = [_bucket(day, 9, free=day, total=10) for day in range(1, 11)]

    profile = build_hod_profile(buckets)

    slot = profile.slots[9]
    assert slot.mean == pytest.approx(0.55)
    assert slot.p10 == pytest.approx(0.19)
    assert slot.p90 == pytest.approx(0.91)
    assert profile.total_from_rows == 10


def test_empty_hours_keep_default_slot() -> None:
    profile = build_hod_profile([_bucket(1, 9, free=5, total=10)])

    assert profile.slots[3] == HodSlot(mean=0.5, p10=0.25, p90=0.9)
    assert build_hod_profile([]).total_from_rows == 0


def test_forecast_starts_at_next_full_hour() -> None:
    points = forecast(3, 10, HodProfile(), now=NOW)

    assert [point.ts for point in points] == [
        datetime(2024, 5, 10, 9, tzinfo=timezone.utc),
        datetime(2024, 5, 10, 10, tzinfo=timezone.utc),
        datetime(2024, 5, 10, 11, tzinfo=timezone.utc),
    ]
    assert points[0].expected_available == 5
    assert points[0].lo80 == 3
    assert points[0].hi80 == 9


def test_forecast_bounds_are_ordered_and_clamped() -> None:
    slots = [HodSlot(mean=0.2, p10=0.6, p90=0.1) for _ in range(24)]

    points = forecast(48, 7, HodProfile(slots=slots), now=NOW)

    assert len(points) == 48
    for point in points:
        assert 0 <= point.lo80 <= point.expected_available <= point.hi80 <= 7


def test_forecast_with_zero_base_is_all_zero() -> None:
    points = forecast(2, 0, HodProfile(), now=NOW)

    assert all(
        (point.expected_available, point.lo80, point.hi80) == (0, 0, 0) for point in points
    )


def test_forecast_follows_hour_of_day_profile() -> None:
    history = []
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    for offset in range(24 * 7):
        ts = start + timedelta(hours=offset)
        free = 1 if 8 <= ts.hour <= 17 else 9
        history.append(HourlyBucket(ts=ts, free=free, occ=10 - free, total=10))

    points = forecast(24, 10, build_hod_profile(history), now=NOW)

    by_hour = {point.ts.hour: point.expected_available for point in points}
    assert by_hour[12] == 1
    assert by_hour[22] == 9


def test_forecast_source_parse_defaults_to_live() -> None:
    assert ForecastSource.parse("annual") is ForecastSource.annual
    assert ForecastSource.parse(ForecastSource.live) is ForecastSource.live
    assert ForecastSource.parse("bogus") is ForecastSource.live
    assert ForecastSource.parse(None) is ForecastSource.live
