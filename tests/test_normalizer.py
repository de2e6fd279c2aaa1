from __future__ import annotations

import math
from datetime import datetime, timezone

import pytest

from services.normalizer import availability_from_value, normalize, normalize_all


def test_location_object_supplies_coordinates() -> None:
    record = normalize(
        {
            "kerbsideid": 5120,
            "status_description": "Unoccupied",
            "location": {"lat": -37.81, "lon": 144.96},
            "lastupdated": "2024-05-01T10:15:00+00:00",
        }
    )

    assert record.id == "5120"
    assert record.lat == pytest.approx(-37.81)
    assert record.lng == pytest.approx(144.96)
    assert record.capacity == 1
    assert record.available_spots == 1
    assert record.updated_at == datetime(2024, 5, 1, 10, 15, tzinfo=timezone.utc)
    assert record.name == "Kerbside 5120"


def test_flat_coordinates_win_over_nested() -> None:
    record = normalize({"id": "x", "lat": "-37.5", "lon": 145.0, "location": {"lat": 1, "lon": 2}})

    assert record.lat == -37.5
    assert record.lng == 145.0


def test_unknown_status_stays_unknown() -> None:
    record = normalize({"id": "x", "status_description": "sensor offline"})

    assert record.available_spots is None
    assert record.raw_status == "sensor offline"


def test_missing_status_stays_unknown() -> None:
    assert normalize({"id": "x"}).available_spots is None


def test_id_falls_back_to_coordinates() -> None:
    record = normalize({"lat": -37.8, "lng": 144.9, "status": "Present"})

    assert record.id == "-37.8,144.9"
    assert record.available_spots == 0


def test_non_finite_coordinates_are_dropped() -> None:
    record = normalize({"id": "x", "lat": "nan", "lng": math.inf})

    assert record.lat is None
    assert record.lng is None


@pytest.mark.parametrize(
    ("value", "reports_free", "expected"),
    [
        ("UNOCCUPIED ", False, True),
        ("Present", False, False),
        ("vacant bay", False, True),
        ("yes", False, False),
        ("no", False, True),
        (1, False, False),
        (0, False, True),
        (True, True, True),
        (0, True, False),
        ("maintenance", False, None),
        (7, False, None),
    ],
)
def test_availability_vocabulary(value, reports_free, expected) -> None:
    assert availability_from_value(value, reports_free) is expected


def test_is_free_flag_reports_freedom() -> None:
    assert normalize({"id": "x", "is_free": True}).available_spots == 1
    assert normalize({"id": "y", "vehicle_present": True}).available_spots == 0


def test_missing_timestamp_uses_fetch_time() -> None:
    before = datetime.now(timezone.utc)
    [record] = normalize_all([{"id": "x"}])

    assert record.updated_at >= before
