"""Map heterogeneous live-sensor rows onto :class:`SensorRecord`."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

from models.records import SensorRecord
from services.timeutils import parse_timestamp, utcnow
from upstream.fields import pick_field

Extractor = Callable[[Mapping[str, Any]], Any]


def flat(name: str) -> Extractor:
    def extract(row: Mapping[str, Any]) -> Any:
        return row.get(name)

    return extract


def nested(container: str, key: str) -> Extractor:
    def extract(row: Mapping[str, Any]) -> Any:
        inner = row.get(container)
        if isinstance(inner, Mapping):
            return inner.get(key)
        return None

    return extract


LAT_EXTRACTORS: Tuple[Extractor, ...] = (
    flat("lat"),
    flat("latitude"),
    nested("location", "lat"),
    nested("geo_point_2d", "lat"),
)
LNG_EXTRACTORS: Tuple[Extractor, ...] = (
    flat("lng"),
    flat("lon"),
    flat("longitude"),
    nested("location", "lon"),
    nested("location", "lng"),
    nested("geo_point_2d", "lon"),
    nested("geo_point_2d", "lng"),
)

ID_FIELDS = (
    "kerbsideid",
    "bay_id",
    "bayid",
    "marker_id",
    "sensor",
    "asset_id",
    "device_id",
    "id",
    "recordid",
)
UPDATED_FIELDS = (
    "status_timestamp",
    "lastupdated",
    "last_update",
    "updated_at",
    "modificationdate",
    "datetime",
    "timestamp",
)


@dataclass(frozen=True)
class StatusField:
    """A candidate status column; ``reports_free`` flips boolean polarity."""

    name: str
    reports_free: bool = False


STATUS_FIELDS: Tuple[StatusField, ...] = (
    StatusField("status_description"),
    StatusField("status"),
    StatusField("Status"),
    StatusField("occupancy"),
    StatusField("occupancy_status"),
    StatusField("occupancystatus"),
    StatusField("parkingstatus"),
    StatusField("bay_status"),
    StatusField("baystatus"),
    StatusField("vehicle_present"),
    StatusField("vehiclepresent"),
    StatusField("present"),
    StatusField("presence"),
    StatusField("is_occupied"),
    StatusField("isoccupied"),
    StatusField("is_free", reports_free=True),
    StatusField("isfree", reports_free=True),
    StatusField("available", reports_free=True),
    StatusField("availability", reports_free=True),
    StatusField("occupied"),
)

FREE_WORDS = frozenset(
    {"vacant", "unoccupied", "free", "available", "clear", "unocc", "empty", "not present"}
)
OCCUPIED_WORDS = frozenset({"occupied", "present", "busy", "full"})
TRUE_FLAGS = frozenset({"yes", "1", "true"})
FALSE_FLAGS = frozenset({"no", "0", "false"})
FREE_FRAGMENTS = ("unoccupied", "vacant", "available")
OCCUPIED_FRAGMENTS = ("occupied", "present")


def to_coordinate(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def first_coordinate(row: Mapping[str, Any], extractors: Sequence[Extractor]) -> Optional[float]:
    """Return the first finite value any extractor yields; later ones never override it."""
    for extract in extractors:
        value = to_coordinate(extract(row))
        if value is not None:
            return value
    return None


def _flag_to_availability(flag: bool, reports_free: bool) -> bool:
    # A raised presence flag means the bay is taken.
    return flag if reports_free else not flag


def availability_from_value(value: Any, reports_free: bool = False) -> Optional[bool]:
    """Map a raw status value to ``True`` (free), ``False`` (occupied) or ``None``."""
    if isinstance(value, bool):
        return _flag_to_availability(value, reports_free)
    if isinstance(value, (int, float)):
        if value == 0:
            return _flag_to_availability(False, reports_free)
        if value == 1:
            return _flag_to_availability(True, reports_free)
        return None
    if not isinstance(value, str):
        return None

    text = value.strip().lower()
    if text in FREE_WORDS:
        return True
    if text in OCCUPIED_WORDS:
        return False
    if text in TRUE_FLAGS:
        return _flag_to_availability(True, reports_free)
    if text in FALSE_FLAGS:
        return _flag_to_availability(False, reports_free)
    if any(fragment in text for fragment in FREE_FRAGMENTS):
        return True
    if any(fragment in text for fragment in OCCUPIED_FRAGMENTS):
        return False
    return None


def infer_availability(row: Mapping[str, Any]) -> Tuple[Optional[bool], Any]:
    """Read the first non-null status field and return ``(availability, raw_value)``."""
    for status_field in STATUS_FIELDS:
        value = row.get(status_field.name)
        if value is None:
            continue
        return availability_from_value(value, status_field.reports_free), value
    return None, None


def _display_name(row: Mapping[str, Any], record_id: str) -> str:
    name = row.get("name")
    if name:
        return str(name)
    if row.get("kerbsideid") is not None:
        return f"Kerbside {row['kerbsideid']}"
    if row.get("marker_id") is not None:
        return f"Marker {row['marker_id']}"
    if row.get("bay_id") is not None:
        return f"Bay {row['bay_id']}"
    return f"Sensor {record_id}"


def normalize(row: Mapping[str, Any], fetched_at: Optional[datetime] = None) -> SensorRecord:
    lat = first_coordinate(row, LAT_EXTRACTORS)
    lng = first_coordinate(row, LNG_EXTRACTORS)

    _, raw_id = pick_field(row, ID_FIELDS)
    record_id = str(raw_id) if raw_id is not None else f"{lat},{lng}"

    availability, raw_status = infer_availability(row)
    if availability is None:
        available_spots: Optional[int] = None
    else:
        available_spots = 1 if availability else 0

    updated_at = parse_timestamp(pick_field(row, UPDATED_FIELDS)[1])
    if updated_at is None:
        updated_at = fetched_at or utcnow()

    return SensorRecord(
        id=record_id,
        lat=lat,
        lng=lng,
        capacity=1,
        available_spots=available_spots,
        updated_at=updated_at,
        name=_display_name(row, record_id),
        raw_status=raw_status,
    )


def normalize_all(rows: Iterable[Mapping[str, Any]]) -> List[SensorRecord]:
    fetched_at = utcnow()
    return [normalize(row, fetched_at) for row in rows]
