"""Bucket sensor records into H3 hexagonal cells."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import h3

from models.records import AreaCell, LatLng, OccupancyShare, SensorRecord
from services.errors import InvalidSpatialIdentifier
from services.timeutils import round_half_up

MIN_RESOLUTION = 0
MAX_RESOLUTION = 15
MAX_SAMPLE_IDS = 10
GRID_PRECISION = 3
GRID_TOP = 10

EARTH_RADIUS_M = 6371000.0


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def validate_resolution(resolution: int) -> int:
    if isinstance(resolution, bool) or not isinstance(resolution, int):
        raise InvalidSpatialIdentifier(f"Resolution must be an integer, got {resolution!r}")
    if not MIN_RESOLUTION <= resolution <= MAX_RESOLUTION:
        raise InvalidSpatialIdentifier(
            f"Resolution {resolution} is outside {MIN_RESOLUTION}..{MAX_RESOLUTION}"
        )
    return resolution


def validate_cell(area_id: str) -> str:
    if not isinstance(area_id, str) or not h3.is_valid_cell(area_id):
        raise InvalidSpatialIdentifier(f"Invalid H3 areaId: {area_id!r}")
    return area_id


def cell_of(lat: float, lng: float, resolution: int) -> str:
    return h3.latlng_to_cell(lat, lng, validate_resolution(resolution))


def cell_resolution(area_id: str) -> int:
    return h3.get_resolution(validate_cell(area_id))


def cell_center(area_id: str) -> LatLng:
    lat, lng = h3.cell_to_latlng(validate_cell(area_id))
    return LatLng(lat=lat, lng=lng)


def cell_boundary(area_id: str) -> List[List[float]]:
    return [[lat, lng] for lat, lng in h3.cell_to_boundary(validate_cell(area_id))]


def has_coordinates(record: SensorRecord) -> bool:
    return (
        record.lat is not None
        and record.lng is not None
        and math.isfinite(record.lat)
        and math.isfinite(record.lng)
    )


@dataclass
class _CellTally:
    total_bays: int = 0
    available_bays: int = 0
    updated_at: Optional[datetime] = None
    sample_ids: List[str] = field(default_factory=list)

    def add(self, record: SensorRecord) -> None:
        self.total_bays += record.capacity
        if record.available_spots is not None:
            self.available_bays += record.available_spots
        if record.id and len(self.sample_ids) < MAX_SAMPLE_IDS:
            self.sample_ids.append(record.id)
        if self.updated_at is None or record.updated_at > self.updated_at:
            self.updated_at = record.updated_at


def occupancy_rate(total_bays: int, available_bays: int) -> float:
    if total_bays <= 0:
        return 0.0
    rate = 1 - available_bays / total_bays
    return round(min(1.0, max(0.0, rate)), 2)


def aggregate_sensors_to_areas(records: Iterable[SensorRecord], resolution: int = 9) -> List[AreaCell]:
    """Group records by the cell containing them; cells keep first-seen order."""
    validate_resolution(resolution)
    tallies: Dict[str, _CellTally] = {}
    for record in records:
        if not has_coordinates(record):
            continue
        cell = h3.latlng_to_cell(record.lat, record.lng, resolution)
        tallies.setdefault(cell, _CellTally()).add(record)

    return [_build_cell(area_id, tally) for area_id, tally in tallies.items()]


def _build_cell(area_id: str, tally: _CellTally) -> AreaCell:
    return AreaCell(
        area_id=area_id,
        center=cell_center(area_id),
        boundary=cell_boundary(area_id),
        total_bays=tally.total_bays,
        available_bays=tally.available_bays,
        occupancy_rate=occupancy_rate(tally.total_bays, tally.available_bays),
        updated_at=tally.updated_at,
        sample_ids=list(tally.sample_ids),
    )


def members_of(records: Iterable[SensorRecord], area_id: str) -> Tuple[List[SensorRecord], int]:
    """Records whose cell at ``area_id``'s own resolution is ``area_id``."""
    resolution = cell_resolution(area_id)
    members = [
        record
        for record in records
        if has_coordinates(record)
        and h3.latlng_to_cell(record.lat, record.lng, resolution) == area_id
    ]
    return members, resolution


def occupancy_grid(
    records: Iterable[SensorRecord],
    precision: int = GRID_PRECISION,
    top: int = GRID_TOP,
) -> List[OccupancyShare]:
    """Busiest grid squares (lat/lng rounded to ``precision`` places), highest first.

    Bays with unknown status add to a square's capacity but never to its
    occupied count. Ties keep first-seen order.
    """
    squares: Dict[str, List[int]] = {}
    for record in records:
        if not has_coordinates(record):
            continue
        key = f"{record.lat:.{precision}f},{record.lng:.{precision}f}"
        tally = squares.setdefault(key, [0, 0])
        tally[0] += record.capacity
        if record.available_spots is not None:
            tally[1] += max(0, record.capacity - record.available_spots)

    shares = [
        OccupancyShare(car_park=key, percentage=round_half_up(occupied / max(1, total) * 100))
        for key, (total, occupied) in squares.items()
    ]
    shares.sort(key=lambda share: share.percentage, reverse=True)
    return shares[: max(0, top)]
