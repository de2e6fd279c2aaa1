"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional


@dataclass(frozen=True, slots=True)
class SensorRecord:
    """A single parking bay sensor reading normalized from an upstream row.

    ``available_spots`` is ``None`` when the feed did not say whether the bay
    is free; it must never be read as zero.
    """

    id: str
    lat: Optional[float]
    lng: Optional[float]
    capacity: int
    available_spots: Optional[int]
    updated_at: datetime
    name: str = ""
    raw_status: Any = None


@dataclass(slots=True)
class HourlyBucket:
    """Free/occupied counts for one entity over one UTC hour."""

    ts: datetime
    free: int = 0
    occ: int = 0
    total: int = 0


@dataclass(frozen=True, slots=True)
class LatLng:
    lat: float
    lng: float


@dataclass(slots=True)
class AreaCell:
    """Occupancy statistics for one H3 cell."""

    area_id: str
    center: LatLng
    boundary: List[List[float]]
    total_bays: int
    available_bays: int
    occupancy_rate: float
    updated_at: Optional[datetime]
    sample_ids: List[str] = field(default_factory=list)
    distance_m: Optional[float] = None
    score: Optional[float] = None


@dataclass(frozen=True, slots=True)
class HodSlot:
    mean: float = 0.5
    p10: float = 0.25
    p90: float = 0.9


@dataclass(slots=True)
class HodProfile:
    """Hour-of-day free-ratio profile; ``slots[h]`` covers UTC hour ``h``."""

    slots: List[HodSlot] = field(default_factory=lambda: [HodSlot() for _ in range(24)])
    total_from_rows: int = 0


@dataclass(frozen=True, slots=True)
class ForecastPoint:
    ts: datetime
    expected_available: int
    lo80: int
    hi80: int
    free_ratio: float


@dataclass(slots=True)
class HistoricalSeries:
    """Hourly series produced by one historical tier."""

    capacity: int
    series: List[HourlyBucket] = field(default_factory=list)
    tier: str = ""

    @property
    def usable(self) -> bool:
        return bool(self.series) and self.capacity > 0


@dataclass(slots=True)
class AreaForecast:
    area_id: str
    resolution: int
    total_bays: int
    horizon_hours: int
    source: str
    points: List[ForecastPoint] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class OccupancyShare:
    """Percentage of known-occupied bays in one coarse lat/lng grid square."""

    car_park: str
    percentage: int


@dataclass(frozen=True, slots=True)
class BusyHour:
    hour: datetime
    count: int


@dataclass(slots=True)
class ParkingStats:
    average_occupancy: List[OccupancyShare] = field(default_factory=list)
    busiest_hours: List[BusyHour] = field(default_factory=list)
