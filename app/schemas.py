"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from services.forecaster import ForecastSource


class DomainModel(BaseModel):
    """Base for payloads built straight from domain dataclasses."""

    model_config = ConfigDict(from_attributes=True)


class Coordinates(DomainModel):
    lat: float
    lng: float


class ParkingSensor(DomainModel):
    """A live bay; ``available_spots`` is null when the status is unknown."""

    id: str
    name: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None
    capacity: int = Field(..., ge=1)
    available_spots: Optional[int] = Field(default=None, ge=0)
    updated_at: datetime
    raw_status: Any = None


class ParkingArea(DomainModel):
    """Occupancy summary for one H3 cell."""

    area_id: str
    center: Coordinates
    boundary: List[List[float]] = Field(default_factory=list)
    total_bays: int = Field(..., ge=0)
    available_bays: int = Field(..., ge=0)
    occupancy_rate: float = Field(..., ge=0, le=1)
    updated_at: Optional[datetime] = None
    sample_ids: List[str] = Field(default_factory=list)
    distance_m: Optional[float] = None
    score: Optional[float] = None


class ParkingAreaDetail(ParkingArea):
    resolution: int = Field(..., ge=0, le=15)
    members: List[ParkingSensor] = Field(default_factory=list)


class HourlyPoint(DomainModel):
    ts: datetime
    free: int = 0
    occ: int = 0
    total: int = 0


class AreaHistoryResponse(DomainModel):
    area_id: str
    resolution: int
    total_bays: int
    source: ForecastSource
    series: List[HourlyPoint] = Field(default_factory=list)
    year: Optional[int] = None
    tier: Optional[str] = Field(
        default=None, description="Historical tier that produced the series."
    )


class ForecastPoint(DomainModel):
    ts: datetime
    expected_available: int = Field(..., ge=0)
    lo80: int = Field(..., ge=0)
    hi80: int = Field(..., ge=0)
    free_ratio: float = Field(..., ge=0, le=1)


class AreaForecastResponse(DomainModel):
    area_id: str
    resolution: int
    total_bays: int = Field(..., ge=1)
    horizon_hours: int = Field(..., ge=1, le=48)
    source: ForecastSource
    points: List[ForecastPoint] = Field(default_factory=list)


class StoredHistoryResponse(BaseModel):
    """In-memory snapshots recorded for an area."""

    area_id: str
    days: int
    points: int
    series: List[HourlyPoint] = Field(default_factory=list)


class AnnualSampleResponse(DomainModel):
    dataset_id: str
    keys: List[str] = Field(default_factory=list)
    used_field: Optional[str] = None
    sample: List[Dict[str, Any]] = Field(default_factory=list)


class EventsSampleResponse(BaseModel):
    dataset: str
    used_field: Optional[str] = None
    keys: List[str] = Field(default_factory=list)
    sample: List[Dict[str, Any]] = Field(default_factory=list)


class OccupancyShareResponse(DomainModel):
    car_park: str = Field(..., description="Grid square as 'lat,lng' rounded to 3 places.")
    percentage: int = Field(..., ge=0, le=100)


class BusyHourResponse(DomainModel):
    hour: datetime
    count: int = Field(..., ge=0)


class ParkingStatsResponse(DomainModel):
    average_occupancy: List[OccupancyShareResponse] = Field(default_factory=list)
    busiest_hours: List[BusyHourResponse] = Field(default_factory=list)
