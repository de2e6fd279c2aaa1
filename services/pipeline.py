"""Pipeline facade wiring acquisition, aggregation, history and forecasting."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence, Tuple

from datastore.timeseries import TimeSeriesStore
from logging_config import get_logger
from models.records import (
    AreaCell,
    AreaForecast,
    BusyHour,
    HistoricalSeries,
    HourlyBucket,
    LatLng,
    ParkingStats,
    SensorRecord,
)
from services import forecaster, ranking, spatial
from services.errors import TransientFetchFailure
from services.events import EventHistory
from services.forecaster import ForecastSource
from services.historical import (
    DatasetSample,
    HistoricalAggregator,
    build_historical_aggregator,
    datasets_for_year,
    sample_annual_dataset,
    window_for_year,
)
from services.normalizer import normalize_all
from services.timeutils import clamp, utcnow
from settings import Settings, get_settings
from upstream.fields import FieldResolver
from upstream.opendata import LIVE_TIMEOUT, BoundingBox, Circle, DatasetQuery, OpenDataClient

logger = get_logger(__name__)

MAX_LIVE_ROWS = 5000
STATS_LIVE_ROWS = 2000
AREA_MEMBER_ROWS = 3000
MEMBER_DETAIL_LIMIT = 200
MIN_FALLBACK_RADIUS = 600
MAX_FALLBACK_RADIUS = 2000
MIN_FORECAST_HOURS, MAX_FORECAST_HOURS = 1, 48
MIN_LOOKBACK_DAYS, MAX_LOOKBACK_DAYS = 7, 3650


@dataclass
class AreaDetail:
    cell: AreaCell
    resolution: int
    members: List[SensorRecord] = field(default_factory=list)


@dataclass
class AreaHistory:
    area_id: str
    resolution: int
    total_bays: int
    source: str
    series: List[HourlyBucket] = field(default_factory=list)
    year: Optional[int] = None
    tier: Optional[str] = None


class ParkingPipeline:
    """Owns the upstream client and the area history store for one process."""

    def __init__(
        self,
        client: OpenDataClient,
        store: TimeSeriesStore,
        settings: Settings,
        *,
        resolver: Optional[FieldResolver] = None,
        historical: Optional[HistoricalAggregator] = None,
        events: Optional[EventHistory] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.settings = settings
        self.resolver = resolver or FieldResolver(client)
        self.historical = historical or build_historical_aggregator(
            client,
            self.resolver,
            live_dataset_id=settings.live_dataset_id,
            locations_dataset_id=settings.pedestrian_locations_dataset_id,
            counts_dataset_id=settings.pedestrian_counts_dataset_id,
            default_capacity=settings.default_capacity,
        )
        self.events = events or EventHistory(client, self.resolver, settings.events_dataset_id)

    @property
    def default_origin(self) -> LatLng:
        return LatLng(self.settings.default_lat, self.settings.default_lng)

    # ------------------------------------------------------------------
    # Core contracts
    # ------------------------------------------------------------------

    async def fetch_live_sensors(
        self,
        *,
        origin: Optional[LatLng] = None,
        radius_m: Optional[float] = None,
        bbox: Optional[BoundingBox] = None,
        limit: int = 100,
    ) -> List[SensorRecord]:
        """Current bay status inside ``bbox``, or within ``radius_m`` of ``origin``.

        A bounding box takes precedence over the circle. Upstream failures
        propagate as :class:`TransientFetchFailure`.
        """
        circle = None
        if bbox is None and origin is not None and radius_m is not None:
            circle = Circle(origin.lat, origin.lng, radius_m)
        query = DatasetQuery(order_by="lastupdated DESC", circle=circle, bbox=bbox)
        desired = int(clamp(limit or 100, 1, MAX_LIVE_ROWS))
        rows = await self.client.fetch(
            self.settings.live_dataset_id, query, desired, timeout=LIVE_TIMEOUT
        )
        return normalize_all(rows)

    async def fetch_annual_hourly_by_radius(
        self,
        origin: LatLng,
        radius_m: float,
        start,
        end,
        dataset_ids: Optional[Sequence[str]] = None,
    ) -> HistoricalSeries:
        ids = tuple(dataset_ids) if dataset_ids else self.settings.annual_dataset_ids
        return await self.historical.fetch_annual_hourly_by_radius(origin, radius_m, start, end, ids)

    @staticmethod
    def aggregate_sensors_to_areas(records: Sequence[SensorRecord], resolution: int = 9) -> List[AreaCell]:
        return spatial.aggregate_sensors_to_areas(records, resolution)

    @staticmethod
    def rank_areas(
        cells: Sequence[AreaCell],
        origin: Optional[LatLng] = None,
        strategy: "str | ranking.RankStrategy | None" = ranking.RankStrategy.mix,
    ) -> List[AreaCell]:
        return ranking.rank_areas(cells, origin, strategy)

    # ------------------------------------------------------------------
    # Area views
    # ------------------------------------------------------------------

    async def areas(
        self,
        origin: LatLng,
        radius_m: float = 1200,
        resolution: Optional[int] = None,
        limit: int = 20,
        strategy: "str | ranking.RankStrategy | None" = ranking.RankStrategy.mix,
    ) -> List[AreaCell]:
        """Ranked cells around ``origin``; every returned cell is recorded as a snapshot."""
        resolution = self.settings.default_resolution if resolution is None else resolution
        spatial.validate_resolution(resolution)
        records = await self.fetch_live_sensors(origin=origin, radius_m=radius_m, limit=2000)
        cells = self.aggregate_sensors_to_areas(records, resolution)
        top = self.rank_areas(cells, origin, strategy)[: int(clamp(limit, 1, 100))]
        for cell in top:
            self.store.record(
                cell.area_id,
                free=cell.available_bays,
                occ=max(0, cell.total_bays - cell.available_bays),
                total=cell.total_bays,
                ts=cell.updated_at,
            )
        logger.info(
            "Computed parking areas",
            extra={"resolution": resolution, "row_count": len(records)},
        )
        return top

    async def resolve_area_members(
        self,
        area_id: str,
        origin: Optional[LatLng] = None,
        radius_m: float = 1200,
    ) -> Tuple[List[SensorRecord], int]:
        """Live sensors whose cell at the area's own resolution is ``area_id``.

        Falls back to a search around the cell centre when nothing near
        ``origin`` belongs to the area.
        """
        spatial.validate_cell(area_id)
        center = spatial.cell_center(area_id)
        first_origin = origin or center
        records = await self.fetch_live_sensors(
            origin=first_origin, radius_m=radius_m, limit=AREA_MEMBER_ROWS
        )
        members, resolution = spatial.members_of(records, area_id)
        if members:
            return members, resolution

        fallback_radius = clamp(radius_m or 1200, MIN_FALLBACK_RADIUS, MAX_FALLBACK_RADIUS)
        logger.info(
            "No members near origin; searching around cell centre",
            extra={"area_id": area_id, "resolution": resolution},
        )
        records = await self.fetch_live_sensors(
            origin=center, radius_m=fallback_radius, limit=AREA_MEMBER_ROWS
        )
        return spatial.members_of(records, area_id)

    async def area_detail(
        self,
        area_id: str,
        origin: Optional[LatLng] = None,
        radius_m: float = 1200,
    ) -> AreaDetail:
        members, resolution = await self.resolve_area_members(area_id, origin, radius_m)
        cells = self.aggregate_sensors_to_areas(members, resolution)
        if not cells:
            raise KeyError(f"Area {area_id!r} not found or empty.")
        return AreaDetail(cell=cells[0], resolution=resolution, members=members[:MEMBER_DETAIL_LIMIT])

    async def find_sensor(
        self,
        sensor_id: str,
        origin: Optional[LatLng] = None,
        radius_m: float = 1000,
    ) -> SensorRecord:
        """Best-effort lookup by exact id, then by name substring, near ``origin``."""
        records = await self.fetch_live_sensors(
            origin=origin or self.default_origin, radius_m=radius_m, limit=1000
        )
        for record in records:
            if record.id == sensor_id:
                return record
        for record in records:
            if sensor_id in (record.name or ""):
                return record
        raise KeyError(f"Parking sensor {sensor_id!r} not found.")

    # ------------------------------------------------------------------
    # History and forecasts
    # ------------------------------------------------------------------

    def _annual_inputs(self, year: Optional[int]) -> Tuple[int, Any, Any, Tuple[str, ...]]:
        year = year or self.settings.annual_default_year
        start, end = window_for_year(year, self.settings.annual_2020_may_only)
        return year, start, end, datasets_for_year(year, self.settings.annual_dataset_ids)

    async def history(
        self,
        origin: LatLng,
        radius_m: float = 1200,
        resolution: Optional[int] = None,
        source: Optional[str] = ForecastSource.live,
        year: Optional[int] = None,
        days: int = 30,
    ) -> AreaHistory:
        """Hourly history around a coordinate from the annual tiers or live events."""
        resolution = self.settings.default_resolution if resolution is None else resolution
        if ForecastSource.parse(source) == ForecastSource.annual:
            year, start, end, dataset_ids = self._annual_inputs(year)
            series = await self.fetch_annual_hourly_by_radius(origin, radius_m, start, end, dataset_ids)
            return AreaHistory(
                area_id="bycoord",
                resolution=resolution,
                total_bays=series.capacity,
                source=ForecastSource.annual,
                series=series.series,
                year=year,
                tier=series.tier,
            )

        rows = await self.events.hourly_counts(days=max(1, days), origin=origin, radius_m=radius_m)
        total = max((bucket.total for bucket in rows), default=0)
        return AreaHistory(
            area_id="bycoord",
            resolution=resolution,
            total_bays=total,
            source=ForecastSource.live,
            series=rows,
        )

    async def forecast(
        self,
        *,
        area_id: Optional[str] = None,
        origin: Optional[LatLng] = None,
        hours: int = 24,
        source: Optional[str] = ForecastSource.live,
        days: int = 365,
        year: Optional[int] = None,
        radius_m: float = 1200,
        resolution: Optional[int] = None,
    ) -> AreaForecast:
        """Forecast free bays for an area id, or for the cell containing ``origin``."""
        hours = int(clamp(hours, MIN_FORECAST_HOURS, MAX_FORECAST_HOURS))
        days = int(clamp(days, MIN_LOOKBACK_DAYS, MAX_LOOKBACK_DAYS))
        source = ForecastSource.parse(source)

        if area_id is not None:
            spatial.validate_cell(area_id)
            resolution = spatial.cell_resolution(area_id)
            annual_origin = spatial.cell_center(area_id)
            member_origin = origin or annual_origin
        else:
            origin = origin or self.default_origin
            resolution = self.settings.default_resolution if resolution is None else resolution
            area_id = spatial.cell_of(origin.lat, origin.lng, resolution)
            annual_origin = member_origin = origin

        capacity = 0
        rows: List[HourlyBucket]
        if source == ForecastSource.annual:
            _, start, end, dataset_ids = self._annual_inputs(year)
            series = await self.fetch_annual_hourly_by_radius(annual_origin, radius_m, start, end, dataset_ids)
            capacity = series.capacity
            rows = series.series
        else:
            try:
                members, _ = await self.resolve_area_members(area_id, member_origin, radius_m)
            except TransientFetchFailure as exc:
                logger.warning(
                    "Live members unavailable; forecasting from stored history",
                    extra={"area_id": area_id, "dataset_id": exc.dataset_id, "reason": exc.reason},
                )
                members = []
            capacity = len(members)
            rows = await self.events.hourly_by_ids([member.id for member in members], days=days)

        if not rows:
            rows = self.store.read(area_id, days=days)

        profile = forecaster.build_hod_profile(rows)
        base_total = max(1, capacity, profile.total_from_rows)
        points = forecaster.forecast(hours, base_total, profile, now=utcnow())
        logger.info(
            "Built forecast",
            extra={"area_id": area_id, "capacity": base_total, "row_count": len(rows)},
        )
        return AreaForecast(
            area_id=area_id,
            resolution=resolution,
            total_bays=base_total,
            horizon_hours=hours,
            source=source,
            points=points,
        )

    async def stats(
        self,
        origin: Optional[LatLng] = None,
        radius_m: float = 1200,
        days: int = 7,
    ) -> ParkingStats:
        """Hourly occupied counts over the last ``days`` plus the busiest grid squares now."""
        origin = origin or self.default_origin
        end = utcnow()
        start = end - timedelta(days=int(clamp(days, 1, MAX_LOOKBACK_DAYS)))
        series = await self.fetch_annual_hourly_by_radius(origin, radius_m, start, end)
        busiest = [BusyHour(hour=bucket.ts, count=bucket.occ) for bucket in series.series]

        try:
            records = await self.fetch_live_sensors(
                origin=origin, radius_m=radius_m, limit=STATS_LIVE_ROWS
            )
        except TransientFetchFailure as exc:
            logger.warning(
                "Live snapshot unavailable; occupancy grid left empty",
                extra={"dataset_id": exc.dataset_id, "reason": exc.reason},
            )
            records = []
        return ParkingStats(
            average_occupancy=spatial.occupancy_grid(records),
            busiest_hours=busiest,
        )

    def area_history(self, area_id: str, days: int = 14) -> List[HourlyBucket]:
        return self.store.read(area_id, days=max(1, days))

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def sample_annual_dataset(
        self,
        dataset_id: str,
        year: Optional[int] = None,
        origin: Optional[LatLng] = None,
        radius_m: float = 1200,
        limit: int = 5,
    ) -> DatasetSample:
        _, start, end, _ = self._annual_inputs(year)
        return await sample_annual_dataset(
            self.client,
            self.resolver,
            dataset_id,
            start,
            end,
            origin=origin or self.default_origin,
            radius_m=radius_m,
            limit=int(clamp(limit, 1, 50)),
        )

    async def sample_live_events(
        self,
        days: int = 30,
        origin: Optional[LatLng] = None,
        radius_m: float = 1200,
    ) -> Dict[str, Any]:
        return await self.events.sample(
            days=int(clamp(days, 1, MAX_LOOKBACK_DAYS)),
            origin=origin or self.default_origin,
            radius_m=radius_m,
        )

    async def aclose(self) -> None:
        await self.client.aclose()


@lru_cache
def build_default_store() -> TimeSeriesStore:
    return TimeSeriesStore(retention_days=get_settings().retention_days)


@lru_cache
def build_default_pipeline() -> ParkingPipeline:
    """Factory that wires the pipeline from environment settings."""
    settings = get_settings()
    client = OpenDataClient(settings.base_url, api_key=settings.api_key)
    return ParkingPipeline(client=client, store=build_default_store(), settings=settings)
