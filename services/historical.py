"""Hourly occupancy history with an ordered fallback across three tiers.

Tier A aggregates real arrival/departure events from the annual sensor
datasets. Tier B estimates a curve from nearby pedestrian counts. Tier C is a
fixed diurnal template and always succeeds, so callers always receive a
non-empty series with positive capacity.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from logging_config import get_logger
from models.records import HistoricalSeries, HourlyBucket, LatLng
from services.errors import PipelineError, SchemaMismatch, TransientFetchFailure
from services.normalizer import ID_FIELDS, LAT_EXTRACTORS, LNG_EXTRACTORS, first_coordinate
from services.spatial import haversine_m
from services.timeutils import (
    HOUR,
    clamp,
    floor_hour,
    hour_key,
    iter_hours,
    parse_timestamp,
    round_half_up,
)
from upstream.fields import (
    ANNUAL_ROLES,
    ARRIVAL_FIELDS,
    BAY_FIELDS,
    DEPARTURE_FIELDS,
    PEDESTRIAN_COUNT_FIELDS,
    PEDESTRIAN_ROLES,
    FieldResolver,
    pick_value,
)
from upstream.opendata import (
    ANNUAL_TIMEOUT,
    EVENTS_TIMEOUT,
    LIVE_TIMEOUT,
    Circle,
    DatasetQuery,
    OpenDataClient,
    any_of,
    time_range,
)

logger = get_logger(__name__)

Row = Dict[str, Any]

HOUR_OF_DAY_FIELDS = ("hourday", "hour", "hod")
PEDESTRIAN_ID_FIELDS = ("location_id", "sensor_id", "id", "recordid")


@dataclass(frozen=True)
class HistoryRequest:
    origin: LatLng
    radius_m: float
    start: datetime
    end: datetime
    dataset_ids: Tuple[str, ...] = ()

    @property
    def circle(self) -> Circle:
        return Circle(self.origin.lat, self.origin.lng, self.radius_m)


@dataclass
class TierContext:
    """State carried from one tier to the next."""

    observed_capacity: int = 0


@dataclass
class TierResult:
    tier: str
    data: Optional[HistoricalSeries] = None
    reason: Optional[str] = None
    observed_capacity: int = 0

    @property
    def ok(self) -> bool:
        return self.data is not None and self.data.usable

    @classmethod
    def failed(cls, tier: str, reason: str, observed_capacity: int = 0) -> "TierResult":
        return cls(tier=tier, reason=reason, observed_capacity=observed_capacity)


class Tier(Protocol):
    name: str

    async def run(self, request: HistoryRequest, context: TierContext) -> TierResult:
        ...


def series_from_ratios(
    start: datetime,
    end: datetime,
    capacity: int,
    ratio_for_hour: Callable[[int], float],
) -> List[HourlyBucket]:
    """Apply a free-ratio-by-hour curve to ``capacity`` for every hour of the window."""
    hours = list(iter_hours(start, end)) or [floor_hour(start)]
    series: List[HourlyBucket] = []
    for ts in hours:
        free = int(clamp(round_half_up(capacity * ratio_for_hour(ts.hour)), 0, capacity))
        series.append(HourlyBucket(ts=ts, free=free, occ=capacity - free, total=capacity))
    return series


# --------------------------------------------------------------------------
# Tier A: event overlap
# --------------------------------------------------------------------------


def event_identity(dataset_id: str, row: Row) -> str:
    record_id = row.get("recordid")
    if record_id is not None:
        return f"{dataset_id}|{record_id}"
    bay = pick_value(row, BAY_FIELDS)
    arrival = pick_value(row, ARRIVAL_FIELDS)
    departure = pick_value(row, DEPARTURE_FIELDS)
    return "|".join(
        [dataset_id] + ["" if value is None else str(value) for value in (bay, arrival, departure)]
    )


def aggregate_events_to_hourly(rows: Sequence[Row], start: datetime, end: datetime) -> HistoricalSeries:
    """Count, per hour of the window, the stays overlapping that hour.

    Capacity is the number of distinct bays seen; a bucket never reports more
    occupied bays than that.
    """
    bays = set()
    occupied: Dict[str, int] = {}
    hour_starts: Dict[str, datetime] = {}

    for row in rows:
        arrival_raw = pick_value(row, ARRIVAL_FIELDS)
        departure_raw = pick_value(row, DEPARTURE_FIELDS)
        if not arrival_raw and not departure_raw:
            continue
        arrival = parse_timestamp(arrival_raw or departure_raw)
        departure = parse_timestamp(departure_raw or arrival_raw)
        if arrival is None or departure is None:
            continue
        if departure < arrival:
            arrival, departure = departure, arrival

        first = max(arrival, start)
        last = min(departure, end)
        if last < first:
            continue

        current = floor_hour(first)
        final = floor_hour(last)
        while current <= final:
            key = hour_key(current)
            occupied[key] = occupied.get(key, 0) + 1
            hour_starts[key] = current
            current += HOUR

        bay = pick_value(row, BAY_FIELDS)
        if bay is not None and str(bay):
            bays.add(str(bay))

    capacity = len(bays)
    series = []
    for key in sorted(occupied):
        occ = min(occupied[key], capacity)
        series.append(HourlyBucket(ts=hour_starts[key], occ=occ, total=capacity, free=max(0, capacity - occ)))
    return HistoricalSeries(capacity=capacity, series=series, tier=EventOverlapTier.name)


class EventOverlapTier:
    name = "events"

    def __init__(
        self,
        client: OpenDataClient,
        resolver: FieldResolver,
        limit_per_dataset: int = 40000,
    ) -> None:
        self.client = client
        self.resolver = resolver
        self.limit_per_dataset = limit_per_dataset
        self._log = get_logger(__name__, tier=self.name)

    async def run(self, request: HistoryRequest, context: TierContext) -> TierResult:
        rows = await self.collect_rows(request)
        result = aggregate_events_to_hourly(rows, request.start, request.end)
        if not result.series:
            return TierResult.failed(self.name, "no events in window")
        if result.capacity <= 0:
            return TierResult.failed(self.name, "no bay identifiers")
        return TierResult(tier=self.name, data=result, observed_capacity=result.capacity)

    async def collect_rows(self, request: HistoryRequest) -> List[Row]:
        seen = set()
        out: List[Row] = []
        for dataset_id in request.dataset_ids:
            detected = await self.resolver.detect(dataset_id, ANNUAL_ROLES)
            arrivals, departures = await asyncio.gather(
                self._probe(dataset_id, "arrival", detected.candidates_for("arrival", ANNUAL_ROLES), request),
                self._probe(dataset_id, "departure", detected.candidates_for("departure", ANNUAL_ROLES), request),
            )
            for row in arrivals + departures:
                identity = event_identity(dataset_id, row)
                if identity in seen:
                    continue
                seen.add(identity)
                out.append(row)
            self._log.info(
                "Collected annual events",
                extra={"dataset_id": dataset_id, "row_count": len(arrivals) + len(departures)},
            )
        return out

    async def _probe(
        self,
        dataset_id: str,
        role: str,
        candidates: Sequence[str],
        request: HistoryRequest,
    ) -> List[Row]:
        async def fetch_for_field(name: str) -> List[Row]:
            query = DatasetQuery(
                where=time_range(name, request.start, request.end),
                order_by=f"{name} ASC",
                circle=request.circle,
            )
            return await self.client.fetch(
                dataset_id, query, self.limit_per_dataset, timeout=ANNUAL_TIMEOUT
            )

        try:
            probe = await self.resolver.probe(dataset_id, role, candidates, fetch_for_field)
        except SchemaMismatch as exc:
            self._log.info("No usable %s field", role, extra={"dataset_id": dataset_id, "reason": str(exc)})
            return []
        return probe.rows


# --------------------------------------------------------------------------
# Tier B: pedestrian-traffic proxy
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class FootTrafficCurve:
    """Map mean foot traffic per hour to a free ratio: busier streets, fewer bays.

    ``ratio = clamp(1 - weight * mean / max(1, max_mean), floor, ceiling)``.
    """

    weight: float = 0.9
    floor: float = 0.10
    ceiling: float = 1.0

    def __call__(self, means: Sequence[float]) -> List[float]:
        peak = max([1.0, *means])
        return [clamp(1 - self.weight * (mean / peak), self.floor, self.ceiling) for mean in means]


@dataclass
class PedestrianSensor:
    id: Any
    lat: float
    lng: float
    distance_m: float = 0.0


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def hourly_means(rows: Sequence[Row], time_field: Optional[str], count_field: Optional[str]) -> List[Optional[float]]:
    """Mean pedestrian count per hour of day; ``None`` where no sample exists."""
    sums = [0.0] * 24
    counts = [0] * 24
    for row in rows:
        hour = _to_number(pick_value(row, HOUR_OF_DAY_FIELDS))
        if hour is None and time_field and row.get(time_field) is not None:
            parsed = parse_timestamp(row[time_field])
            hour = float(parsed.hour) if parsed is not None else None
        if count_field and row.get(count_field) is not None:
            count = _to_number(row[count_field])
        else:
            count = _to_number(pick_value(row, PEDESTRIAN_COUNT_FIELDS))
        if hour is None or count is None or not 0 <= hour <= 23 or hour != int(hour):
            continue
        sums[int(hour)] += count
        counts[int(hour)] += 1
    return [sums[h] / counts[h] if counts[h] else None for h in range(24)]


class PedestrianProxyTier:
    name = "pedestrian"

    def __init__(
        self,
        client: OpenDataClient,
        resolver: FieldResolver,
        *,
        live_dataset_id: str,
        locations_dataset_id: str,
        counts_dataset_id: str,
        default_capacity: int = 60,
        curve: Callable[[Sequence[float]], List[float]] = FootTrafficCurve(),
        max_sensors: int = 8,
        max_rows: int = 100000,
    ) -> None:
        self.client = client
        self.resolver = resolver
        self.live_dataset_id = live_dataset_id
        self.locations_dataset_id = locations_dataset_id
        self.counts_dataset_id = counts_dataset_id
        self.default_capacity = default_capacity
        self.curve = curve
        self.max_sensors = max_sensors
        self.max_rows = max_rows
        self._log = get_logger(__name__, tier=self.name)

    async def run(self, request: HistoryRequest, context: TierContext) -> TierResult:
        capacity = await self.estimate_capacity(request)
        try:
            sensors = await self.nearest_sensors(request)
        except TransientFetchFailure as exc:
            return TierResult.failed(self.name, exc.reason, observed_capacity=capacity)
        if not sensors:
            return TierResult.failed(self.name, "no pedestrian sensors nearby", observed_capacity=capacity)

        detected = await self.resolver.detect(self.counts_dataset_id, PEDESTRIAN_ROLES)
        time_field = detected.get("time")
        try:
            rows = await self.fetch_counts(sensors, request, time_field)
        except TransientFetchFailure as exc:
            if not time_field:
                return TierResult.failed(self.name, exc.reason, observed_capacity=capacity)
            self._log.info(
                "Windowed count query failed; retrying without time filter",
                extra={"dataset_id": self.counts_dataset_id, "field": time_field, "reason": exc.reason},
            )
            time_field = None
            try:
                rows = await self.fetch_counts(sensors, request, None)
            except TransientFetchFailure as retry_exc:
                return TierResult.failed(self.name, retry_exc.reason, observed_capacity=capacity)

        means = hourly_means(rows, time_field, detected.get("count"))
        if all(mean is None for mean in means):
            return TierResult.failed(self.name, "pedestrian counts empty", observed_capacity=capacity)

        ratios = self.curve([mean or 0.0 for mean in means])
        cap = capacity if capacity > 0 else self.default_capacity
        series = series_from_ratios(request.start, request.end, cap, lambda hour: ratios[hour])
        self._log.info(
            "Built pedestrian proxy series",
            extra={"row_count": len(rows), "capacity": cap},
        )
        return TierResult(
            tier=self.name,
            data=HistoricalSeries(capacity=cap, series=series, tier=self.name),
            observed_capacity=capacity,
        )

    async def estimate_capacity(self, request: HistoryRequest) -> int:
        """Distinct live-sensor ids near the origin; 0 when the feed is unavailable."""
        try:
            rows = await self.client.fetch(
                self.live_dataset_id, DatasetQuery(circle=request.circle), 3000, timeout=LIVE_TIMEOUT
            )
        except TransientFetchFailure as exc:
            self._log.info("Capacity estimate unavailable", extra={"reason": exc.reason})
            return 0
        ids = {str(value) for value in (pick_value(row, ID_FIELDS) for row in rows) if value is not None}
        return len(ids)

    async def nearest_sensors(self, request: HistoryRequest) -> List[PedestrianSensor]:
        rows = await self.client.fetch(
            self.locations_dataset_id,
            DatasetQuery(circle=request.circle),
            100,
            timeout=EVENTS_TIMEOUT,
        )
        sensors: List[PedestrianSensor] = []
        for row in rows:
            lat = first_coordinate(row, LAT_EXTRACTORS)
            lng = first_coordinate(row, LNG_EXTRACTORS)
            sensor_id = pick_value(row, PEDESTRIAN_ID_FIELDS)
            if lat is None or lng is None or sensor_id is None:
                continue
            distance = haversine_m(request.origin.lat, request.origin.lng, lat, lng)
            sensors.append(PedestrianSensor(id=sensor_id, lat=lat, lng=lng, distance_m=distance))
        sensors.sort(key=lambda sensor: sensor.distance_m)
        return sensors[: self.max_sensors]

    async def fetch_counts(
        self,
        sensors: Sequence[PedestrianSensor],
        request: HistoryRequest,
        time_field: Optional[str],
    ) -> List[Row]:
        where = any_of("location_id", [sensor.id for sensor in sensors])
        if time_field:
            where = f"{time_range(time_field, request.start, request.end)} AND {where}"
        return await self.client.fetch(
            self.counts_dataset_id, DatasetQuery(where=where), self.max_rows, timeout=ANNUAL_TIMEOUT
        )


# --------------------------------------------------------------------------
# Tier C: synthetic diurnal curve
# --------------------------------------------------------------------------


def diurnal_free_ratio(hour: int) -> float:
    if 7 <= hour <= 9:
        return 0.15
    if 10 <= hour <= 15:
        return 0.4
    if 16 <= hour <= 19:
        return 0.2
    return 0.7


class SyntheticDiurnalTier:
    name = "synthetic"

    def __init__(self, default_capacity: int = 60) -> None:
        self.default_capacity = max(1, default_capacity)

    async def run(self, request: HistoryRequest, context: TierContext) -> TierResult:
        return TierResult(tier=self.name, data=self.build(request, context.observed_capacity))

    def build(self, request: HistoryRequest, observed_capacity: int = 0) -> HistoricalSeries:
        cap = observed_capacity if observed_capacity > 0 else self.default_capacity
        series = series_from_ratios(request.start, request.end, cap, diurnal_free_ratio)
        return HistoricalSeries(capacity=cap, series=series, tier=self.name)


# --------------------------------------------------------------------------
# Orchestration
# --------------------------------------------------------------------------


class HistoricalAggregator:
    """Runs the tiers in order and returns the first usable series."""

    def __init__(self, tiers: Sequence[Tier], fallback: SyntheticDiurnalTier) -> None:
        self.tiers = list(tiers)
        self.fallback = fallback

    async def fetch_annual_hourly_by_radius(
        self,
        origin: LatLng,
        radius_m: float,
        start: datetime,
        end: datetime,
        dataset_ids: Sequence[str] = (),
    ) -> HistoricalSeries:
        request = HistoryRequest(
            origin=origin,
            radius_m=radius_m,
            start=start,
            end=end,
            dataset_ids=tuple(dataset_ids),
        )
        context = TierContext()
        for tier in self.tiers:
            try:
                result = await tier.run(request, context)
            except PipelineError as exc:
                result = TierResult.failed(tier.name, str(exc))
            context.observed_capacity = max(context.observed_capacity, result.observed_capacity)
            if result.ok:
                logger.info(
                    "Historical tier succeeded",
                    extra={"tier": tier.name, "capacity": result.data.capacity},
                )
                return result.data
            logger.info("Historical tier unusable", extra={"tier": tier.name, "reason": result.reason})

        return self.fallback.build(request, context.observed_capacity)


def build_historical_aggregator(
    client: OpenDataClient,
    resolver: FieldResolver,
    *,
    live_dataset_id: str,
    locations_dataset_id: str,
    counts_dataset_id: str,
    default_capacity: int = 60,
) -> HistoricalAggregator:
    synthetic = SyntheticDiurnalTier(default_capacity=default_capacity)
    tiers: List[Tier] = [
        EventOverlapTier(client, resolver),
        PedestrianProxyTier(
            client,
            resolver,
            live_dataset_id=live_dataset_id,
            locations_dataset_id=locations_dataset_id,
            counts_dataset_id=counts_dataset_id,
            default_capacity=default_capacity,
        ),
        synthetic,
    ]
    return HistoricalAggregator(tiers, fallback=synthetic)


def window_for_year(year: int, may_only_2020: bool = True) -> Tuple[datetime, datetime]:
    start = datetime(year, 1, 1, tzinfo=timezone.utc)
    if year == 2020 and may_only_2020:
        return start, datetime(2020, 5, 31, 23, 59, 59, tzinfo=timezone.utc)
    return start, datetime(year, 12, 31, 23, 59, 59, tzinfo=timezone.utc)


def datasets_for_year(year: int, configured: Sequence[str]) -> Tuple[str, ...]:
    matching = tuple(dataset_id for dataset_id in configured if str(year) in dataset_id)
    return matching or tuple(configured)


@dataclass
class DatasetSample:
    dataset_id: str
    keys: List[str] = field(default_factory=list)
    used_field: Optional[str] = None
    sample: List[Row] = field(default_factory=list)


async def sample_annual_dataset(
    client: OpenDataClient,
    resolver: FieldResolver,
    dataset_id: str,
    start: datetime,
    end: datetime,
    origin: Optional[LatLng] = None,
    radius_m: Optional[float] = None,
    limit: int = 5,
) -> DatasetSample:
    """Report which time field of an annual dataset answers a window query."""
    detected = await resolver.detect(dataset_id, ANNUAL_ROLES)
    out = DatasetSample(dataset_id=dataset_id, keys=detected.keys)
    circle = Circle(origin.lat, origin.lng, radius_m) if origin and radius_m else None
    ordered = [detected.get("arrival"), detected.get("departure"), *ARRIVAL_FIELDS, *DEPARTURE_FIELDS]
    candidates = list(dict.fromkeys(name for name in ordered if name))

    async def fetch_for_field(name: str) -> List[Row]:
        query = DatasetQuery(where=time_range(name, start, end), order_by=f"{name} ASC", circle=circle)
        return await client.fetch(dataset_id, query, limit, timeout=ANNUAL_TIMEOUT)

    try:
        probe = await resolver.probe(dataset_id, "time", candidates, fetch_for_field)
    except SchemaMismatch:
        return out
    out.used_field = probe.field
    out.sample = probe.rows[:limit]
    return out
