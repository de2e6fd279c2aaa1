"""Hourly free/occupied counts from the live status-event dataset."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from logging_config import get_logger
from models.records import HourlyBucket, LatLng
from services.errors import SchemaMismatch
from services.timeutils import floor_hour, hour_key, parse_timestamp, utcnow
from upstream.fields import EVENT_ID_FIELDS, EVENT_TIME_FIELDS, FieldResolver, pick_value
from upstream.opendata import (
    EVENTS_TIMEOUT,
    Circle,
    DatasetQuery,
    OpenDataClient,
    any_of,
    since,
)

logger = get_logger(__name__)

Row = Dict[str, Any]

ID_CHUNK_SIZE = 50
STATUS_FIELDS = ("status_description", "status")


def _status(row: Mapping[str, Any]) -> str:
    value = pick_value(row, STATUS_FIELDS)
    return "" if value is None else str(value).strip().lower()


def aggregate_status_events(rows: Iterable[Tuple[Row, Optional[str]]]) -> List[HourlyBucket]:
    """Bucket ``(row, time_field)`` pairs by UTC hour.

    Every event adds to ``total``; only ``unoccupied`` and ``present``/``occupied``
    statuses add to ``free`` and ``occ``.
    """
    buckets: Dict[str, HourlyBucket] = {}
    for row, time_field in rows:
        raw = row.get(time_field) if time_field else None
        if not raw:
            raw = pick_value(row, EVENT_TIME_FIELDS)
        moment = parse_timestamp(raw)
        if moment is None:
            continue
        key = hour_key(moment)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = HourlyBucket(ts=floor_hour(moment))
        status = _status(row)
        if status == "unoccupied":
            bucket.free += 1
        elif status in ("present", "occupied"):
            bucket.occ += 1
        bucket.total += 1
    return [buckets[key] for key in sorted(buckets)]


def chunked(values: Sequence[Any], size: int) -> List[Sequence[Any]]:
    return [values[index : index + size] for index in range(0, len(values), size)]


class EventHistory:
    """Reads recent status events; every method yields ``[]`` when no dataset is set."""

    def __init__(
        self,
        client: OpenDataClient,
        resolver: FieldResolver,
        dataset_id: Optional[str],
        *,
        limit: int = 50000,
        clock=utcnow,
    ) -> None:
        self.client = client
        self.resolver = resolver
        self.dataset_id = dataset_id
        self.limit = limit
        self._clock = clock

    def _since(self, days: int) -> datetime:
        return self._clock() - timedelta(days=days)

    async def hourly_counts(
        self,
        days: int = 7,
        origin: Optional[LatLng] = None,
        radius_m: Optional[float] = None,
    ) -> List[HourlyBucket]:
        if not self.dataset_id:
            return []
        dataset_id = self.dataset_id
        start = self._since(days)
        circle = Circle(origin.lat, origin.lng, radius_m) if origin and radius_m else None

        async def fetch_for_field(name: str) -> List[Row]:
            query = DatasetQuery(where=since(name, start), order_by=f"{name} DESC", circle=circle)
            return await self.client.fetch(dataset_id, query, self.limit, timeout=EVENTS_TIMEOUT)

        try:
            probe = await self.resolver.probe(dataset_id, "time", EVENT_TIME_FIELDS, fetch_for_field)
        except SchemaMismatch as exc:
            logger.info("No live events in window", extra={"dataset_id": dataset_id, "reason": str(exc)})
            return []
        return aggregate_status_events((row, probe.field) for row in probe.rows)

    async def hourly_by_ids(self, ids: Sequence[str], days: int = 14) -> List[HourlyBucket]:
        """Events for the given bay ids; the first id field that matches anything wins."""
        if not self.dataset_id or not ids:
            return []
        dataset_id = self.dataset_id
        start = self._since(days)
        chunks = chunked(list(ids), ID_CHUNK_SIZE)

        for id_field in EVENT_ID_FIELDS:
            collected: List[Tuple[Row, Optional[str]]] = []
            for chunk in chunks:
                id_predicate = any_of(id_field, list(chunk))

                async def fetch_for_field(name: str) -> List[Row]:
                    query = DatasetQuery(
                        where=f"{id_predicate} AND {since(name, start)}",
                        order_by=f"{name} DESC",
                    )
                    return await self.client.fetch(dataset_id, query, self.limit, timeout=EVENTS_TIMEOUT)

                try:
                    probe = await self.resolver.probe(dataset_id, "time", EVENT_TIME_FIELDS, fetch_for_field)
                except SchemaMismatch:
                    continue
                collected.extend((row, probe.field) for row in probe.rows)
            if collected:
                logger.info(
                    "Resolved live events by id",
                    extra={"dataset_id": dataset_id, "field": id_field, "row_count": len(collected)},
                )
                return aggregate_status_events(collected)
        return []

    async def sample(
        self,
        days: int = 30,
        origin: Optional[LatLng] = None,
        radius_m: Optional[float] = None,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """A handful of raw recent events and the time field that matched them."""
        out: Dict[str, Any] = {"dataset": self.dataset_id or "", "used_field": None, "keys": [], "sample": []}
        if not self.dataset_id:
            return out
        dataset_id = self.dataset_id
        start = self._since(days)
        circle = Circle(origin.lat, origin.lng, radius_m) if origin and radius_m else None

        async def fetch_for_field(name: str) -> List[Row]:
            query = DatasetQuery(where=since(name, start), order_by=f"{name} DESC", circle=circle)
            return await self.client.fetch(dataset_id, query, limit, timeout=EVENTS_TIMEOUT)

        try:
            probe = await self.resolver.probe(dataset_id, "time", EVENT_TIME_FIELDS, fetch_for_field)
        except SchemaMismatch:
            return out
        out.update(used_field=probe.field, keys=list(probe.rows[0].keys()), sample=probe.rows)
        return out
