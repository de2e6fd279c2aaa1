"""Resolve which column carries a concept in datasets whose schemas drift."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from logging_config import get_logger
from services.errors import SchemaMismatch, TransientFetchFailure
from upstream.opendata import OpenDataClient

logger = get_logger(__name__)

Row = Dict[str, Any]

ARRIVAL_FIELDS: Tuple[str, ...] = (
    "arrival_time",
    "arrivaltime",
    "arrivaldatetime",
    "arrival",
    "arrival_date_time",
    "arrival_time_utc",
    "arrival_datetime",
    "arrival_datetime_utc",
    "arrival_date_time_utc",
    "arrival_dt",
    "arrive_time",
    "arrived_time",
)
DEPARTURE_FIELDS: Tuple[str, ...] = (
    "departure_time",
    "departuretime",
    "departuredatetime",
    "departure",
    "departure_date_time",
    "departure_time_utc",
    "departure_datetime",
    "departure_datetime_utc",
    "departure_date_time_utc",
    "departure_dt",
    "depart_time",
    "left_time",
)
BAY_FIELDS: Tuple[str, ...] = (
    "bay_id",
    "bayid",
    "kerbsideid",
    "marker_id",
    "device_id",
    "sensor_id",
    "asset_id",
)
EVENT_TIME_FIELDS: Tuple[str, ...] = (
    "status_timestamp",
    "lastupdated",
    "event_time",
    "datetime",
    "timestamp",
    "date_time",
)
EVENT_ID_FIELDS: Tuple[str, ...] = (
    "kerbsideid",
    "bay_id",
    "bayid",
    "sensor_id",
    "device_id",
    "marker_id",
    "asset_id",
)
PEDESTRIAN_TIME_FIELDS: Tuple[str, ...] = (
    "sensing_date",
    "date_time",
    "datetime",
    "timestamp",
    "date",
)
PEDESTRIAN_COUNT_FIELDS: Tuple[str, ...] = (
    "pedestriancount",
    "pedestrian_count",
    "hourly_count",
    "hourlycount",
    "count",
    "total",
)

ANNUAL_ROLES: Mapping[str, Sequence[str]] = {
    "arrival": ARRIVAL_FIELDS,
    "departure": DEPARTURE_FIELDS,
}
PEDESTRIAN_ROLES: Mapping[str, Sequence[str]] = {
    "time": PEDESTRIAN_TIME_FIELDS,
    "count": PEDESTRIAN_COUNT_FIELDS,
}


def pick_field(row: Mapping[str, Any], names: Sequence[str]) -> Tuple[Optional[str], Any]:
    """Return the first candidate carrying a non-null value in ``row``."""
    for name in names:
        value = row.get(name)
        if value is not None:
            return name, value
    return None, None


def pick_value(row: Mapping[str, Any], names: Sequence[str]) -> Any:
    return pick_field(row, names)[1]


@dataclass
class DetectedFields:
    fields: Dict[str, Optional[str]]
    keys: List[str]

    def get(self, role: str) -> Optional[str]:
        return self.fields.get(role)

    def candidates_for(self, role: str, roles: Mapping[str, Sequence[str]]) -> Tuple[str, ...]:
        """The detected name alone, or every candidate when detection missed."""
        detected = self.fields.get(role)
        if detected:
            return (detected,)
        return tuple(roles[role])


@dataclass
class FieldProbe:
    field: str
    rows: List[Row]


FetchForField = Callable[[str], Awaitable[List[Row]]]


class FieldResolver:
    """Detects field names from a sample row and brute-forces when that fails."""

    def __init__(self, client: OpenDataClient) -> None:
        self.client = client

    async def detect(self, dataset_id: str, roles: Mapping[str, Sequence[str]]) -> DetectedFields:
        try:
            sample = await self.client.sample_row(dataset_id)
        except TransientFetchFailure as exc:
            logger.info(
                "Schema detection failed",
                extra={"dataset_id": dataset_id, "reason": exc.reason},
            )
            sample = None

        keys = list(sample.keys()) if sample else []
        fields = {
            role: next((name for name in candidates if name in keys), None)
            for role, candidates in roles.items()
        }
        return DetectedFields(fields=fields, keys=keys)

    @staticmethod
    async def probe(
        dataset_id: str,
        role: str,
        candidates: Sequence[str],
        fetch_for_field: FetchForField,
    ) -> FieldProbe:
        """Query with each candidate as the filter field until one returns rows."""
        for name in candidates:
            try:
                rows = await fetch_for_field(name)
            except TransientFetchFailure as exc:
                logger.debug(
                    "Candidate field failed",
                    extra={"dataset_id": dataset_id, "field": name, "reason": exc.reason},
                )
                continue
            if rows:
                logger.info(
                    "Resolved %s field",
                    role,
                    extra={"dataset_id": dataset_id, "field": name, "row_count": len(rows)},
                )
                return FieldProbe(field=name, rows=rows)
        raise SchemaMismatch(dataset_id, role, tuple(candidates))
