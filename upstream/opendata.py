"""Paginated client for Opendatasoft "explore v2.1" dataset records."""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from logging_config import get_logger
from services.errors import TransientFetchFailure
from services.timeutils import to_iso

logger = get_logger(__name__)

PAGE_MAX = 100

LIVE_TIMEOUT = 15.0
EVENTS_TIMEOUT = 20.0
ANNUAL_TIMEOUT = 30.0
SAMPLE_TIMEOUT = 15.0


@dataclass(frozen=True)
class Circle:
    lat: float
    lng: float
    radius_m: float

    def as_param(self) -> str:
        return f"{self.lat},{self.lng},{max(1, int(self.radius_m))}"


@dataclass(frozen=True)
class BoundingBox:
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    def as_predicate(self, geo_field: str = "location") -> str:
        ring = ", ".join(
            f"{lon} {lat}"
            for lon, lat in (
                (self.min_lon, self.min_lat),
                (self.max_lon, self.min_lat),
                (self.max_lon, self.max_lat),
                (self.min_lon, self.max_lat),
                (self.min_lon, self.min_lat),
            )
        )
        return f"within_polygon({geo_field}, geom'POLYGON(({ring}))')"


@dataclass(frozen=True)
class DatasetQuery:
    """Filters applied to every page of a paginated fetch."""

    where: Optional[str] = None
    order_by: Optional[str] = None
    circle: Optional[Circle] = None
    bbox: Optional[BoundingBox] = None

    def to_params(self, limit: int, offset: int) -> Dict[str, str]:
        clauses = [clause for clause in (self.where,) if clause]
        if self.bbox is not None:
            clauses.append(self.bbox.as_predicate())
        params: Dict[str, str] = {"limit": str(limit), "offset": str(offset)}
        if len(clauses) == 1:
            params["where"] = clauses[0]
        elif clauses:
            params["where"] = " AND ".join(f"({clause})" for clause in clauses)
        if self.order_by:
            params["order_by"] = self.order_by
        if self.circle is not None:
            params["geofilter.distance"] = self.circle.as_param()
        return params

    def with_where(self, where: Optional[str]) -> "DatasetQuery":
        return replace(self, where=where)


def time_range(field: str, start: datetime, end: datetime) -> str:
    return f'{field} >= "{to_iso(start)}" AND {field} <= "{to_iso(end)}"'


def since(field: str, start: datetime) -> str:
    return f'{field} >= "{to_iso(start)}"'


def _literal(value: Any) -> str:
    text = str(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return text
    if text.isdigit():
        return text
    escaped = text.replace('"', '\\"')
    return f'"{escaped}"'


def any_of(field: str, values: List[Any]) -> str:
    """Build ``(field=1 OR field="a")`` for an id predicate."""
    return "(" + " OR ".join(f"{field}={_literal(value)}" for value in values) + ")"


class OpenDataClient:
    """Fetches dataset records page by page over a shared async HTTP client."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        page_size: int = PAGE_MAX,
    ) -> None:
        headers = {"Authorization": f"Apikey {api_key}"} if api_key else None
        self._client = http_client or httpx.AsyncClient(base_url=base_url, headers=headers)
        self.page_size = max(1, min(page_size, PAGE_MAX))

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def records_path(dataset_id: str) -> str:
        return f"/api/explore/v2.1/catalog/datasets/{quote(dataset_id, safe='')}/records"

    async def fetch_page(
        self,
        dataset_id: str,
        query: DatasetQuery,
        *,
        limit: int,
        offset: int = 0,
        timeout: float = LIVE_TIMEOUT,
    ) -> List[Dict[str, Any]]:
        params = query.to_params(limit=limit, offset=offset)
        try:
            response = await self._client.get(
                self.records_path(dataset_id), params=params, timeout=timeout
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise TransientFetchFailure(
                dataset_id, f"HTTP {exc.response.status_code}", offset=offset
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientFetchFailure(
                dataset_id, f"{type(exc).__name__}: {exc}", offset=offset
            ) from exc
        except ValueError as exc:
            raise TransientFetchFailure(dataset_id, "response is not JSON", offset=offset) from exc

        rows = payload.get("results") if isinstance(payload, dict) else payload
        if rows is None:
            rows = []
        if not isinstance(rows, list):
            raise TransientFetchFailure(dataset_id, "unexpected payload shape", offset=offset)
        return [row for row in rows if isinstance(row, dict)]

    async def fetch(
        self,
        dataset_id: str,
        query: DatasetQuery,
        desired_count: int,
        *,
        timeout: float = LIVE_TIMEOUT,
    ) -> List[Dict[str, Any]]:
        """Collect up to ``desired_count`` rows, stopping at the first short page."""
        start_time = time.perf_counter()
        results: List[Dict[str, Any]] = []
        offset = 0
        while len(results) < desired_count:
            page_size = min(self.page_size, desired_count - len(results))
            chunk = await self.fetch_page(
                dataset_id, query, limit=page_size, offset=offset, timeout=timeout
            )
            if not chunk:
                break
            results.extend(chunk)
            offset += len(chunk)
            if len(chunk) < page_size:
                break

        logger.debug(
            "Fetched dataset rows",
            extra={
                "dataset_id": dataset_id,
                "row_count": len(results),
                "elapsed_ms": int((time.perf_counter() - start_time) * 1000),
            },
        )
        return results

    async def sample_row(
        self, dataset_id: str, *, timeout: float = SAMPLE_TIMEOUT
    ) -> Optional[Dict[str, Any]]:
        rows = await self.fetch_page(dataset_id, DatasetQuery(), limit=1, timeout=timeout)
        return rows[0] if rows else None
