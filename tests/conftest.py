from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Union

import httpx
import pytest

from datastore.timeseries import TimeSeriesStore
from services.pipeline import ParkingPipeline
from settings import Settings
from upstream.opendata import OpenDataClient

BASE_URL = "https://opendata.test"
RECORDS_PREFIX = "/api/explore/v2.1/catalog/datasets/"

Responder = Callable[[Dict[str, str]], Union[List[Dict[str, Any]], int]]


class FakeUpstream:
    """In-memory stand-in for the records API.

    Each dataset maps to a responder returning the full row list for a query
    (paged here by ``limit``/``offset``) or an HTTP status code to fail with.
    """

    def __init__(self) -> None:
        self.datasets: Dict[str, Responder] = {}
        self.requests: List[Dict[str, Any]] = []

    def add(self, dataset_id: str, responder: Union[Responder, List[Dict[str, Any]], int]) -> None:
        if callable(responder):
            self.datasets[dataset_id] = responder
        else:
            self.datasets[dataset_id] = lambda _params, value=responder: value

    def calls_for(self, dataset_id: str) -> List[Dict[str, str]]:
        return [call["params"] for call in self.requests if call["dataset_id"] == dataset_id]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        assert path.startswith(RECORDS_PREFIX) and path.endswith("/records")
        dataset_id = path[len(RECORDS_PREFIX) : -len("/records")]
        params = dict(request.url.params)
        self.requests.append({"dataset_id": dataset_id, "params": params})

        responder = self.datasets.get(dataset_id)
        if responder is None:
            return httpx.Response(404, json={"error": "unknown dataset"})
        result = responder(params)
        if isinstance(result, int):
            return httpx.Response(result, json={"error": "failure"})
        offset = int(params.get("offset", 0))
        limit = int(params.get("limit", 100))
        return httpx.Response(200, json={"results": result[offset : offset + limit]})


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture()
def make_client(upstream: FakeUpstream) -> Callable[..., OpenDataClient]:
    def factory(**kwargs: Any) -> OpenDataClient:
        http_client = httpx.AsyncClient(
            base_url=BASE_URL, transport=httpx.MockTransport(upstream.handler)
        )
        return OpenDataClient(BASE_URL, http_client=http_client, **kwargs)

    return factory


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        base_url=BASE_URL,
        api_key=None,
        live_dataset_id="live",
        events_dataset_id=None,
        annual_dataset_ids=("annual-2019", "annual-2020-jan-may"),
        annual_default_year=2019,
        annual_2020_may_only=True,
        pedestrian_counts_dataset_id="ped-counts",
        pedestrian_locations_dataset_id="ped-locations",
        retention_days=30,
        default_capacity=60,
        default_resolution=9,
        default_lat=-37.8136,
        default_lng=144.9631,
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(**values)


def live_row(bay: int, lat: float, lng: float, status: str) -> Dict[str, Any]:
    return {
        "kerbsideid": bay,
        "status_description": status,
        "location": {"lat": lat, "lon": lng},
        "lastupdated": datetime.now(timezone.utc).isoformat(),
    }


@pytest.fixture()
def live_rows() -> List[Dict[str, Any]]:
    """Two bays sharing a resolution-9 cell at the CBD origin plus one ~1 km away."""
    return [
        live_row(1, -37.8136, 144.9631, "Unoccupied"),
        live_row(2, -37.81361, 144.96311, "Present"),
        live_row(3, -37.8200, 144.9700, "Unoccupied"),
    ]


@pytest.fixture()
def pipeline_factory(make_client: Callable[..., OpenDataClient]) -> Callable[..., ParkingPipeline]:
    def factory(**overrides: Any) -> ParkingPipeline:
        return ParkingPipeline(make_client(), TimeSeriesStore(), make_settings(**overrides))

    return factory
