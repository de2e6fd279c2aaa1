from datetime import datetime, timezone
from typing import Iterator

import h3
import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from services.pipeline import ParkingPipeline, build_default_pipeline

AREA_ID = h3.latlng_to_cell(-37.8136, 144.9631, 9)


@pytest.fixture
def api_client(upstream, pipeline_factory, monkeypatch) -> Iterator[TestClient]:
    pipelines: list[ParkingPipeline] = []

    def build_test_pipeline() -> ParkingPipeline:
        if not pipelines:
            pipelines.append(pipeline_factory())
        return pipelines[0]

    build_test_pipeline.cache_clear = pipelines.clear  # type: ignore[attr-defined]

    monkeypatch.setattr("app.main.build_default_pipeline", build_test_pipeline)
    monkeypatch.setattr("app.api.build_default_pipeline", build_test_pipeline)

    app = create_app()
    with TestClient(app) as client:
        yield client


def test_lifespan_closes_pipeline_and_clears_cache() -> None:
    app = create_app()

    with TestClient(app):
        pipeline_during = build_default_pipeline()

    pipeline_after = build_default_pipeline()
    try:
        assert pipeline_after is not pipeline_during
        assert pipeline_during.client._client.is_closed
    finally:
        build_default_pipeline.cache_clear()


def test_health(api_client: TestClient) -> None:
    response = api_client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_list_parking_keeps_unknown_status_null(upstream, live_rows, api_client: TestClient) -> None:
    upstream.add("live", live_rows + [{"kerbsideid": 9, "lat": -37.81, "lng": 144.96}])

    response = api_client.get("/api/v1/parking", params={"radius": 500})

    assert response.status_code == 200
    body = response.json()
    assert [item["id"] for item in body] == ["1", "2", "3", "9"]
    assert body[0]["available_spots"] == 1
    assert body[1]["available_spots"] == 0
    assert body[3]["available_spots"] is None


def test_bad_bbox_is_rejected(api_client: TestClient) -> None:
    response = api_client.get("/api/v1/parking", params={"bbox": "1,2,3"})

    assert response.status_code == 400


def test_upstream_failure_maps_to_bad_gateway(upstream, api_client: TestClient) -> None:
    upstream.add("live", 500)

    response = api_client.get("/api/v1/parking")

    assert response.status_code == 502
    assert "HTTP 500" in response.json()["detail"]


def test_list_areas(upstream, live_rows, api_client: TestClient) -> None:
    upstream.add("live", live_rows)

    response = api_client.get("/api/v1/parking/areas", params={"sort": "distance", "limit": 1})

    assert response.status_code == 200
    [area] = response.json()
    assert area["area_id"] == AREA_ID
    assert area["total_bays"] == 2
    assert area["available_bays"] == 1
    assert area["occupancy_rate"] == 0.5
    assert area["distance_m"] is not None
    assert len(area["boundary"]) == 6

    history = api_client.get("/api/v1/debug/area-history", params={"areaId": AREA_ID})
    assert history.status_code == 200
    assert history.json()["points"] == 1


def test_list_areas_invalid_resolution(upstream, live_rows, api_client: TestClient) -> None:
    upstream.add("live", live_rows)

    response = api_client.get("/api/v1/parking/areas", params={"res": 20})

    assert response.status_code == 400


def test_area_detail(upstream, live_rows, api_client: TestClient) -> None:
    upstream.add("live", live_rows)

    response = api_client.get(f"/api/v1/parking/areas/{AREA_ID}")

    assert response.status_code == 200
    body = response.json()
    assert body["resolution"] == 9
    assert [member["id"] for member in body["members"]] == ["1", "2"]


def test_area_detail_invalid_and_missing(upstream, api_client: TestClient) -> None:
    upstream.add("live", [])

    assert api_client.get("/api/v1/parking/areas/not-a-cell").status_code == 400
    assert api_client.get(f"/api/v1/parking/areas/{AREA_ID}").status_code == 404


def test_area_forecast(upstream, api_client: TestClient) -> None:
    for dataset_id in ("annual-2019", "live", "ped-locations", "ped-counts"):
        upstream.add(dataset_id, [])

    response = api_client.get(
        f"/api/v1/parking/areas/{AREA_ID}/forecast", params={"source": "annual", "hours": 3}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["source"] == "annual"
    assert body["total_bays"] == 60
    assert len(body["points"]) == 3
    first = datetime.fromisoformat(body["points"][0]["ts"].replace("Z", "+00:00"))
    assert first > datetime.now(timezone.utc)


def test_forecast_by_coordinates(upstream, live_rows, api_client: TestClient) -> None:
    upstream.add("live", live_rows)

    response = api_client.get(
        "/api/v1/parking/areas/bycoord/forecast",
        params={"lat": -37.8136, "lng": 144.9631, "res": 9, "hours": 2},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["area_id"] == AREA_ID
    assert body["source"] == "live"
    assert body["total_bays"] == 2


def test_history_by_coordinates_requires_coordinates(api_client: TestClient) -> None:
    assert api_client.get("/api/v1/parking/areas/bycoord/history").status_code == 422


def test_history_by_coordinates_live(api_client: TestClient) -> None:
    response = api_client.get(
        "/api/v1/parking/areas/bycoord/history", params={"lat": -37.8136, "lng": 144.9631}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["area_id"] == "bycoord"
    assert body["series"] == []


def test_get_parking_by_id(upstream, live_rows, api_client: TestClient) -> None:
    upstream.add("live", live_rows)

    assert api_client.get("/api/v1/parking/3").json()["id"] == "3"
    assert api_client.get("/api/v1/parking/404").status_code == 404


def test_annual_sample(upstream, api_client: TestClient) -> None:
    row = {"arrival_time": "2019-03-04T10:00:00Z", "departure_time": "2019-03-04T11:00:00Z"}
    upstream.add("annual-2019", [row])

    response = api_client.get("/api/v1/debug/annual-sample", params={"dataset": "annual-2019"})

    assert response.status_code == 200
    body = response.json()
    assert body["used_field"] == "arrival_time"
    assert body["sample"] == [row]


def test_events_sample_without_dataset(api_client: TestClient) -> None:
    response = api_client.get("/api/v1/debug/events-sample")

    assert response.status_code == 200
    assert response.json() == {"dataset": "", "used_field": None, "keys": [], "sample": []}


def test_live_forecast_survives_upstream_outage(upstream, api_client: TestClient) -> None:
    upstream.add("live", 503)

    response = api_client.get(f"/api/v1/parking/areas/{AREA_ID}/forecast", params={"hours": 2})

    assert response.status_code == 200
    body = response.json()
    assert body["source"] == "live"
    assert len(body["points"]) == 2


def test_parking_stats(upstream, live_rows, api_client: TestClient) -> None:
    upstream.add("live", live_rows)
    for dataset_id in ("annual-2019", "annual-2020-jan-may", "ped-locations", "ped-counts"):
        upstream.add(dataset_id, [])

    response = api_client.get("/api/v1/stats/parking", params={"days": 1})

    assert response.status_code == 200
    body = response.json()
    assert body["average_occupancy"][0] == {"car_park": "-37.814,144.963", "percentage": 50}
    assert body["busiest_hours"]
    assert set(body["busiest_hours"][0]) == {"hour", "count"}


def test_parking_stats_rejects_zero_days(api_client: TestClient) -> None:
    assert api_client.get("/api/v1/stats/parking", params={"days": 0}).status_code == 422
