from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from services.errors import TransientFetchFailure
from upstream.opendata import (
    BoundingBox,
    Circle,
    DatasetQuery,
    OpenDataClient,
    any_of,
    since,
    time_range,
)


def _rows(count: int) -> list[dict]:
    return [{"id": index} for index in range(count)]


def test_fetch_pages_until_desired_count(upstream, make_client) -> None:
    upstream.add("live", _rows(250))
    client = make_client()

    rows = asyncio.run(client.fetch("live", DatasetQuery(), 230))

    assert len(rows) == 230
    assert [call["offset"] for call in upstream.calls_for("live")] == ["0", "100", "200"]
    assert [call["limit"] for call in upstream.calls_for("live")] == ["100", "100", "30"]


def test_fetch_stops_on_short_page(upstream, make_client) -> None:
    upstream.add("live", _rows(120))
    client = make_client()

    rows = asyncio.run(client.fetch("live", DatasetQuery(), 1000))

    assert len(rows) == 120
    assert len(upstream.calls_for("live")) == 2


def test_fetch_stops_on_empty_page(upstream, make_client) -> None:
    upstream.add("live", _rows(100))
    client = make_client()

    rows = asyncio.run(client.fetch("live", DatasetQuery(), 500))

    assert len(rows) == 100
    assert len(upstream.calls_for("live")) == 2


def test_page_size_never_exceeds_api_maximum(upstream, make_client) -> None:
    upstream.add("live", _rows(10))
    client = make_client(page_size=500)

    asyncio.run(client.fetch("live", DatasetQuery(), 10))

    assert client.page_size == 100


def test_non_success_status_raises_transient_failure(upstream, make_client) -> None:
    upstream.add("live", 500)
    client = make_client()

    with pytest.raises(TransientFetchFailure) as excinfo:
        asyncio.run(client.fetch("live", DatasetQuery(), 10))

    assert excinfo.value.dataset_id == "live"
    assert excinfo.value.reason == "HTTP 500"


def test_malformed_payload_raises_transient_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>not json</html>")

    client = OpenDataClient(
        "https://opendata.test",
        http_client=httpx.AsyncClient(
            base_url="https://opendata.test", transport=httpx.MockTransport(handler)
        ),
    )

    with pytest.raises(TransientFetchFailure):
        asyncio.run(client.fetch_page("live", DatasetQuery(), limit=10))


def test_bare_list_payload_is_accepted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"id": 1}, "junk", {"id": 2}])

    client = OpenDataClient(
        "https://opendata.test",
        http_client=httpx.AsyncClient(
            base_url="https://opendata.test", transport=httpx.MockTransport(handler)
        ),
    )

    rows = asyncio.run(client.fetch_page("live", DatasetQuery(), limit=10))

    assert rows == [{"id": 1}, {"id": 2}]


def test_timeout_is_transient_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = OpenDataClient(
        "https://opendata.test",
        http_client=httpx.AsyncClient(
            base_url="https://opendata.test", transport=httpx.MockTransport(handler)
        ),
    )

    with pytest.raises(TransientFetchFailure) as excinfo:
        asyncio.run(client.fetch("live", DatasetQuery(), 10))

    assert "ReadTimeout" in excinfo.value.reason


def test_query_parameters_include_filters(upstream, make_client) -> None:
    upstream.add("live", [])
    client = make_client()
    query = DatasetQuery(
        where='status = "Present"',
        order_by="lastupdated DESC",
        circle=Circle(-37.8, 144.9, 1200.7),
    )

    asyncio.run(client.fetch("live", query, 5))

    params = upstream.calls_for("live")[0]
    assert params["where"] == 'status = "Present"'
    assert params["order_by"] == "lastupdated DESC"
    assert params["geofilter.distance"] == "-37.8,144.9,1200"


def test_bbox_predicate_is_combined_with_where() -> None:
    query = DatasetQuery(where="a = 1", bbox=BoundingBox(144.9, -37.9, 145.0, -37.8))

    params = query.to_params(limit=10, offset=0)

    assert params["where"].startswith("(a = 1) AND (within_polygon(location, geom'POLYGON((")
    assert "144.9 -37.9, 145.0 -37.9, 145.0 -37.8, 144.9 -37.8, 144.9 -37.9" in params["where"]
    assert "geofilter.distance" not in params


def test_predicate_helpers() -> None:
    start = datetime(2019, 1, 1, tzinfo=timezone.utc)
    end = datetime(2019, 12, 31, 23, 59, 59, tzinfo=timezone.utc)

    assert time_range("arrival_time", start, end) == (
        'arrival_time >= "2019-01-01T00:00:00Z" AND arrival_time <= "2019-12-31T23:59:59Z"'
    )
    assert since("lastupdated", start) == 'lastupdated >= "2019-01-01T00:00:00Z"'
    assert any_of("location_id", [3, "7", "A1"]) == '(location_id=3 OR location_id=7 OR location_id="A1")'


def test_api_key_header_is_sent() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"results": []})

    client = OpenDataClient("https://opendata.test", api_key="secret")
    client._client = httpx.AsyncClient(
        base_url="https://opendata.test",
        headers=client._client.headers,
        transport=httpx.MockTransport(handler),
    )

    asyncio.run(client.sample_row("live"))

    assert seen["auth"] == "Apikey secret"


def test_sample_row_uses_fifteen_second_timeout() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.extensions["timeout"]["read"])
        return httpx.Response(200, json={"results": [{"id": 1}]})

    client = OpenDataClient(
        "https://opendata.test",
        http_client=httpx.AsyncClient(
            base_url="https://opendata.test", transport=httpx.MockTransport(handler)
        ),
    )

    assert asyncio.run(client.sample_row("live")) == {"id": 1}
    assert seen == [15.0]
