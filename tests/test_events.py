from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from services.events import EventHistory, aggregate_status_events
from upstream.fields import FieldResolver

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def _history(client, dataset_id="events") -> EventHistory:
    return EventHistory(client, FieldResolver(client), dataset_id, clock=lambda: NOW)


def test_status_events_are_bucketed_by_hour() -> None:
    rows = [
        ({"status_description": "Unoccupied ", "lastupdated": "2024-05-10T09:05:00Z"}, "lastupdated"),
        ({"status_description": "Present", "lastupdated": "2024-05-10T09:55:00Z"}, "lastupdated"),
        ({"status": "occupied", "timestamp": "2024-05-10T08:10:00Z"}, "lastupdated"),
        ({"status": "unknown", "lastupdated": "2024-05-10T09:30:00Z"}, "lastupdated"),
        ({"status": "present"}, "lastupdated"),
    ]

    buckets = aggregate_status_events(rows)

    assert [bucket.ts.hour for bucket in buckets] == [8, 9]
    assert (buckets[0].free, buckets[0].occ, buckets[0].total) == (0, 1, 1)
    assert (buckets[1].free, buckets[1].occ, buckets[1].total) == (1, 1, 3)


def test_no_dataset_configured_returns_empty(make_client) -> None:
    history = _history(make_client(), dataset_id=None)

    assert asyncio.run(history.hourly_counts(days=7)) == []
    assert asyncio.run(history.hourly_by_ids(["1"], days=7)) == []


def test_hourly_counts_probe_time_fields(upstream, make_client) -> None:
    def responder(params):
        if params["where"].startswith("status_timestamp"):
            return 400
        return [{"status": "Present", "lastupdated": "2024-05-10T10:00:00Z"}]

    upstream.add("events", responder)
    history = _history(make_client())

    buckets = asyncio.run(history.hourly_counts(days=7, radius_m=500))

    assert [(bucket.ts.hour, bucket.occ) for bucket in buckets] == [(10, 1)]
    last_call = upstream.calls_for("events")[-1]
    assert last_call["where"] == 'lastupdated >= "2024-05-03T12:00:00Z"'
    assert last_call["order_by"] == "lastupdated DESC"


def test_hourly_by_ids_stops_at_first_matching_id_field(upstream, make_client) -> None:
    def responder(params):
        if params["where"].startswith("(bay_id="):
            return [{"bay_id": 1, "status": "Unoccupied", "status_timestamp": "2024-05-10T07:00:00Z"}]
        return []

    upstream.add("events", responder)
    history = _history(make_client())
    ids = [str(index) for index in range(60)]

    buckets = asyncio.run(history.hourly_by_ids(ids, days=14))

    assert len(buckets) == 1
    assert buckets[0].free == 2
    wheres = [call["where"] for call in upstream.calls_for("events")]
    assert not any(where.startswith("(bayid=") for where in wheres)
    bay_wheres = [where for where in wheres if where.startswith("(bay_id=")]
    assert len(bay_wheres) == 2
    assert bay_wheres[1].startswith("(bay_id=50 OR")
