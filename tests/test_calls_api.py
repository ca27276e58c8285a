from __future__ import annotations

import asyncio
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from listing_relay.main import app
from listing_relay.services.pipeline import Pipeline, get_pipeline
from listing_relay.services.records import CrmActivity
from listing_relay.services.store import InMemoryStore


@pytest.fixture
def pipeline(make_pipeline) -> Iterator[Pipeline]:
    built = make_pipeline()
    app.dependency_overrides[get_pipeline] = lambda: built
    yield built
    app.dependency_overrides.clear()


def test_analyze_records_call_summary_once_per_call_sid(pipeline: Pipeline) -> None:
    client = TestClient(app)
    body = {"call_sid": "CA100", "summary": "Interested in 2BR condo", "score": 0.7, "tags": ["warm"]}

    first = client.post("/calls/analyze", json=body)
    second = client.post("/calls/analyze", json=body)
    forced = client.post("/calls/analyze", json={**body, "force": True})

    assert first.status_code == 201
    assert first.json()["emitted"] is True
    assert first.json()["activity"]["type"] == "call.summary"
    assert first.json()["activity"]["metadata"]["callSid"] == "CA100"
    assert second.json()["emitted"] is False
    assert second.json()["activity"]["activity_id"] == first.json()["activity"]["activity_id"]
    assert forced.json()["emitted"] is True
    assert forced.json()["activity"]["activity_id"] != first.json()["activity"]["activity_id"]


def test_crm_activity_is_recorded_and_counted(pipeline: Pipeline) -> None:
    client = TestClient(app)

    response = client.post(
        "/crm-activity",
        json={"type": "showing.scheduled", "lead_id": "lead-1", "metadata": {"slot": "10:00"}},
    )

    assert response.status_code == 201
    assert response.json()["type"] == "showing.scheduled"
    assert response.json()["metadata"] == {"slot": "10:00"}
    assert 'crm_activities_total{type="showing.scheduled"} 1' in client.get("/metrics").text


def test_crm_activity_requires_type(pipeline: Pipeline) -> None:
    client = TestClient(app)
    assert client.post("/crm-activity", json={"type": ""}).status_code == 422


def _seed_activities(store: InMemoryStore) -> None:
    start = datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)
    seeds = [
        ("a-1", "showing.scheduled", "lead-1"),
        ("a-2", "call.summary", "lead-1"),
        ("a-3", "showing.scheduled", "lead-2"),
    ]
    for minute, (activity_id, activity_type, lead_id) in enumerate(seeds):
        activity = CrmActivity(
            activity_id=activity_id,
            type=activity_type,
            lead_id=lead_id,
            created_at=start + timedelta(minutes=minute),
        )
        asyncio.run(store.create_activity(activity))


def test_crm_activity_listing_uses_cursor_pagination(pipeline: Pipeline) -> None:
    _seed_activities(pipeline.storage)
    client = TestClient(app)

    first = client.get("/crm-activity", params={"limit": 2}).json()
    second = client.get("/crm-activity", params={"limit": 2, "cursor": first["next_cursor"]}).json()

    assert [row["activity_id"] for row in first["data"]] == ["a-3", "a-2"]
    assert first["next_cursor"] == "a-2"
    assert first["limit"] == 2
    assert [row["activity_id"] for row in second["data"]] == ["a-1"]
    assert second["next_cursor"] is None


def test_crm_activity_listing_filters(pipeline: Pipeline) -> None:
    _seed_activities(pipeline.storage)
    client = TestClient(app)

    by_type = client.get("/crm-activity", params={"type": "showing.scheduled", "order": "asc"}).json()
    by_lead_and_date = client.get(
        "/crm-activity",
        params={"lead_id": "lead-1", "created_from": "2026-01-01T10:01:00"},
    ).json()
    unknown_cursor = client.get("/crm-activity", params={"cursor": "missing"}).json()

    assert [row["activity_id"] for row in by_type["data"]] == ["a-1", "a-3"]
    assert [row["activity_id"] for row in by_lead_and_date["data"]] == ["a-2"]
    assert unknown_cursor["data"] == []
    assert client.get("/crm-activity", params={"order": "sideways"}).status_code == 422
