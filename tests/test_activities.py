from __future__ import annotations

import asyncio
from typing import Any

import httpx

from listing_relay.core.metrics import InMemoryMetrics
from listing_relay.services.activities import ActivityService
from listing_relay.services.delivery import DeliveryWorker
from listing_relay.services.events import EventBus
from listing_relay.services.store import InMemoryStore
from listing_relay.services.webhooks import WebhookDispatcher


def _wire(store: InMemoryStore, *, lookback: int = 100) -> tuple[ActivityService, DeliveryWorker, InMemoryMetrics]:
    metrics = InMemoryMetrics()
    worker = DeliveryWorker(
        store=store,
        client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(status_code=200, request=request))
        ),
        metrics=metrics,
    )
    bus = EventBus()
    WebhookDispatcher(store, worker).attach(bus)
    return ActivityService(store=store, bus=bus, metrics=metrics, lookback=lookback), worker, metrics


def test_call_summary_is_emitted_once_per_call_sid_unless_forced() -> None:
    store = InMemoryStore()
    store.add_subscription(endpoint_url="https://crm.example.com/a", event_types={"crm.activity"})
    store.add_subscription(endpoint_url="https://crm.example.com/b", event_types={"crm.activity"})
    service, worker, _ = _wire(store)

    async def run() -> list[bool]:
        outcomes = []
        for _ in range(2):
            _, emitted = await service.emit_call_summary(call_sid="CA123", summary="Buyer wants 3BR", score=0.8)
            outcomes.append(emitted)
        await worker.drain()
        assert len(store.deliveries) == 2

        _, emitted = await service.emit_call_summary(call_sid="CA123", summary="Buyer wants 3BR", force=True)
        outcomes.append(emitted)
        await worker.drain()
        return outcomes

    outcomes = asyncio.run(run())

    assert outcomes == [True, False, True]
    assert len(store.deliveries) == 4
    assert len(store.activities) == 2


def test_duplicate_call_summary_returns_existing_activity() -> None:
    store = InMemoryStore()
    service, _, _ = _wire(store)

    async def run() -> tuple[Any, Any]:
        first, _ = await service.emit_call_summary(call_sid="CA9", summary="first", tags=["hot"], lead_id="lead-1")
        second, _ = await service.emit_call_summary(call_sid="CA9", summary="second")
        return first, second

    first, second = asyncio.run(run())

    assert second.activity_id == first.activity_id
    assert second.metadata == {"callSid": "CA9", "summary": "first", "tags": ["hot"]}
    assert second.lead_id == "lead-1"


def test_call_summary_lookup_is_bounded_by_lookback() -> None:
    store = InMemoryStore()
    service, _, _ = _wire(store, lookback=1)

    async def run() -> bool:
        await service.emit_call_summary(call_sid="CA-old", summary="a")
        await service.emit_call_summary(call_sid="CA-new", summary="b")
        _, emitted = await service.emit_call_summary(call_sid="CA-old", summary="a")
        return emitted

    assert asyncio.run(run()) is True


def test_record_emits_crm_activity_payload() -> None:
    store = InMemoryStore()
    subscription = store.add_subscription(endpoint_url="https://crm.example.com/a", event_types={"crm.activity"})
    service, worker, metrics = _wire(store)

    async def run() -> Any:
        activity = await service.record(
            "showing.scheduled",
            lead_id="lead-7",
            property_id="prop-3",
            metadata={"when": "2026-10-20T15:00:00Z"},
        )
        await worker.drain()
        return activity

    activity = asyncio.run(run())

    [delivery] = store.deliveries.values()
    assert delivery.subscription_id == subscription.subscription_id
    assert delivery.event_type == "crm.activity"
    assert delivery.payload == {
        "id": activity.activity_id,
        "type": "showing.scheduled",
        "leadId": "lead-7",
        "userId": None,
        "propertyId": "prop-3",
        "metadata": {"when": "2026-10-20T15:00:00Z"},
        "createdAt": activity.created_at.isoformat(),
    }
    assert metrics.counter("crm_activities_total", type="showing.scheduled") == 1


def test_record_without_webhook_emits_nothing() -> None:
    store = InMemoryStore()
    store.add_subscription(endpoint_url="https://crm.example.com/a", event_types={"crm.activity"})
    service, worker, _ = _wire(store)

    async def run() -> None:
        await service.record("note", metadata={"text": "called back"}, emit_webhook=False)
        await worker.drain()

    asyncio.run(run())

    assert len(store.activities) == 1
    assert store.deliveries == {}
