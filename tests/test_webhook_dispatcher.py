from __future__ import annotations

import asyncio
from typing import Any

import httpx

from listing_relay.core.metrics import InMemoryMetrics
from listing_relay.services.delivery import DeliveryWorker
from listing_relay.services.events import EventBus
from listing_relay.services.records import DeliveryAttempt
from listing_relay.services.store import InMemoryStore
from listing_relay.services.webhooks import WebhookDispatcher


def test_unreachable_subscriber_does_not_block_reachable_one() -> None:
    store = InMemoryStore()
    down = store.add_subscription(endpoint_url="https://down.example.com/hook", event_types={"property.new"})
    up = store.add_subscription(endpoint_url="https://up.example.com/hook", event_types={"property.new"})

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "down.example.com":
            raise httpx.ConnectError("name resolution failed", request=request)
        return httpx.Response(status_code=200, request=request)

    worker = DeliveryWorker(
        store=store,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        metrics=InMemoryMetrics(),
    )
    bus = EventBus()
    WebhookDispatcher(store, worker).attach(bus)

    async def run() -> dict[str, DeliveryAttempt]:
        await bus.emit("property.new", {"record_id": "r-1"})
        await worker.drain()
        return {row.subscription_id: row for row in store.deliveries.values()}

    by_subscription = asyncio.run(run())

    assert by_subscription[up.subscription_id].status == "delivered"
    assert by_subscription[down.subscription_id].status == "failed"
    assert by_subscription[down.subscription_id].is_resolved is False


class FlakyQueue:
    def __init__(self, failing_subscription_id: str) -> None:
        self.failing_subscription_id = failing_subscription_id
        self.enqueued: list[tuple[str, str, dict[str, Any]]] = []

    async def enqueue(self, subscription_id: str, event_type: str, payload: dict[str, Any]) -> DeliveryAttempt:
        if subscription_id == self.failing_subscription_id:
            raise RuntimeError("queue rejected")
        self.enqueued.append((subscription_id, event_type, payload))
        return DeliveryAttempt(
            delivery_id="d-1",
            subscription_id=subscription_id,
            event_type=event_type,
            payload=payload,
        )


def test_enqueue_failure_is_isolated_per_subscriber() -> None:
    store = InMemoryStore()
    broken = store.add_subscription(endpoint_url="https://a.example.com", event_types={"job.completed"})
    healthy = store.add_subscription(endpoint_url="https://b.example.com", event_types={"job.completed"})
    queue = FlakyQueue(broken.subscription_id)
    dispatcher = WebhookDispatcher(store, queue)

    asyncio.run(dispatcher.on_event("job.completed", {"jobId": "j-1"}))

    assert queue.enqueued == [(healthy.subscription_id, "job.completed", {"jobId": "j-1"})]


def test_only_active_interested_subscriptions_receive_the_event() -> None:
    store = InMemoryStore()
    wanted = store.add_subscription(endpoint_url="https://a.example.com", event_types={"crm.activity"})
    store.add_subscription(endpoint_url="https://b.example.com", event_types={"property.new"})
    store.add_subscription(endpoint_url="https://c.example.com", event_types={"crm.activity"}, is_active=False)
    queue = FlakyQueue("none")

    asyncio.run(WebhookDispatcher(store, queue).on_event("crm.activity", {"id": "a-1"}))

    assert [subscription_id for subscription_id, _, _ in queue.enqueued] == [wanted.subscription_id]


def test_event_bus_isolates_handler_failures() -> None:
    bus = EventBus()
    received: list[str] = []

    async def broken(event_type: str, payload: dict[str, Any]) -> None:
        raise RuntimeError("handler bug")

    async def healthy(event_type: str, payload: dict[str, Any]) -> None:
        received.append(event_type)

    bus.subscribe("job.completed", broken)
    bus.subscribe("*", healthy)

    delivered = asyncio.run(bus.emit("job.completed", {}))

    assert delivered == 1
    assert received == ["job.completed"]
