from __future__ import annotations

import logging
from typing import Any, Protocol

from listing_relay.services.events import ALL_EVENTS, EventBus
from listing_relay.services.ports import SubscriptionRegistry
from listing_relay.services.records import DeliveryAttempt

logger = logging.getLogger(__name__)


class DeliveryQueue(Protocol):
    async def enqueue(self, subscription_id: str, event_type: str, payload: dict[str, Any]) -> DeliveryAttempt: ...


class WebhookDispatcher:
    """Fan each emitted event out to the active subscriptions registered for it."""

    def __init__(self, registry: SubscriptionRegistry, queue: DeliveryQueue) -> None:
        self.registry = registry
        self.queue = queue

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(ALL_EVENTS, self.on_event)

    async def on_event(self, event_type: str, payload: dict[str, Any]) -> None:
        subscriptions = await self.registry.find_active_subscriptions(event_type)
        if not subscriptions:
            return
        for subscription in subscriptions:
            try:
                await self.queue.enqueue(subscription.subscription_id, event_type, payload)
            except Exception:
                logger.exception(
                    "webhook enqueue failed subscription_id=%s event_type=%s",
                    subscription.subscription_id,
                    event_type,
                )
        logger.info("webhook fan-out event_type=%s subscribers=%s", event_type, len(subscriptions))
