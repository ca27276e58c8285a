from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]

ALL_EVENTS = "*"


class EventBus:
    """In-process emitter. Handlers run in subscription order; their failures are logged, never raised."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event_type: str, payload: dict[str, Any]) -> int:
        handlers = [*self._handlers.get(event_type, []), *self._handlers.get(ALL_EVENTS, [])]
        delivered = 0
        for handler in handlers:
            try:
                await handler(event_type, payload)
                delivered += 1
            except Exception:
                logger.exception("event handler failed event_type=%s", event_type)
        return delivered
