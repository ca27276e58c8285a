from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
import pytest

from listing_relay.core.config import Settings
from listing_relay.core.metrics import InMemoryMetrics
from listing_relay.jobs.adapters import AdapterRegistry, AdapterResult
from listing_relay.jobs.scheduler import ScheduledCallback
from listing_relay.services.pipeline import Pipeline, build_pipeline
from listing_relay.services.store import InMemoryStore


class RecordedHandle:
    def __init__(self) -> None:
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class RecordingScheduler:
    """Records ``after`` calls instead of arming timers; tests fire them explicitly."""

    def __init__(self) -> None:
        self.calls: list[tuple[float, ScheduledCallback, RecordedHandle]] = []

    @property
    def delays(self) -> list[float]:
        return [delay for delay, _, _ in self.calls]

    def after(self, delay_seconds: float, fn: ScheduledCallback) -> RecordedHandle:
        handle = RecordedHandle()
        self.calls.append((delay_seconds, fn, handle))
        return handle

    def cancel_all(self) -> int:
        pending = [handle for _, _, handle in self.calls if not handle.fired and not handle.cancelled]
        for handle in pending:
            handle.cancel()
        return len(pending)

    async def drain(self, timeout: float | None = None) -> None:
        return None

    async def run_pending(self) -> int:
        fired = 0
        while True:
            ready = [(fn, handle) for _, fn, handle in self.calls if not handle.fired and not handle.cancelled]
            if not ready:
                return fired
            fn, handle = ready[0]
            handle.fired = True
            await fn()
            fired += 1


class StaticAdapter:
    def __init__(self, items: list[dict[str, Any]], *, errors: list[str] | None = None) -> None:
        self.items = items
        self.errors = errors or []
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def run(self, source: str, params: dict[str, Any]) -> AdapterResult:
        self.calls.append((source, params))
        return AdapterResult(
            items=[dict(item) for item in self.items],
            meta={"scrapedCount": len(self.items), "durationMs": 12, "source": source},
            errors=list(self.errors),
        )


class FailingAdapter:
    def __init__(self, exc: Exception, *, failures: int | None = None) -> None:
        self.exc = exc
        self.failures = failures
        self.calls = 0

    async def run(self, source: str, params: dict[str, Any]) -> AdapterResult:
        self.calls += 1
        if self.failures is None or self.calls <= self.failures:
            raise self.exc
        return AdapterResult(items=[], meta={"scrapedCount": 0, "durationMs": 1, "source": source})


def ok_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(status_code=204, request=request)


@pytest.fixture
def recording_scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def make_pipeline(recording_scheduler: RecordingScheduler) -> Callable[..., Pipeline]:
    def factory(
        *,
        adapters: dict[str, Any] | None = None,
        handler: Callable[[httpx.Request], httpx.Response] = ok_handler,
        **overrides: Any,
    ) -> Pipeline:
        settings = Settings(database_url=None, otel_enabled=False, **overrides)
        return build_pipeline(
            settings,
            storage=InMemoryStore(),
            adapters=AdapterRegistry(adapters or {}),
            scheduler=recording_scheduler,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            metrics=InMemoryMetrics(),
        )

    return factory
