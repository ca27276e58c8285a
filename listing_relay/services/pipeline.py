from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

import httpx

from listing_relay.core.config import Settings, get_settings
from listing_relay.core.metrics import InMemoryMetrics
from listing_relay.jobs.adapters import AdapterRegistry, load_adapter_plugins
from listing_relay.jobs.orchestrator import JobOrchestrator
from listing_relay.jobs.scheduler import AsyncioScheduler, Scheduler
from listing_relay.services.activities import ActivityService
from listing_relay.services.delivery import DeliveryWorker
from listing_relay.services.events import EventBus
from listing_relay.services.ports import Storage
from listing_relay.services.repository import PostgresRepository
from listing_relay.services.store import InMemoryStore
from listing_relay.services.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Pipeline:
    settings: Settings
    storage: Storage
    metrics: InMemoryMetrics
    bus: EventBus
    orchestrator: JobOrchestrator
    dispatcher: WebhookDispatcher
    deliveries: DeliveryWorker
    activities: ActivityService
    client: httpx.AsyncClient

    async def shutdown(self) -> None:
        timeout = self.settings.shutdown_timeout_seconds
        self.orchestrator.close()
        await self.orchestrator.drain(timeout)
        await self.deliveries.drain(timeout)
        await self.client.aclose()
        await self.storage.close()
        logger.info("pipeline shut down")


def build_pipeline(
    settings: Settings,
    *,
    storage: Storage | None = None,
    adapters: AdapterRegistry | None = None,
    scheduler: Scheduler | None = None,
    client: httpx.AsyncClient | None = None,
    metrics: InMemoryMetrics | None = None,
) -> Pipeline:
    if storage is None:
        if settings.database_url:
            storage = PostgresRepository(
                settings.database_url,
                min_pool_size=settings.database_pool_min_size,
                max_pool_size=settings.database_pool_max_size,
            )
        else:
            logger.warning("LR_DATABASE_URL not set; using in-memory storage")
            storage = InMemoryStore()
    if adapters is None:
        adapters = AdapterRegistry(load_adapter_plugins(settings.adapter_plugins_json))
    metrics = metrics or InMemoryMetrics()
    client = client or httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)
    bus = EventBus()

    deliveries = DeliveryWorker(
        store=storage,
        client=client,
        metrics=metrics,
        timeout_seconds=settings.webhook_timeout_seconds,
        max_attempts=settings.webhook_max_attempts,
        retry_base_seconds=settings.webhook_retry_base_seconds,
        retry_max_seconds=settings.webhook_retry_max_seconds,
        user_agent=settings.webhook_user_agent,
    )
    dispatcher = WebhookDispatcher(storage, deliveries)
    dispatcher.attach(bus)

    orchestrator = JobOrchestrator(
        store=storage,
        adapters=adapters,
        bus=bus,
        scheduler=scheduler or AsyncioScheduler(),
        metrics=metrics,
        max_attempts=settings.job_max_attempts,
        retry_backoff_seconds=settings.job_retry_backoff_seconds,
        concurrency=settings.job_concurrency,
        stats_log_every=settings.job_stats_log_every,
        default_adapter_version=settings.default_adapter_version,
    )
    activities = ActivityService(
        store=storage,
        bus=bus,
        metrics=metrics,
        lookback=settings.crm_activity_lookback,
    )
    logger.info("pipeline built sources=%s", ",".join(adapters.sources()) or "-")
    return Pipeline(
        settings=settings,
        storage=storage,
        metrics=metrics,
        bus=bus,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        deliveries=deliveries,
        activities=activities,
        client=client,
    )


@lru_cache
def get_pipeline() -> Pipeline:
    return build_pipeline(get_settings())
