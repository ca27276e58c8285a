from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from listing_relay.core.addresses import DedupKey
from listing_relay.services.records import (
    CrmActivity,
    DeliveryAttempt,
    Job,
    ScrapedRecord,
    UpsertResult,
    WebhookSubscription,
)


class JobStore(Protocol):
    async def create_job(self, job: Job) -> Job: ...

    async def get_job(self, job_id: str) -> Job: ...

    async def save_job(self, job: Job) -> Job: ...

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        source: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]: ...


class RecordStore(Protocol):
    async def upsert_record(self, key: DedupKey, *, address: str, payload: dict[str, Any]) -> UpsertResult:
        """Insert first; a uniqueness collision on ``key`` updates the existing payload instead."""
        ...

    async def get_record(self, key: DedupKey) -> ScrapedRecord | None: ...


class SubscriptionRegistry(Protocol):
    async def find_active_subscriptions(self, event_type: str) -> list[WebhookSubscription]: ...

    async def get_subscription(self, subscription_id: str) -> WebhookSubscription | None: ...


class DeliveryStore(Protocol):
    async def create_delivery(self, delivery: DeliveryAttempt) -> DeliveryAttempt: ...

    async def get_delivery(self, delivery_id: str) -> DeliveryAttempt: ...

    async def save_delivery(self, delivery: DeliveryAttempt) -> DeliveryAttempt: ...

    async def list_deliveries(
        self,
        *,
        subscription_id: str | None = None,
        event_type: str | None = None,
        status: str | None = None,
        is_resolved: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeliveryAttempt]: ...


class ActivityStore(Protocol):
    async def create_activity(self, activity: CrmActivity) -> CrmActivity: ...

    async def list_recent_activities(self, *, activity_type: str, limit: int) -> list[CrmActivity]: ...

    async def list_activities(
        self,
        *,
        activity_type: str | None = None,
        lead_id: str | None = None,
        user_id: str | None = None,
        property_id: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        cursor: str | None = None,
        order: str = "desc",
        limit: int = 50,
    ) -> list[CrmActivity]:
        """Rows strictly after the ``cursor`` activity in ``order``; an unknown cursor yields no rows."""
        ...


class Storage(JobStore, RecordStore, SubscriptionRegistry, DeliveryStore, ActivityStore, Protocol):
    async def close(self) -> None: ...


class DeliveryBackend(DeliveryStore, SubscriptionRegistry, Protocol):
    pass


class JobBackend(JobStore, RecordStore, Protocol):
    pass
