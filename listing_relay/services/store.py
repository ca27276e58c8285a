from __future__ import annotations

import copy
from datetime import datetime
from typing import Any
from uuid import uuid4

from listing_relay.core.addresses import DedupKey
from listing_relay.services.records import (
    CrmActivity,
    DeliveryAttempt,
    Job,
    ScrapedRecord,
    UpsertResult,
    WebhookSubscription,
    utcnow,
)
from listing_relay.services.repository import RepositoryConflictError, RepositoryNotFoundError


class _UniqueViolation(Exception):
    """Raised by the in-memory insert when the dedup key already has a row."""


class InMemoryStore:
    """Process-local storage used when no database is configured, and by tests."""

    def __init__(self) -> None:
        self.jobs: dict[str, Job] = {}
        self.records: dict[DedupKey, ScrapedRecord] = {}
        self.subscriptions: dict[str, WebhookSubscription] = {}
        self.deliveries: dict[str, DeliveryAttempt] = {}
        self.activities: list[CrmActivity] = []

    async def close(self) -> None:
        return None

    async def create_job(self, job: Job) -> Job:
        if job.job_id in self.jobs:
            raise RepositoryConflictError("job already exists")
        self.jobs[job.job_id] = copy.deepcopy(job)
        return copy.deepcopy(job)

    async def get_job(self, job_id: str) -> Job:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return copy.deepcopy(job)

    async def save_job(self, job: Job) -> Job:
        if job.job_id not in self.jobs:
            raise RepositoryNotFoundError("job not found")
        job.updated_at = utcnow()
        self.jobs[job.job_id] = copy.deepcopy(job)
        return copy.deepcopy(job)

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        source: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        rows = sorted(self.jobs.values(), key=lambda job: job.created_at, reverse=True)
        if status:
            rows = [job for job in rows if job.status == status]
        if source:
            rows = [job for job in rows if job.source == source]
        return [copy.deepcopy(job) for job in rows[offset : offset + limit]]

    async def upsert_record(self, key: DedupKey, *, address: str, payload: dict[str, Any]) -> UpsertResult:
        try:
            record_id = self._insert_record(key, address=address, payload=payload)
        except _UniqueViolation:
            existing = self.records[key]
            existing.payload = copy.deepcopy(payload)
            existing.last_seen_at = utcnow()
            return UpsertResult(outcome="updated", record_id=existing.record_id)
        return UpsertResult(outcome="created", record_id=record_id)

    def _insert_record(self, key: DedupKey, *, address: str, payload: dict[str, Any]) -> str:
        # No await between the check and the write: atomic on the event loop.
        if key in self.records:
            raise _UniqueViolation(key)
        record = ScrapedRecord(
            record_id=str(uuid4()),
            source=key.source,
            region=key.region,
            normalized_address=key.normalized_address,
            address=address,
            payload=copy.deepcopy(payload),
        )
        self.records[key] = record
        return record.record_id

    async def get_record(self, key: DedupKey) -> ScrapedRecord | None:
        record = self.records.get(key)
        return copy.deepcopy(record) if record is not None else None

    def add_subscription(
        self,
        *,
        endpoint_url: str,
        event_types: set[str] | list[str],
        is_active: bool = True,
        signing_secret: str | None = None,
        subscription_id: str | None = None,
    ) -> WebhookSubscription:
        subscription = WebhookSubscription(
            subscription_id=subscription_id or str(uuid4()),
            endpoint_url=endpoint_url,
            event_types=set(event_types),
            is_active=is_active,
            signing_secret=signing_secret,
        )
        self.subscriptions[subscription.subscription_id] = subscription
        return subscription

    async def find_active_subscriptions(self, event_type: str) -> list[WebhookSubscription]:
        return [copy.deepcopy(sub) for sub in self.subscriptions.values() if sub.wants(event_type)]

    async def get_subscription(self, subscription_id: str) -> WebhookSubscription | None:
        subscription = self.subscriptions.get(subscription_id)
        return copy.deepcopy(subscription) if subscription is not None else None

    async def create_delivery(self, delivery: DeliveryAttempt) -> DeliveryAttempt:
        if delivery.delivery_id in self.deliveries:
            raise RepositoryConflictError("delivery already exists")
        self.deliveries[delivery.delivery_id] = copy.deepcopy(delivery)
        return copy.deepcopy(delivery)

    async def get_delivery(self, delivery_id: str) -> DeliveryAttempt:
        delivery = self.deliveries.get(delivery_id)
        if delivery is None:
            raise RepositoryNotFoundError("delivery not found")
        return copy.deepcopy(delivery)

    async def save_delivery(self, delivery: DeliveryAttempt) -> DeliveryAttempt:
        if delivery.delivery_id not in self.deliveries:
            raise RepositoryNotFoundError("delivery not found")
        self.deliveries[delivery.delivery_id] = copy.deepcopy(delivery)
        return copy.deepcopy(delivery)

    async def list_deliveries(
        self,
        *,
        subscription_id: str | None = None,
        event_type: str | None = None,
        status: str | None = None,
        is_resolved: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeliveryAttempt]:
        rows = sorted(self.deliveries.values(), key=lambda row: row.created_at, reverse=True)
        if subscription_id:
            rows = [row for row in rows if row.subscription_id == subscription_id]
        if event_type:
            rows = [row for row in rows if row.event_type == event_type]
        if status:
            rows = [row for row in rows if row.status == status]
        if is_resolved is not None:
            rows = [row for row in rows if row.is_resolved == is_resolved]
        return [copy.deepcopy(row) for row in rows[offset : offset + limit]]

    async def create_activity(self, activity: CrmActivity) -> CrmActivity:
        self.activities.append(copy.deepcopy(activity))
        return copy.deepcopy(activity)

    async def list_recent_activities(self, *, activity_type: str, limit: int) -> list[CrmActivity]:
        rows = [row for row in reversed(self.activities) if row.type == activity_type]
        return [copy.deepcopy(row) for row in rows[:limit]]

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
        descending = order != "asc"
        rows = sorted(self.activities, key=_activity_sort_key, reverse=descending)
        if cursor is not None:
            pivot = next((row for row in self.activities if row.activity_id == cursor), None)
            if pivot is None:
                return []
            pivot_key = _activity_sort_key(pivot)
            if descending:
                rows = [row for row in rows if _activity_sort_key(row) < pivot_key]
            else:
                rows = [row for row in rows if _activity_sort_key(row) > pivot_key]
        if activity_type:
            rows = [row for row in rows if row.type == activity_type]
        if lead_id:
            rows = [row for row in rows if row.lead_id == lead_id]
        if user_id:
            rows = [row for row in rows if row.user_id == user_id]
        if property_id:
            rows = [row for row in rows if row.property_id == property_id]
        if created_from is not None:
            rows = [row for row in rows if row.created_at >= created_from]
        if created_to is not None:
            rows = [row for row in rows if row.created_at <= created_to]
        return [copy.deepcopy(row) for row in rows[: max(1, limit)]]


def _activity_sort_key(activity: CrmActivity) -> tuple[datetime, str]:
    return activity.created_at, activity.activity_id
