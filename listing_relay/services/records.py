from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

JobStatus = Literal["queued", "running", "completed", "failed"]
DeliveryStatus = Literal["pending", "delivered", "failed"]
UpsertOutcome = Literal["created", "updated"]

JOB_STATUSES = {"queued", "running", "completed", "failed"}
TERMINAL_JOB_STATUSES = {"completed", "failed"}
DELIVERY_STATUSES = {"pending", "delivered", "failed"}

EVENT_PROPERTY_NEW = "property.new"
EVENT_JOB_COMPLETED = "job.completed"
EVENT_CRM_ACTIVITY = "crm.activity"
ACTIVITY_CALL_SUMMARY = "call.summary"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Job:
    job_id: str
    source: str
    region: str
    input_payload: dict[str, Any]
    status: JobStatus = "queued"
    attempt: int = 0
    previous_errors: list[str] = field(default_factory=list)
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result_payload: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass(slots=True)
class UpsertResult:
    outcome: UpsertOutcome
    record_id: str

    @property
    def created(self) -> bool:
        return self.outcome == "created"

    @property
    def deduped(self) -> bool:
        return self.outcome == "updated"


@dataclass(slots=True)
class ScrapedRecord:
    record_id: str
    source: str
    region: str
    normalized_address: str
    address: str
    payload: dict[str, Any]
    first_seen_at: datetime = field(default_factory=utcnow)
    last_seen_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class WebhookSubscription:
    subscription_id: str
    endpoint_url: str
    event_types: set[str]
    is_active: bool = True
    signing_secret: str | None = None

    def wants(self, event_type: str) -> bool:
        return self.is_active and event_type in self.event_types


@dataclass(slots=True)
class DeliveryAttempt:
    delivery_id: str
    subscription_id: str
    event_type: str
    payload: dict[str, Any]
    status: DeliveryStatus = "pending"
    is_resolved: bool = False
    attempts: int = 0
    replay_count: int = 0
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    last_status_code: int | None = None
    delivered_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class CrmActivity:
    activity_id: str
    type: str
    metadata: dict[str, Any] = field(default_factory=dict)
    lead_id: str | None = None
    user_id: str | None = None
    property_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_event_payload(self) -> dict[str, Any]:
        return {
            "id": self.activity_id,
            "type": self.type,
            "leadId": self.lead_id,
            "userId": self.user_id,
            "propertyId": self.property_id,
            "metadata": self.metadata,
            "createdAt": self.created_at.isoformat(),
        }
