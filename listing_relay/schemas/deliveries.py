from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

DeliveryStatus = Literal["pending", "delivered", "failed"]


class DeliveryOut(BaseModel):
    delivery_id: str
    subscription_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: DeliveryStatus
    is_resolved: bool
    attempts: int
    replay_count: int
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    last_status_code: int | None = None
    delivered_at: datetime | None = None
    created_at: datetime


class BulkDeliveryRequest(BaseModel):
    subscription_id: str | None = None
    event_type: str | None = None
    limit: int = Field(default=100, ge=1, le=500)


class BulkDeliveryOut(BaseModel):
    attempted: int
    delivered: int
    failed: int
    deliveries: list[DeliveryOut] = Field(default_factory=list)
