from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class CrmActivityOut(BaseModel):
    activity_id: str
    type: str
    lead_id: str | None = None
    user_id: str | None = None
    property_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class CrmActivityPage(BaseModel):
    data: list[CrmActivityOut]
    next_cursor: str | None = None
    limit: int


class CrmActivityRequest(BaseModel):
    type: str = Field(min_length=1)
    lead_id: str | None = None
    user_id: str | None = None
    property_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    emit_webhook: bool = True


class CallAnalyzeRequest(BaseModel):
    call_sid: str = Field(min_length=1)
    summary: str
    score: float | None = None
    tags: list[str] = Field(default_factory=list)
    lead_id: str | None = None
    user_id: str | None = None
    force: bool = False


class CallAnalyzeOut(BaseModel):
    activity: CrmActivityOut
    emitted: bool
