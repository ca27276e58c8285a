from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

JobStatus = Literal["queued", "running", "completed", "failed"]


class JobSubmitRequest(BaseModel):
    source: str = Field(min_length=1)
    region: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)


class JobAcceptedOut(BaseModel):
    job_id: str
    status: JobStatus = "queued"


class JobOut(BaseModel):
    job_id: str
    source: str
    region: str
    status: JobStatus
    attempt: int
    previous_errors: list[str] = Field(default_factory=list)
    result_payload: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
