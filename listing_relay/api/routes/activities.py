from dataclasses import asdict
from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status

from listing_relay.schemas.activities import CrmActivityOut, CrmActivityPage, CrmActivityRequest
from listing_relay.services.pipeline import Pipeline, get_pipeline
from listing_relay.services.repository import RepositoryUnavailableError, RepositoryValidationError

router = APIRouter()


@router.get("", response_model=CrmActivityPage)
async def list_activities(
    pipeline: Pipeline = Depends(get_pipeline),
    activity_type: str | None = Query(default=None, alias="type", min_length=1),
    lead_id: str | None = Query(default=None, min_length=1),
    user_id: str | None = Query(default=None, min_length=1),
    property_id: str | None = Query(default=None, min_length=1),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    cursor: str | None = Query(default=None, min_length=1),
    order: Literal["asc", "desc"] = Query(default="desc"),
    limit: int = Query(default=50, ge=1, le=200),
) -> CrmActivityPage:
    try:
        rows = await pipeline.storage.list_activities(
            activity_type=activity_type,
            lead_id=lead_id,
            user_id=user_id,
            property_id=property_id,
            created_from=_as_utc(created_from),
            created_to=_as_utc(created_to),
            cursor=cursor,
            order=order,
            limit=limit + 1,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    page = rows[:limit]
    next_cursor = page[-1].activity_id if len(rows) > limit else None
    return CrmActivityPage(
        data=[CrmActivityOut(**asdict(row)) for row in page],
        next_cursor=next_cursor,
        limit=limit,
    )


@router.post("", response_model=CrmActivityOut, status_code=status.HTTP_201_CREATED)
async def create_activity(payload: CrmActivityRequest, pipeline: Pipeline = Depends(get_pipeline)) -> CrmActivityOut:
    try:
        activity = await pipeline.activities.record(
            payload.type,
            lead_id=payload.lead_id,
            user_id=payload.user_id,
            property_id=payload.property_id,
            metadata=payload.metadata,
            emit_webhook=payload.emit_webhook,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CrmActivityOut(**asdict(activity))


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
