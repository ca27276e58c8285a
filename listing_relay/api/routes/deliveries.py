from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from listing_relay.schemas.deliveries import BulkDeliveryOut, BulkDeliveryRequest, DeliveryOut, DeliveryStatus
from listing_relay.services.pipeline import Pipeline, get_pipeline
from listing_relay.services.records import DeliveryAttempt
from listing_relay.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()


@router.get("", response_model=list[DeliveryOut])
async def list_deliveries(
    pipeline: Pipeline = Depends(get_pipeline),
    subscription_id: str | None = Query(default=None, min_length=1),
    event_type: str | None = Query(default=None, min_length=1),
    delivery_status: DeliveryStatus | None = Query(default=None, alias="status"),
    is_resolved: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[DeliveryOut]:
    try:
        rows = await pipeline.storage.list_deliveries(
            subscription_id=subscription_id,
            event_type=event_type,
            status=delivery_status,
            is_resolved=is_resolved,
            limit=limit,
            offset=offset,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [DeliveryOut(**asdict(row)) for row in rows]


@router.get("/failed", response_model=list[DeliveryOut])
async def list_failed_deliveries(
    pipeline: Pipeline = Depends(get_pipeline),
    subscription_id: str | None = Query(default=None, min_length=1),
    event_type: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[DeliveryOut]:
    try:
        rows = await pipeline.storage.list_deliveries(
            subscription_id=subscription_id,
            event_type=event_type,
            status="failed",
            is_resolved=False,
            limit=limit,
            offset=offset,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [DeliveryOut(**asdict(row)) for row in rows]


@router.post("/retry-all", response_model=BulkDeliveryOut)
async def retry_all_deliveries(
    payload: BulkDeliveryRequest | None = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BulkDeliveryOut:
    filters = payload or BulkDeliveryRequest()
    try:
        rows = await pipeline.deliveries.retry_all(
            subscription_id=filters.subscription_id,
            event_type=filters.event_type,
            limit=filters.limit,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return _bulk_out(rows)


@router.post("/replay-all", response_model=BulkDeliveryOut)
async def replay_all_deliveries(
    payload: BulkDeliveryRequest | None = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BulkDeliveryOut:
    filters = payload or BulkDeliveryRequest()
    try:
        rows = await pipeline.deliveries.replay_all(
            subscription_id=filters.subscription_id,
            event_type=filters.event_type,
            limit=filters.limit,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return _bulk_out(rows)


@router.post("/retry/{delivery_id}", response_model=DeliveryOut)
async def retry_delivery(delivery_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> DeliveryOut:
    try:
        delivery = await pipeline.deliveries.retry(delivery_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DeliveryOut(**asdict(delivery))


@router.post("/replay/{delivery_id}", response_model=DeliveryOut)
async def replay_delivery(delivery_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> DeliveryOut:
    try:
        delivery = await pipeline.deliveries.replay(delivery_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DeliveryOut(**asdict(delivery))


@router.post("/resolve/{delivery_id}", response_model=DeliveryOut)
async def resolve_delivery(delivery_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> DeliveryOut:
    try:
        delivery = await pipeline.deliveries.mark_resolved(delivery_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DeliveryOut(**asdict(delivery))


def _bulk_out(rows: list[DeliveryAttempt]) -> BulkDeliveryOut:
    delivered = sum(1 for row in rows if row.status == "delivered")
    return BulkDeliveryOut(
        attempted=len(rows),
        delivered=delivered,
        failed=len(rows) - delivered,
        deliveries=[DeliveryOut(**asdict(row)) for row in rows],
    )
