from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status

from listing_relay.schemas.activities import CallAnalyzeOut, CallAnalyzeRequest, CrmActivityOut
from listing_relay.services.pipeline import Pipeline, get_pipeline
from listing_relay.services.repository import RepositoryUnavailableError, RepositoryValidationError

router = APIRouter()


@router.post("/analyze", response_model=CallAnalyzeOut, status_code=status.HTTP_201_CREATED)
async def analyze_call(payload: CallAnalyzeRequest, pipeline: Pipeline = Depends(get_pipeline)) -> CallAnalyzeOut:
    try:
        activity, emitted = await pipeline.activities.emit_call_summary(
            call_sid=payload.call_sid,
            summary=payload.summary,
            score=payload.score,
            tags=payload.tags,
            lead_id=payload.lead_id,
            user_id=payload.user_id,
            force=payload.force,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CallAnalyzeOut(activity=CrmActivityOut(**asdict(activity)), emitted=emitted)
