from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from listing_relay.jobs.orchestrator import OrchestratorClosedError, UnknownJobError
from listing_relay.schemas.jobs import JobAcceptedOut, JobOut, JobStatus, JobSubmitRequest
from listing_relay.services.pipeline import Pipeline, get_pipeline
from listing_relay.services.repository import (
    RepositoryConflictError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()


@router.post("", response_model=JobAcceptedOut, status_code=status.HTTP_202_ACCEPTED)
async def submit_job(payload: JobSubmitRequest, pipeline: Pipeline = Depends(get_pipeline)) -> JobAcceptedOut:
    try:
        job_id = await pipeline.orchestrator.submit(payload.source, payload.region, payload.params)
    except OrchestratorClosedError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobAcceptedOut(job_id=job_id)


@router.get("", response_model=list[JobOut])
async def list_jobs(
    pipeline: Pipeline = Depends(get_pipeline),
    job_status: JobStatus | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[JobOut]:
    try:
        jobs = await pipeline.storage.list_jobs(status=job_status, source=source, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [JobOut(**asdict(job)) for job in jobs]


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> JobOut:
    try:
        job = await pipeline.orchestrator.get_job(job_id)
    except UnknownJobError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found") from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobOut(**asdict(job))
