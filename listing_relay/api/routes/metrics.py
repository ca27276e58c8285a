from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from listing_relay.services.pipeline import Pipeline, get_pipeline

router = APIRouter()

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(pipeline: Pipeline = Depends(get_pipeline)) -> PlainTextResponse:
    return PlainTextResponse(pipeline.metrics.render(), media_type=PROMETHEUS_CONTENT_TYPE)
