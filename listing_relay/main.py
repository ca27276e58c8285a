from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from listing_relay.api.router import api_router
from listing_relay.core.config import get_settings
from listing_relay.core.telemetry import TelemetryRuntime, configure_logging, setup_telemetry, shutdown_telemetry
from listing_relay.services.pipeline import get_pipeline

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.resume_queued_jobs_on_startup:
        await get_pipeline().orchestrator.resume_unfinished()
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_telemetry(app, _telemetry_runtime)
        # Only tear down a pipeline that was actually built for this process.
        if get_pipeline.cache_info().currsize:
            await get_pipeline().shutdown()
            get_pipeline.cache_clear()


configure_logging()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_telemetry(app, settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
