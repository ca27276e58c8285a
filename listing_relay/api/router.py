from fastapi import APIRouter

from listing_relay.api.routes import activities, calls, deliveries, health, jobs, metrics

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(deliveries.router, prefix="/deliveries", tags=["webhooks"])
api_router.include_router(calls.router, prefix="/calls", tags=["crm"])
api_router.include_router(activities.router, prefix="/crm-activity", tags=["crm"])
api_router.include_router(metrics.router, tags=["metrics"])
