from fastapi import APIRouter

from incidentflow.api.routes import events, health, jobs, sources

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sources.router, prefix="/sources", tags=["producer"])
api_router.include_router(events.router, prefix="/events", tags=["producer"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["producer"])
