from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from incidentflow.api.router import api_router
from incidentflow.core.config import get_settings
from incidentflow.core.telemetry import TelemetryRuntime, configure_logging, setup_telemetry, shutdown_telemetry
from incidentflow.services.queue_client import get_queue_client
from incidentflow.services.repository import get_repository

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)
        # Pools are created lazily; close whichever ones were opened.
        await get_queue_client().close()
        get_queue_client.cache_clear()
        await get_repository().close()
        get_repository.cache_clear()


configure_logging(settings.log_level)
app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_telemetry(settings, service_name=settings.app_name)


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
