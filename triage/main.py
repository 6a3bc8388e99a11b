from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from triage.api.deps import clear_runtime_caches
from triage.api.router import api_router
from triage.core.config import get_settings
from triage.core.telemetry import TelemetryRuntime, configure_logging, setup_api_telemetry, shutdown_api_telemetry
from triage.services.repository import get_repository

settings = get_settings()
configure_logging(settings)
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info(
        "starting app=%s environment=%s concurrency=%s",
        settings.app_name,
        settings.environment,
        settings.ingest_concurrency,
    )
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        # Close the asyncpg pool before dropping cached services that hold it.
        await get_repository().close()
        get_repository.cache_clear()
        clear_runtime_caches()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


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
