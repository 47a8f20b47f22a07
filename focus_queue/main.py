from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from focus_queue.api.router import api_router
from focus_queue.core.config import get_settings
from focus_queue.core.telemetry import TelemetryRuntime, setup_api_telemetry, shutdown_api_telemetry
from focus_queue.services.adapters import get_source_adapters
from focus_queue.services.repository import get_repository
from focus_queue.services.writeback import get_writeback_queue

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        # Pending reconciliation writes need the pool, so drain them first.
        await get_writeback_queue().close()
        get_writeback_queue.cache_clear()
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        await get_repository().close()
        get_repository.cache_clear()
        get_source_adapters.cache_clear()


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
