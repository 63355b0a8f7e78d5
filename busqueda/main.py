from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from busqueda.api.router import api_router
from busqueda.core.config import get_settings
from busqueda.core.telemetry import TelemetryRuntime, setup_telemetry, shutdown_telemetry
from busqueda.services.ingestion import build_ingestion_service
from busqueda.services.repository import get_repository
from busqueda.workers.dispatcher import IngestionDispatcher
from busqueda.workers.reconciliation import ReconciliationScheduler

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    current = get_settings()
    ingestion = build_ingestion_service(current)
    await ingestion.repository.ensure_schema()

    dispatcher = IngestionDispatcher(
        ingestion,
        workers=current.dispatcher_workers,
        queue_size=current.dispatcher_queue_size,
    )
    scheduler = ReconciliationScheduler.from_settings(current, ingestion)
    await dispatcher.start()
    if current.sync_enabled:
        await scheduler.start()
    app.state.dispatcher = dispatcher
    app.state.scheduler = scheduler

    try:
        yield
    finally:
        await scheduler.stop()
        await dispatcher.stop()
        app.state.dispatcher = None
        app.state.scheduler = None
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)
        # Ensure asyncpg pool shuts down on app teardown.
        await get_repository().close()
        get_repository.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_telemetry(settings, app)


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
