from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse
from starlette.requests import Request

from auditor.api.router import api_router
from auditor.core.config import get_settings
from auditor.core.telemetry import TelemetryRuntime, configure_logging, setup_telemetry, shutdown_telemetry
from auditor.services.records import RepositoryUnavailableError
from auditor.services.repository import get_repository

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)
_telemetry_runtime: TelemetryRuntime | None = None

QUIET_PATHS = {"/healthz"}


@asynccontextmanager
async def lifespan(_: FastAPI):
    repository = get_repository()
    logger.info(
        "audit api starting repository=%s environment=%s otel_enabled=%s",
        type(repository).__name__,
        settings.environment,
        settings.otel_enabled,
    )
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)
        await repository.close()
        get_repository.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_telemetry(settings, role="api", app=app)


@app.exception_handler(RepositoryUnavailableError)
async def repository_unavailable_handler(request: Request, exc: RepositoryUnavailableError) -> JSONResponse:
    logger.error("store unavailable method=%s path=%s error=%s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    if request.url.path not in QUIET_PATHS:
        logger.info(
            "http request method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started_at) * 1000.0,
        )
    return response


app.include_router(api_router)
