"""HTTP entry point for the check-in tracker.

Routers live in ``tracker.api``; this module wires logging, the database
lifecycle, request tracing and the mapping from ``TrackerError`` subclasses
to HTTP status codes.
"""

import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request, status
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware

from tracker.api import checkins_router, stats_router, users_router
from tracker.config import get_settings
from tracker.logging_config import configure_logging, get_logger
from tracker.schemas.common import ErrorDetail, ErrorResponse
from tracker.utils.db import close_db, engine, init_db
from tracker.utils.errors import (
    ConcurrencyConflictError,
    NotFoundError,
    TrackerError,
    TransientFailureError,
    ValidationError,
)
from tracker.utils.json_utils import ORJSONResponse

API_VERSION = "1.0.0"
REQUEST_ID_HEADER = "X-Request-ID"

# Checked in order; first isinstance match wins.
ERROR_STATUS: tuple[tuple[type[TrackerError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (TransientFailureError, status.HTTP_503_SERVICE_UNAVAILABLE),
)

settings = get_settings()
configure_logging(settings.log_level, json_output=settings.app_env == "production")
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    logger.info("app_starting", app_env=settings.app_env, timezone=settings.timezone)
    await init_db()
    try:
        yield
    finally:
        logger.info("app_stopping")
        await close_db()


app = FastAPI(
    title="Check-in Tracker API",
    version=API_VERSION,
    description="Check-in accounting and gamification for group chat bots",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagate or mint a request id and log one line per request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
            request_id=request_id,
        )
        return response


app.add_middleware(RequestIDMiddleware)


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or uuid.uuid4().hex


def status_for(exc: TrackerError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(exc: TrackerError, trace_id: str) -> dict[str, Any]:
    """Serialize a tracker error into the public error envelope."""
    envelope = ErrorResponse(
        error=ErrorDetail(code=exc.code, message=exc.message, details=exc.details),
        traceId=trace_id,
    )
    return envelope.model_dump(by_alias=True)


@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError) -> ORJSONResponse:
    trace_id = get_request_id(request)
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log("request_failed", code=exc.code, status=status_code, trace_id=trace_id)
    return ORJSONResponse(status_code=status_code, content=error_body(exc, trace_id))


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("database_health_check_failed", error=str(exc))
        return f"unhealthy: {exc}"
    return "healthy"


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, Any]:
    database = await _database_status()
    return {
        "status": "healthy" if database == "healthy" else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": API_VERSION,
        "services": {
            "database": database,
            "locks": "redis" if settings.redis_url else "in-process",
        },
    }


for router in (checkins_router, users_router, stats_router):
    app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tracker.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_debug,
    )
