"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match

from app.api.ipn_routes import router as ipn_router
from app.api.license_routes import router as license_router
from app.api.status_routes import router as status_router
from app.config import settings
from app.db.session import Database
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from app.services.notifications import LoggingPurchaseNotifier

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Owns the Database and the purchase notifier; both are placed on app.state
    unless a caller (tests, scripts) has already provided them.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        environment=settings.environment,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        jvzoo_configured=bool(settings.jvzoo_secret_key),
    )

    owns_database = getattr(app.state, "database", None) is None
    if owns_database:
        app.state.database = Database.from_settings(settings)
        instrument_sqlalchemy(app.state.database.engine)
    if getattr(app.state, "notifier", None) is None:
        app.state.notifier = LoggingPurchaseNotifier()

    yield

    logger.info("application_shutting_down")
    if owns_database:
        await app.state.database.dispose()
        app.state.database = None
        logger.info("database_engine_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log detailed validation errors for debugging."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may contain non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)


class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Trust X-Forwarded-Proto from the reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto

        return await call_next(request)


app.add_middleware(ProxyHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def endpoint_label(request: Request) -> str:
    """Route template for metric labels; raw paths would make series unbounded."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match != Match.NONE:
            return getattr(route, "path", "unmatched")
    return "unmatched"


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    path = request.url.path
    endpoint = endpoint_label(request)
    method = request.method

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=path)
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

        try:
            response = await call_next(request)
            duration = time.time() - start_time
            metrics.record_http_request(endpoint, method, response.status_code, duration)
            logger.info(
                "request_completed",
                method=method,
                path=path,
                status_code=response.status_code,
                duration_seconds=duration,
            )
            return response
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")
            logger.error(
                "request_failed",
                method=method,
                path=path,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


app.include_router(ipn_router)
app.include_router(license_router)
app.include_router(status_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus metrics in text format."""
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled", status_code=404)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
    )
