"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from gateway.api.billing_routes import router as billing_router
from gateway.api.proxy_routes import router as proxy_router
from gateway.api.routes import router
from gateway.config import settings
from gateway.context import ServiceContext, build_context
from gateway.db.migration_runner import run_migrations
from gateway.exceptions import ErrorType, GatewayError, error_body
from gateway.observability import get_logger, metrics, setup_logging, setup_tracing
from gateway.observability.logging import log_context
from gateway.observability.tracing import instrument_fastapi, instrument_sqlalchemy

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)

_STATUS_ERROR_TYPES = {
    401: ErrorType.AUTH_ERROR,
    402: ErrorType.INSUFFICIENT_CREDITS,
    404: ErrorType.NOT_FOUND,
}


def _sanitize_validation_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Validation errors reduced to JSON-safe fields (ctx may hold exceptions)."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized: dict[str, Any] = {
            "type": error.get("type"),
            "loc": list(error.get("loc", ())),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)
    return sanitized_errors


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        """Render gateway errors into the error envelope."""
        if exc.status_code >= 500:
            metrics.record_error(type(exc).__name__, "http_request")
            logger.error(
                "gateway_error",
                path=request.url.path,
                error_type=exc.error_type.value,
                error=exc.message,
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Log detailed validation errors and answer 400."""
        sanitized_errors = _sanitize_validation_errors(exc)
        logger.warning(
            "validation_error",
            path=request.url.path,
            method=request.method,
            errors=sanitized_errors,
        )
        message = "; ".join(str(error["msg"]) for error in sanitized_errors) or "Invalid request"
        return JSONResponse(
            status_code=400,
            content=error_body(message, ErrorType.INVALID_REQUEST, errors=sanitized_errors),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Framework HTTP errors (unknown routes, wrong methods) in the error envelope."""
        if exc.status_code == 404:
            message = f"Not found: {request.method} {request.url.path}"
        else:
            message = str(exc.detail)
        error_type = _STATUS_ERROR_TYPES.get(
            exc.status_code,
            ErrorType.SERVER_ERROR if exc.status_code >= 500 else ErrorType.INVALID_REQUEST,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(message, error_type),
            headers=getattr(exc, "headers", None),
        )


def create_app(context: ServiceContext | None = None) -> FastAPI:
    """
    Build the application.

    When a context is given it is used as-is (tests); otherwise one is built
    from settings at startup, after pending migrations are applied.
    """
    app_settings = context.settings if context is not None else settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        logger.info(
            "application_starting",
            service=app_settings.api_title,
            version=app_settings.api_version,
            tracing_enabled=app_settings.tracing_enabled,
            metrics_enabled=app_settings.metrics_enabled,
        )

        owns_context = context is None
        if owns_context:
            if settings.auto_migrate:
                await asyncio.to_thread(run_migrations, settings.database_url)
            app.state.context = build_context(settings)
            instrument_sqlalchemy(app.state.context.engine)

        yield

        logger.info("application_shutting_down")
        if owns_context:
            await app.state.context.aclose()
            logger.info("service_context_closed")
        else:
            await app.state.context.drain_settlements()

    app = FastAPI(
        title=app_settings.api_title,
        version=app_settings.api_version,
        description=app_settings.api_description,
        lifespan=lifespan,
    )
    if context is not None:
        app.state.context = context

    _register_exception_handlers(app)
    instrument_fastapi(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def logging_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Log all HTTP requests with timing; unexpected errors become a generic 500."""
        start_time = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        method = request.method
        path = request.url.path

        with log_context(request_id=request_id):
            logger.info("request_started", method=method, path=path)
            try:
                response = await call_next(request)
            except Exception as e:
                duration = time.perf_counter() - start_time
                metrics.record_http_request(path, method, 500, duration)
                metrics.record_error(type(e).__name__, "http_request")
                logger.error(
                    "request_failed",
                    method=method,
                    path=path,
                    error=str(e),
                    duration_seconds=duration,
                    exc_info=True,
                )
                return JSONResponse(
                    status_code=500,
                    content=error_body("Internal server error", ErrorType.SERVER_ERROR),
                    headers={"X-Request-ID": request_id},
                )

            duration = time.perf_counter() - start_time
            route = request.scope.get("route")
            endpoint = getattr(route, "path", "unmatched")
            metrics.record_http_request(endpoint, method, response.status_code, duration)
            logger.info(
                "request_completed",
                method=method,
                path=path,
                status_code=response.status_code,
                duration_seconds=duration,
            )
            response.headers.setdefault("X-Request-ID", request_id)
            return response

    app.include_router(router)
    app.include_router(proxy_router)
    app.include_router(billing_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint() -> Response:
        """
        Prometheus metrics endpoint.

        Returns metrics in Prometheus text format.
        """
        if not app_settings.metrics_enabled:
            return JSONResponse(
                status_code=404,
                content=error_body("Metrics disabled", ErrorType.NOT_FOUND),
            )
        return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


setup_tracing()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "gateway.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
