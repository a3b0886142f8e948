import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Iterable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from booking_engine.api.problem_details import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_VALIDATION,
    domain_problem,
    problem_details,
)
from booking_engine.api.routes_bookings import router as bookings_router
from booking_engine.api.routes_checkout import router as checkout_router
from booking_engine.api.routes_health import router as health_router
from booking_engine.api.routes_refunds import router as refunds_router
from booking_engine.api.routes_units import router as units_router
from booking_engine.domain.errors import DomainError
from booking_engine.infra.db import dispose_engine, get_session_factory
from booking_engine.infra.logging import clear_log_context, configure_logging, update_log_context
from booking_engine.infra.metrics import configure_metrics
from booking_engine.services import build_app_services
from booking_engine.settings import settings

logger = logging.getLogger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        logger = logging.getLogger("booking_engine.request")
        start = time.time()
        request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
        if not request_id:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)

        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            latency_ms = int((time.time() - start) * 1000)
            update_log_context(status_code=status_code, latency_ms=latency_ms)
            logger.info("request", extra={"latency_ms": latency_ms})
            if response is not None:
                response.headers.setdefault("X-Request-ID", request_id)
            clear_log_context()


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        route_label = "unmatched"
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            duration = time.perf_counter() - start
            self.metrics.record_http_latency(request.method, route_label, status_code, duration)
        return response


def _resolve_cors_origins(app_settings) -> Iterable[str]:
    if app_settings.cors_origins:
        return app_settings.cors_origins
    if app_settings.app_env == "dev":
        return ["http://localhost:3000"]
    return []


def _validate_prod_config(app_settings) -> None:
    if app_settings.app_env != "prod":
        return

    errors: list[str] = []
    if not (app_settings.stripe_secret_key or "").strip():
        errors.append("APP_ENV=prod requires STRIPE_SECRET_KEY to be configured")
    if app_settings.notification_mode == "webhook" and not app_settings.notification_webhook_url:
        errors.append("NOTIFICATION_MODE=webhook requires NOTIFICATION_WEBHOOK_URL")
    if app_settings.database_url.startswith("sqlite"):
        errors.append("APP_ENV=prod requires a PostgreSQL DATABASE_URL")

    if errors:
        for error in errors:
            logger.error("config_invalid", extra={"extra": {"error": error}})
        raise RuntimeError("Invalid production configuration: " + "; ".join(errors))


def create_app(app_settings, *, services=None) -> FastAPI:
    configure_logging()
    _validate_prod_config(app_settings)
    metrics_client = services.metrics if services else configure_metrics(app_settings.metrics_enabled)
    services = services or build_app_services(app_settings, metrics=metrics_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state_services = getattr(app.state, "services", None) or services
        app.state.services = state_services
        app.state.metrics = getattr(app.state, "metrics", None) or state_services.metrics
        app.state.app_settings = getattr(app.state, "app_settings", app_settings)
        app.state.db_session_factory = getattr(app.state, "db_session_factory", None) or get_session_factory()
        yield
        await dispose_engine()

    app = FastAPI(title="Booking Engine", version="1.0.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=metrics_client)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(_resolve_cors_origins(app_settings)),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        if exc.status_code >= 500:
            logger.error(
                "domain_error",
                extra={"extra": {"title": exc.title, "detail": exc.detail, "path": request.url.path}},
            )
        return domain_problem(request, exc)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.detail if isinstance(exc.detail, str) else "HTTP Error",
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            type_=PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else PROBLEM_TYPE_SERVER,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        error_type = type(exc).__name__
        update_log_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=500,
            error_type=error_type,
        )
        logger.exception(
            "unhandled_exception",
            extra={"request_id": request_id, "path": request.url.path, "error_type": error_type},
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    app.include_router(health_router)
    app.include_router(units_router)
    app.include_router(checkout_router)
    app.include_router(bookings_router)
    app.include_router(refunds_router)
    if app_settings.metrics_enabled:
        from booking_engine.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
