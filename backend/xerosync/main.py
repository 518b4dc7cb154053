import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from xerosync.api.problem_details import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_VALIDATION,
    problem_details,
)
from xerosync.api.routes_admin_xero import router as admin_xero_router
from xerosync.api.routes_health import router as health_router
from xerosync.domain.errors import DomainError
from xerosync.infra.db import dispose_engine, get_session_factory
from xerosync.infra.logging import clear_log_context, configure_logging, update_log_context
from xerosync.infra.metrics import configure_metrics
from xerosync.infra.tracing import configure_tracing, instrument_fastapi
from xerosync.services import build_app_services
from xerosync.settings import settings

logger = logging.getLogger(__name__)


def _resolve_log_identity(request: Request) -> dict[str, str]:
    context: dict[str, str] = {}
    admin_identity = getattr(request.state, "admin_identity", None)
    if admin_identity:
        role = getattr(admin_identity, "role", None)
        role_value = getattr(role, "value", role)
        if role_value:
            context["role"] = str(role_value)
        context["admin_user"] = admin_identity.username
        if admin_identity.auth_method:
            context["auth_method"] = str(admin_identity.auth_method)
    return context


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        logger = logging.getLogger("xerosync.request")
        start = time.time()
        request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
        if not request_id:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_attribute("request_id", request_id)

        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            update_log_context(status_code=status_code, **_resolve_log_identity(request))
            latency_ms = int((time.time() - start) * 1000)
            update_log_context(latency_ms=latency_ms)
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
        except Exception:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            self.metrics.record_http_5xx(request.method, route_label)
            raise
        finally:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            duration = time.perf_counter() - start
            self.metrics.record_http_latency(request.method, route_label, status_code, duration)
            self.metrics.record_http_request(request.method, route_label, status_code)
        if status_code >= 500:
            self.metrics.record_http_5xx(request.method, route_label)
        return response


def _validate_prod_config(app_settings) -> None:
    if app_settings.app_env != "prod" or app_settings.testing:
        return

    errors: list[str] = []
    if app_settings.metrics_enabled and len((app_settings.metrics_token or "").strip()) < 16:
        errors.append("METRICS_ENABLED=true in APP_ENV=prod requires METRICS_TOKEN of at least 16 characters")
    if not any(
        username and password
        for username, password in (
            (app_settings.admin_basic_username, app_settings.admin_basic_password),
            (app_settings.accountant_basic_username, app_settings.accountant_basic_password),
            (app_settings.viewer_basic_username, app_settings.viewer_basic_password),
        )
    ):
        errors.append("APP_ENV=prod requires at least one Basic Auth username/password pair")

    if errors:
        for error in errors:
            logger.error("startup_config_error", extra={"extra": {"detail": error}})
        raise RuntimeError("Invalid production configuration: " + "; ".join(errors))


def create_app(app_settings, *, tracer_provider=None) -> FastAPI:
    if tracer_provider is None:
        configure_tracing(service_name=app_settings.app_name)
    configure_logging()
    metrics_client = configure_metrics(app_settings.metrics_enabled)
    _validate_prod_config(app_settings)

    services = build_app_services(app_settings, metrics=metrics_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state_services = getattr(app.state, "services", None) or services
        app.state.services = state_services
        app.state.metrics = getattr(app.state, "metrics", None) or state_services.metrics
        app.state.app_settings = getattr(app.state, "app_settings", None) or app_settings
        app.state.db_session_factory = getattr(app.state, "db_session_factory", None) or get_session_factory()
        scheduler = state_services.scheduler
        if app.state.app_settings.xero_scheduler_enabled:
            scheduler.start()
        yield
        await scheduler.stop()
        await dispose_engine()

    app = FastAPI(title="Xero Staged Sync", version="1.0.0", lifespan=lifespan)

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=metrics_client)
    app.add_middleware(RequestIdMiddleware)

    # OTel instrumentation must be added last so it wraps all middleware.
    instrument_fastapi(app, tracer_provider=tracer_provider)

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
        return problem_details(
            request=request,
            status=400,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type or PROBLEM_TYPE_DOMAIN,
        )

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
        identity_context = _resolve_log_identity(request)
        request_id = getattr(request.state, "request_id", None)
        error_type = type(exc).__name__
        update_log_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=500,
            error_type=error_type,
            **identity_context,
        )
        logger.exception(
            "unhandled_exception",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "error_type": error_type,
                **identity_context,
            },
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    app.include_router(health_router)
    app.include_router(admin_xero_router)
    if app_settings.metrics_enabled:
        from xerosync.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
