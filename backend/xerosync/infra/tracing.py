import atexit
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

_TRACING_CONFIGURED = False
_TRACING_SHUTDOWN = False

logger = logging.getLogger(__name__)


def _set_http_attributes(span, *, path: str | None, scheme: str | None, host: str | None) -> None:
    if not span or not span.is_recording():
        return
    sanitized_path = path or "/"
    if scheme and host:
        span.set_attribute("http.url", f"{scheme}://{host}{sanitized_path}")
    span.set_attribute("http.target", sanitized_path)


def _fastapi_request_hook(span, scope) -> None:  # noqa: ANN001
    server = scope.get("server") or (None, None)
    route = scope.get("route")
    _set_http_attributes(
        span,
        path=getattr(route, "path", None) or scope.get("path", "/"),
        scheme=scope.get("scheme"),
        host=server[0] if server else None,
    )


def _httpx_request_hook(span, request) -> None:  # noqa: ANN001
    # Xero query strings carry `where` filters with contact names and emails.
    url = request.url.copy_with(query=None)
    _set_http_attributes(span, path=url.path, scheme=url.scheme, host=url.host)


def configure_tracing(*, service_name: str | None = None) -> None:
    global _TRACING_CONFIGURED
    if _TRACING_CONFIGURED:
        return

    resource = Resource.create(
        {
            SERVICE_NAME: os.getenv("OTEL_SERVICE_NAME") or service_name or "xero-staged-sync",
            DEPLOYMENT_ENVIRONMENT: os.getenv("DEPLOYMENT_ENV", "local"),
        }
    )
    tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(tracer_provider)

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    is_testing = os.getenv("TESTING", "").lower() == "true"
    if otlp_endpoint and not is_testing:
        exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=otlp_endpoint.startswith("http://"))
        tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
    elif not is_testing:
        logger.debug("tracing_exporter_skipped_no_endpoint")

    HTTPXClientInstrumentor().instrument(tracer_provider=tracer_provider, request_hook=_httpx_request_hook)
    _TRACING_CONFIGURED = True
    atexit.register(shutdown_tracing)


def instrument_fastapi(app: FastAPI, *, tracer_provider=None) -> None:  # noqa: ANN001
    FastAPIInstrumentor().instrument_app(
        app,
        tracer_provider=tracer_provider or trace.get_tracer_provider(),
        server_request_hook=_fastapi_request_hook,
    )


def shutdown_tracing(*, force_flush: bool = True) -> None:
    global _TRACING_SHUTDOWN
    if _TRACING_SHUTDOWN:
        return
    _TRACING_SHUTDOWN = True
    try:
        tracer_provider = trace.get_tracer_provider()
        if force_flush:
            flush = getattr(tracer_provider, "force_flush", None)
            if callable(flush):
                flush()
        shutdown = getattr(tracer_provider, "shutdown", None)
        if callable(shutdown):
            shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.warning("tracing_shutdown_failed", extra={"extra": {"error": type(exc).__name__}})
