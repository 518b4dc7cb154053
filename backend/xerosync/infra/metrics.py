import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.http_requests = None
            self.http_5xx = None
            self.http_latency = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_errors = None
            self.xero_records = None
            self.xero_runs = None
            self.xero_pending = None
            self.xero_token_refresh = None
            self.xero_api_calls = None
            return

        self.http_requests = Counter(
            "http_requests_total",
            "HTTP requests by method, route template and status code.",
            ["method", "route", "status_code"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "route"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "route", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.job_heartbeat = Gauge(
            "job_last_heartbeat_timestamp",
            "Unix timestamp for the latest scheduler loop tick.",
            ["job"],
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Unix timestamp for the latest successful scheduler loop run.",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Scheduler loop errors by job and reason.",
            ["job", "reason"],
            registry=self.registry,
        )
        self.xero_records = Counter(
            "xero_sync_records_total",
            "Staged records processed by entity and outcome.",
            ["entity", "outcome"],
            registry=self.registry,
        )
        self.xero_runs = Counter(
            "xero_sync_runs_total",
            "Coordinated sync runs by result.",
            ["result"],
            registry=self.registry,
        )
        self.xero_pending = Gauge(
            "xero_pending_records",
            "Staged records waiting for sync, sampled at the start of each run.",
            ["entity"],
            registry=self.registry,
        )
        self.xero_token_refresh = Counter(
            "xero_token_refresh_total",
            "Xero OAuth token refresh attempts by result.",
            ["result"],
            registry=self.registry,
        )
        self.xero_api_calls = Counter(
            "xero_api_calls_total",
            "Xero API calls by operation and status class.",
            ["operation", "status_class"],
            registry=self.registry,
        )

    def record_http_request(self, method: str, route: str, status_code: int) -> None:
        if not self.enabled or self.http_requests is None:
            return
        self.http_requests.labels(method=method, route=route, status_code=str(status_code)).inc()

    def record_http_5xx(self, method: str, route: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, route=route).inc()

    def record_http_latency(self, method: str, route: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        duration_seconds = max(0.0, float(duration_seconds))
        self.http_latency.labels(method=method, route=route, status_class=status_class).observe(
            duration_seconds
        )

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_heartbeat.labels(job=job).set(ts)

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_last_success.labels(job=job).set(ts)

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        safe_reason = reason or "unknown"
        self.job_errors.labels(job=job, reason=safe_reason).inc()

    def record_xero_records(self, entity: str, outcome: str, count: int = 1) -> None:
        if not self.enabled or self.xero_records is None:
            return
        if count <= 0:
            return
        self.xero_records.labels(entity=entity, outcome=outcome).inc(count)

    def record_xero_run(self, result: str) -> None:
        if not self.enabled or self.xero_runs is None:
            return
        self.xero_runs.labels(result=result or "unknown").inc()

    def set_xero_pending(self, entity: str, count: int) -> None:
        if not self.enabled or self.xero_pending is None:
            return
        self.xero_pending.labels(entity=entity).set(max(0, count))

    def record_xero_token_refresh(self, result: str) -> None:
        if not self.enabled or self.xero_token_refresh is None:
            return
        self.xero_token_refresh.labels(result=result or "unknown").inc()

    def record_xero_api_call(self, operation: str, status_code: int | None) -> None:
        if not self.enabled or self.xero_api_calls is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "error"
        self.xero_api_calls.labels(operation=operation, status_class=status_class).inc()

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
