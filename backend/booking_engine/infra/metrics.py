import logging

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
            self.bookings = None
            self.availability_conflicts = None
            self.refunds = None
            self.gateway_calls = None
            self.outbox_events = None
            self.outbox_queue_depth = None
            self.circuit_state = None
            self.http_latency = None
            self.job_errors = None
            return

        self.bookings = Counter(
            "bookings_total",
            "Booking lifecycle transitions by action.",
            ["action"],
            registry=self.registry,
        )
        self.availability_conflicts = Counter(
            "availability_conflicts_total",
            "Reserve attempts rejected because the range overlaps an existing block.",
            registry=self.registry,
        )
        self.refunds = Counter(
            "refunds_total",
            "Refund request outcomes.",
            ["outcome"],
            registry=self.registry,
        )
        self.gateway_calls = Counter(
            "gateway_calls_total",
            "Payment gateway calls by operation and outcome.",
            ["operation", "outcome"],
            registry=self.registry,
        )
        self.outbox_events = Counter(
            "outbox_events_total",
            "Notification outbox delivery outcomes.",
            ["status"],
            registry=self.registry,
        )
        self.outbox_queue_depth = Gauge(
            "outbox_queue_depth",
            "Outbox events per status at last delivery pass.",
            ["status"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half_open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency by method, route and status class.",
            ["method", "path", "status_class"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Background job failures by job name.",
            ["job", "reason"],
            registry=self.registry,
        )

    def record_booking(self, action: str, count: int = 1) -> None:
        if not self.enabled or self.bookings is None:
            return
        self.bookings.labels(action=action).inc(count)

    def record_availability_conflict(self) -> None:
        if not self.enabled or self.availability_conflicts is None:
            return
        self.availability_conflicts.inc()

    def record_refund(self, outcome: str) -> None:
        if not self.enabled or self.refunds is None:
            return
        self.refunds.labels(outcome=outcome).inc()

    def record_gateway_call(self, operation: str, outcome: str) -> None:
        if not self.enabled or self.gateway_calls is None:
            return
        self.gateway_calls.labels(operation=operation, outcome=outcome).inc()

    def record_outbox_event(self, status: str, count: int = 1) -> None:
        if not self.enabled or self.outbox_events is None:
            return
        self.outbox_events.labels(status=status or "unknown").inc(count)

    def set_outbox_depth(self, status: str, count: int) -> None:
        if not self.enabled or self.outbox_queue_depth is None:
            return
        safe_status = status or "unknown"
        self.outbox_queue_depth.labels(status=safe_status).set(max(0, count))

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx"
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            max(0.0, duration_seconds)
        )

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        self.job_errors.labels(job=job, reason=reason or "unknown").inc()

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
