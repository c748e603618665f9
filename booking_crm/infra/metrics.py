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
            self.booking_rejections = None
            self.side_effects = None
            self.notifications = None
            self.email_adapter_outcomes = None
            self.http_5xx = None
            self.http_latency = None
            self.circuit_state = None
            self.jobs = None
            return

        self.bookings = Counter(
            "bookings_total",
            "Booking lifecycle events.",
            ["action"],
            registry=self.registry,
        )
        self.booking_rejections = Counter(
            "booking_rejections_total",
            "Booking requests rejected by a validation gate.",
            ["reason"],
            registry=self.registry,
        )
        self.side_effects = Counter(
            "booking_side_effects_total",
            "Booking side-effect outcomes by effect and status.",
            ["effect", "status"],
            registry=self.registry,
        )
        self.notifications = Counter(
            "notifications_total",
            "Outbound notifications by channel and status.",
            ["channel", "status"],
            registry=self.registry,
        )
        self.email_adapter_outcomes = Counter(
            "email_adapter_outcomes_total",
            "Email adapter send outcomes.",
            ["status"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )
        self.jobs = Counter(
            "job_runs_total",
            "Scheduled job runs by job and status.",
            ["job", "status"],
            registry=self.registry,
        )

    def record_booking(self, action: str, count: int = 1) -> None:
        if not self.enabled or self.bookings is None:
            return
        if count <= 0:
            return
        self.bookings.labels(action=action).inc(count)

    def record_booking_rejection(self, reason: str) -> None:
        if not self.enabled or self.booking_rejections is None:
            return
        self.booking_rejections.labels(reason=reason or "unknown").inc()

    def record_side_effect(self, effect: str, status: str) -> None:
        if not self.enabled or self.side_effects is None:
            return
        self.side_effects.labels(effect=effect, status=status or "unknown").inc()

    def record_notification(self, channel: str, status: str) -> None:
        if not self.enabled or self.notifications is None:
            return
        self.notifications.labels(channel=channel, status=status or "unknown").inc()

    def record_email_adapter(self, status: str) -> None:
        if not self.enabled or self.email_adapter_outcomes is None:
            return
        safe_status = status or "unknown"
        self.email_adapter_outcomes.labels(status=safe_status).inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        duration_seconds = max(0.0, float(duration_seconds))
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            duration_seconds
        )

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def record_job(self, job: str, status: str) -> None:
        if not self.enabled or self.jobs is None:
            return
        self.jobs.labels(job=job, status=status or "unknown").inc()

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
