"""
Metrics Collection with Prometheus.

Exposes gateway and billing metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from gateway.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    PROVIDER = "provider"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class GatewayMetrics:
    """
    Centralized metrics for the credit gateway.

    Covers:
    - HTTP requests (rate, duration, in progress)
    - Admission (pre-flight rejections, BYOK bypass)
    - Ledger (debits, credits)
    - Upstream relay (status, duration, stream settlement)
    - Payment webhooks (event type, outcome)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("gateway_service", "Service information")
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "gateway_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "gateway_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 120.0),
        )

        self.http_requests_in_progress = Gauge(
            "gateway_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Admission Metrics
        # ====================================================================
        self.preflight_rejections_total = Counter(
            "gateway_preflight_rejections_total",
            "Requests rejected by the balance pre-flight check",
            [MetricLabels.PROVIDER],
        )

        self.byok_requests_total = Counter(
            "gateway_byok_requests_total",
            "Requests relayed with a caller-supplied upstream key",
            [MetricLabels.PROVIDER],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.debits_total = Counter(
            "gateway_debits_total",
            "Debit attempts",
            ["success"],
        )

        self.debit_amount_minor = Histogram(
            "gateway_debit_amount_minor",
            "Debited amounts in minor units (cents)",
            buckets=(0, 1, 2, 5, 10, 25, 50, 100, 250, 500, 1000),
        )

        self.credits_added_total = Counter(
            "gateway_credits_added_total",
            "Credits applied from payments",
            ["kind"],
        )

        self.credit_amount_minor = Histogram(
            "gateway_credit_amount_minor",
            "Credited amounts in minor units (cents)",
            buckets=(100, 500, 1000, 2500, 5000, 10000, 25000),
        )

        # ====================================================================
        # Upstream Metrics
        # ====================================================================
        self.upstream_requests_total = Counter(
            "gateway_upstream_requests_total",
            "Upstream provider requests",
            [MetricLabels.PROVIDER, MetricLabels.STATUS_CODE],
        )

        self.upstream_duration_seconds = Histogram(
            "gateway_upstream_duration_seconds",
            "Time to upstream response headers in seconds",
            [MetricLabels.PROVIDER],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
        )

        self.stream_settlements_total = Counter(
            "gateway_stream_settlements_total",
            "Streaming responses settled after close",
            [MetricLabels.PROVIDER, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Payment Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "gateway_webhook_events_total",
            "Payment webhook events processed",
            ["event_type", MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "gateway_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_preflight_rejection(self, provider: str) -> None:
        self.preflight_rejections_total.labels(provider=provider).inc()

    def record_byok(self, provider: str) -> None:
        self.byok_requests_total.labels(provider=provider).inc()

    def record_debit(self, success: bool, amount_minor: int) -> None:
        """Record a debit attempt."""
        self.debits_total.labels(success=str(success)).inc()
        if success:
            self.debit_amount_minor.observe(amount_minor)

    def record_credit_addition(self, kind: str, amount_minor: int) -> None:
        self.credits_added_total.labels(kind=kind).inc()
        if amount_minor > 0:
            self.credit_amount_minor.observe(amount_minor)

    def record_upstream(self, provider: str, status_code: int | str, duration: float) -> None:
        """Record one upstream exchange (status_code may be 'timeout' or 'error')."""
        self.upstream_requests_total.labels(provider=provider, status_code=status_code).inc()
        self.upstream_duration_seconds.labels(provider=provider).observe(duration)

    def record_stream_settlement(self, provider: str, outcome: str) -> None:
        self.stream_settlements_total.labels(provider=provider, outcome=outcome).inc()

    def record_webhook_event(self, event_type: str, outcome: str) -> None:
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GatewayMetrics()
