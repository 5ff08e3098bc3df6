"""
Metrics Collection with Prometheus.

Exposes generation, entitlement and settlement metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    CALLER = "caller"
    MODEL = "model"
    OUTCOME = "outcome"
    REASON = "reason"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"


class GatewayMetrics:
    """
    Centralized metrics for the generation gateway.

    Covers:
    - HTTP requests (rate, duration)
    - Generation outcomes per caller kind and model
    - Entitlement denials
    - Provider call duration
    - Credits deducted and settlement write failures
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""
        self.service_info = Info(
            "gateway_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # HTTP
        self.http_requests_total = Counter(
            "gateway_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )
        self.http_request_duration_seconds = Histogram(
            "gateway_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
        )
        self.http_requests_in_progress = Gauge(
            "gateway_http_requests_in_progress",
            "HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # Generation
        self.generations_total = Counter(
            "gateway_generations_total",
            "Generation attempts that reached the image provider",
            [MetricLabels.CALLER, MetricLabels.MODEL, MetricLabels.OUTCOME],
        )
        self.provider_duration_seconds = Histogram(
            "gateway_provider_duration_seconds",
            "Image provider call duration in seconds",
            [MetricLabels.OUTCOME],
            buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0),
        )

        # Entitlements
        self.entitlement_denials_total = Counter(
            "gateway_entitlement_denials_total",
            "Requests rejected by the entitlement gate",
            [MetricLabels.CALLER, MetricLabels.REASON],
        )
        self.credits_deducted_total = Counter(
            "gateway_credits_deducted_total",
            "Credits deducted for successful generations",
            [MetricLabels.MODEL],
        )

        # Settlement
        self.settlement_failures_total = Counter(
            "gateway_settlement_failures_total",
            "Post-generation ledger or audit writes that failed",
            [MetricLabels.OPERATION],
        )

        # Errors
        self.errors_total = Counter(
            "gateway_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

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

    def record_generation(self, caller: str, model: str, outcome: str, duration: float) -> None:
        """Record a provider invocation and its outcome."""
        self.generations_total.labels(caller=caller, model=model, outcome=outcome).inc()
        self.provider_duration_seconds.labels(outcome=outcome).observe(duration)

    def record_entitlement_denial(self, caller: str, reason: str) -> None:
        self.entitlement_denials_total.labels(caller=caller, reason=reason).inc()

    def record_credits_deducted(self, model: str, amount: int) -> None:
        self.credits_deducted_total.labels(model=model).inc(amount)

    def record_settlement_failure(self, operation: str) -> None:
        self.settlement_failures_total.labels(operation=operation).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GatewayMetrics()
