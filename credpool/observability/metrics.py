"""
Metrics Collection with Prometheus.

Exposes credential lifecycle and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from credpool.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    PROVIDER = "provider"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class PoolMetrics:
    """
    Centralized metrics for the Credential Pool API.

    Minimum viable metrics covering:
    - HTTP requests (rate, duration, errors)
    - Token refresh exchanges (rate, outcome, duration, de-duplicated waits)
    - Account selection (rate, outcome)
    - Imports (per-record outcome)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "credpool_service",
            "Service information",
        )
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
            "credpool_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "credpool_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "credpool_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Refresh Metrics
        # ====================================================================
        self.refresh_attempts_total = Counter(
            "credpool_refresh_attempts_total",
            "Token refresh exchanges sent to a provider",
            [MetricLabels.PROVIDER, MetricLabels.OUTCOME],
        )

        self.refresh_duration_seconds = Histogram(
            "credpool_refresh_duration_seconds",
            "Token refresh exchange duration in seconds",
            [MetricLabels.PROVIDER],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.refresh_joined_total = Counter(
            "credpool_refresh_joined_total",
            "Callers that waited on an in-flight refresh instead of starting one",
            [MetricLabels.PROVIDER],
        )

        self.refreshes_in_flight = Gauge(
            "credpool_refreshes_in_flight",
            "Number of refresh exchanges currently in flight",
        )

        # ====================================================================
        # Selection Metrics
        # ====================================================================
        self.selections_total = Counter(
            "credpool_selections_total",
            "Account selections",
            [MetricLabels.PROVIDER, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Import Metrics
        # ====================================================================
        self.imports_total = Counter(
            "credpool_imports_total",
            "Account import outcomes",
            [MetricLabels.PROVIDER, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "credpool_errors_total",
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

    def record_refresh(self, provider: str, outcome: str, duration: float) -> None:
        """Record one provider exchange."""
        self.refresh_attempts_total.labels(provider=provider, outcome=outcome).inc()
        self.refresh_duration_seconds.labels(provider=provider).observe(duration)

    def record_refresh_joined(self, provider: str) -> None:
        """Record a caller served by an in-flight refresh."""
        self.refresh_joined_total.labels(provider=provider).inc()

    def record_selection(self, provider: str, outcome: str) -> None:
        """Record a selection outcome."""
        self.selections_total.labels(provider=provider, outcome=outcome).inc()

    def record_import(self, provider: str, outcome: str) -> None:
        """Record a single import outcome."""
        self.imports_total.labels(provider=provider, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = PoolMetrics()
