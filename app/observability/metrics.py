"""
Metrics Collection with Prometheus.

Exposes licensing and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TRANSACTION_TYPE = "transaction_type"
    OUTCOME = "outcome"
    TIER = "tier"
    ERROR_TYPE = "error_type"


class LicensingMetrics:
    """
    Centralized metrics for the licensing service.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - IPN notifications (by transaction type and outcome)
    - License lifecycle (creations by tier, status transitions, activations)
    - Credit consumption (success / insufficient / unlimited)
    """

    def __init__(self) -> None:
        self.service_info = Info(
            "licensing_service",
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
            "licensing_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "licensing_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "licensing_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # IPN Metrics
        # ====================================================================
        self.ipn_notifications_total = Counter(
            "licensing_ipn_notifications_total",
            "JVZoo IPN notifications by type and outcome",
            [MetricLabels.TRANSACTION_TYPE, MetricLabels.OUTCOME],
        )

        self.ipn_processing_duration_seconds = Histogram(
            "licensing_ipn_processing_duration_seconds",
            "IPN processing duration in seconds",
            buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # License Metrics
        # ====================================================================
        self.licenses_created_total = Counter(
            "licensing_licenses_created_total",
            "Licenses created by tier",
            [MetricLabels.TIER],
        )

        self.license_transitions_total = Counter(
            "licensing_license_transitions_total",
            "License status transitions",
            ["to_status"],
        )

        self.activations_total = Counter(
            "licensing_activations_total",
            "License activation attempts",
            ["success", "reason"],
        )

        self.validations_total = Counter(
            "licensing_validations_total",
            "License validation checks",
            ["valid"],
        )

        # ====================================================================
        # Credit Metrics
        # ====================================================================
        self.credit_consumptions_total = Counter(
            "licensing_credit_consumptions_total",
            "Credit consume calls by result",
            ["result"],
        )

        self.credits_consumed_total = Counter(
            "licensing_credits_consumed_total",
            "Total credits debited from finite allowances",
        )

        self.credit_resets_total = Counter(
            "licensing_credit_resets_total",
            "Monthly credit period resets applied",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "licensing_errors_total",
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

    def record_ipn(self, transaction_type: str, outcome: str, duration: float) -> None:
        self.ipn_notifications_total.labels(
            transaction_type=transaction_type, outcome=outcome
        ).inc()
        self.ipn_processing_duration_seconds.observe(duration)

    def record_license_created(self, tier: str) -> None:
        self.licenses_created_total.labels(tier=tier).inc()

    def record_license_transition(self, to_status: str) -> None:
        self.license_transitions_total.labels(to_status=to_status).inc()

    def record_activation(self, success: bool, reason: str | None = None) -> None:
        self.activations_total.labels(success=str(success), reason=reason or "none").inc()

    def record_validation(self, valid: bool) -> None:
        self.validations_total.labels(valid=str(valid)).inc()

    def record_credit_consumption(self, result: str, amount: int = 0) -> None:
        """Record a consume call; amount is only counted for finite debits."""
        self.credit_consumptions_total.labels(result=result).inc()
        if amount > 0:
            self.credits_consumed_total.inc(amount)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LicensingMetrics()
