"""
Metrics Collection with Prometheus.

Exposes ledger and generation metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from clipledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    PROVIDER = "provider"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the ClipLedger API.

    Covers:
    - HTTP requests (rate, duration)
    - Reservations (rate by disposition)
    - Payment settlements (rate by outcome, credits granted)
    - Generation tasks (terminal states, poll attempts, loops in flight)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info("clipledger_service", "Service information")
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
            "clipledger_http_requests_total",
            "Total HTTP requests",
            [
                MetricLabels.ENDPOINT.value,
                MetricLabels.METHOD.value,
                MetricLabels.STATUS_CODE.value,
            ],
        )

        self.http_request_duration_seconds = Histogram(
            "clipledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "clipledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_operations_total = Counter(
            "clipledger_ledger_operations_total",
            "Ledger operations by outcome",
            [MetricLabels.OPERATION.value, MetricLabels.OUTCOME.value],
        )

        self.credits_granted_total = Counter(
            "clipledger_credits_granted_total",
            "Credits added to accounts by settled payments",
        )

        self.settlements_total = Counter(
            "clipledger_settlements_total",
            "Payment events handled by outcome",
            [MetricLabels.OUTCOME.value],
        )

        # ====================================================================
        # Generation Metrics
        # ====================================================================
        self.tasks_total = Counter(
            "clipledger_generation_tasks_total",
            "Generation tasks reaching a terminal state",
            [MetricLabels.PROVIDER.value, "state"],
        )

        self.poll_attempts_total = Counter(
            "clipledger_poll_attempts_total",
            "Provider status fetches",
            [MetricLabels.PROVIDER.value, "result"],
        )

        self.poll_loops_in_progress = Gauge(
            "clipledger_poll_loops_in_progress",
            "Poll loops currently running",
        )

        self.task_duration_seconds = Histogram(
            "clipledger_generation_task_duration_seconds",
            "Time from submission to terminal state",
            [MetricLabels.PROVIDER.value],
            buckets=(10, 30, 60, 120, 180, 300, 600, 900),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "clipledger_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE.value, MetricLabels.OPERATION.value],
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

    def record_ledger_operation(self, operation: str, outcome: str) -> None:
        """Record a reserve/commit/refund/credit call."""
        self.ledger_operations_total.labels(operation=operation, outcome=outcome).inc()

    def record_settlement(self, outcome: str, credits_added: int) -> None:
        """Record a settlement and the credits it granted."""
        self.settlements_total.labels(outcome=outcome).inc()
        if credits_added > 0:
            self.credits_granted_total.inc(credits_added)

    def record_poll(self, provider: str, result: str) -> None:
        """Record one status fetch."""
        self.poll_attempts_total.labels(provider=provider, result=result).inc()

    def record_task_terminal(self, provider: str, state: str, duration: float | None) -> None:
        """Record a task reaching its terminal state."""
        self.tasks_total.labels(provider=provider, state=state).inc()
        if duration is not None:
            self.task_duration_seconds.labels(provider=provider).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
