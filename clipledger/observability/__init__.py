"""
Observability module - Logging, Metrics, and Tracing.
"""

from clipledger.observability.logging import get_logger, log_context, setup_logging
from clipledger.observability.metrics import metrics
from clipledger.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
