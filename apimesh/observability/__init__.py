"""
apimesh - Observability Module

Structured JSON logging and Prometheus metrics.
"""

from .logging import (
    JSONFormatter,
    LogContext,
    StructuredLogger,
    TimedOperation,
    get_logger,
    log_context,
    setup_logging,
)
from .metrics import (
    MetricsCollector,
    get_metrics,
    metrics_endpoint,
    setup_metrics,
)

__all__ = [
    # Logging
    "JSONFormatter",
    "LogContext",
    "StructuredLogger",
    "TimedOperation",
    "get_logger",
    "log_context",
    "setup_logging",
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "metrics_endpoint",
    "setup_metrics",
]
