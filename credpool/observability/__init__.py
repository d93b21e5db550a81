"""
Observability module - Logging, Metrics, and Tracing.
"""

from credpool.observability.logging import get_logger, log_context, setup_logging
from credpool.observability.metrics import metrics
from credpool.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
