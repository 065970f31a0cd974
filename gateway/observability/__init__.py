"""
Observability module - Logging, Metrics, and Tracing.
"""

from gateway.observability.logging import get_logger, setup_logging
from gateway.observability.metrics import metrics
from gateway.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
