"""Utilities: logging and metrics."""

from tradelens.utils.logging import get_logger, log_context, setup_logging
from tradelens.utils.metrics import (
    estimate_embedding_cost,
    get_metrics,
    MetricsCollector,
)

__all__ = [
    "estimate_embedding_cost",
    "get_logger",
    "get_metrics",
    "log_context",
    "MetricsCollector",
    "setup_logging",
]
