"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from mqueue.observability.logging import bind_context, setup_logging
from mqueue.observability.metrics import MetricsCollector
from mqueue.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_context",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
