"""Observability layer - logging, metrics, and tracing."""

from pullstream.observability.logging import setup_logging
from pullstream.observability.metrics import MetricsCollector, get_metrics
from pullstream.observability.tracing import get_tracer, setup_tracing

__all__ = ["setup_logging", "MetricsCollector", "get_metrics", "setup_tracing", "get_tracer"]
