"""
Prometheus metrics for the pull consumer.

Defines and exposes metrics for:
- Delivery outcomes (consumed, duplicate, lock miss, malformed)
- Recovery work (redelivered, dead-lettered, claimed)
- Listener and store errors
- Consume latency and pending depth

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from pullstream.config.settings import get_settings

logger = logging.getLogger(__name__)

# Buckets for latency histograms (in seconds)
LATENCY_BUCKETS = (0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class MetricsCollector:
    """
    Prometheus metrics collector for pullstream.

    Usage:
        metrics = MetricsCollector()
        metrics.start_server()

        metrics.record_outcome("orders", "consumed")
        metrics.record_dead_lettered("orders")
    """

    def __init__(self):
        """Initialize Prometheus metrics."""

        self.messages_delivered = Counter(
            "pullstream_messages_delivered_total",
            "Deliveries through the idempotency gate by outcome",
            ["topic", "outcome"],  # consumed, duplicate, locked, malformed
        )

        self.messages_redelivered = Counter(
            "pullstream_messages_redelivered_total",
            "Idle pending entries re-fetched by the pending audit",
            ["topic"],
        )

        self.messages_dead_lettered = Counter(
            "pullstream_messages_dead_lettered_total",
            "Entries moved to the dead-letter stream",
            ["topic"],
        )

        self.messages_claimed = Counter(
            "pullstream_messages_claimed_total",
            "Pending entries reassigned to another consumer",
            ["topic"],
        )

        self.listener_errors = Counter(
            "pullstream_listener_errors_total",
            "Exceptions raised by registered listeners",
            ["topic", "error_type"],
        )

        self.store_errors = Counter(
            "pullstream_store_errors_total",
            "Failed stream store calls",
            ["operation", "error_type"],
        )

        self.consume_latency = Histogram(
            "pullstream_consume_latency_seconds",
            "Time spent in the idempotent consume protocol per entry",
            ["topic"],
            buckets=LATENCY_BUCKETS,
        )

        self.pending_entries = Gauge(
            "pullstream_pending_entries",
            "Pending entries seen by the last audit for this consumer",
            ["topic"],
        )

    def start_server(self, port: int | None = None) -> None:
        """
        Start HTTP server for Prometheus scraping.

        Args:
            port: Port to listen on (defaults to settings.metrics_port)
        """
        settings = get_settings()
        port = port or settings.metrics_port

        start_http_server(port, registry=REGISTRY)
        logger.info(f"Prometheus metrics server started on port {port}")

    def record_outcome(self, topic: str, outcome: str, latency: float | None = None) -> None:
        """
        Record one pass through the idempotency gate.

        Args:
            topic: Stream topic
            outcome: consumed, duplicate, locked or malformed
            latency: Optional time spent in seconds
        """
        self.messages_delivered.labels(topic=topic, outcome=outcome).inc()
        if latency is not None:
            self.consume_latency.labels(topic=topic).observe(latency)

    def record_redelivered(self, topic: str, count: int = 1) -> None:
        self.messages_redelivered.labels(topic=topic).inc(count)

    def record_dead_lettered(self, topic: str) -> None:
        self.messages_dead_lettered.labels(topic=topic).inc()

    def record_claimed(self, topic: str, count: int = 1) -> None:
        self.messages_claimed.labels(topic=topic).inc(count)

    def record_listener_error(self, topic: str, error_type: str) -> None:
        self.listener_errors.labels(topic=topic, error_type=error_type).inc()

    def record_store_error(self, operation: str, error_type: str) -> None:
        """
        Record a failed store call.

        Args:
            operation: Store operation name (group_read, list_pending, ...)
            error_type: Exception class name
        """
        self.store_errors.labels(operation=operation, error_type=error_type).inc()

    def set_pending_entries(self, topic: str, count: int) -> None:
        self.pending_entries.labels(topic=topic).set(count)


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics

