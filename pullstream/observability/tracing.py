"""
OpenTelemetry distributed tracing for pullstream.

Provides:
- setup_tracing(): Initialize TracerProvider with OTLP exporter
- get_tracer(): Get a named tracer instance
- traced(): Context manager for creating spans
- inject_trace_context() / extract_trace_context(): stream field propagation
- add_trace_context: structlog processor that injects trace_id/span_id into logs

Trace context propagates through streams by encoding the W3C traceparent
header into message fields, so a listener span becomes a child of the
producer span that appended the message:

    Producer.send (XADD) → PullConsumer (XREADGROUP) → listeners
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.trace import SpanContext, StatusCode, TraceFlags, Tracer
from opentelemetry.trace.propagation import get_current_span

logger = logging.getLogger(__name__)

# W3C traceparent field name used in stream entries
TRACE_PARENT_FIELD = "traceparent"


def setup_tracing(
    service_name: str,
    otlp_endpoint: str | None = None,
    *,
    exporter: SpanExporter | None = None,
) -> TracerProvider:
    """
    Initialize the OpenTelemetry TracerProvider.

    Uses OTLP gRPC exporter by default. Pass a custom exporter for testing
    (e.g., InMemorySpanExporter).

    Args:
        service_name: Logical service name.
        otlp_endpoint: OTLP collector endpoint (e.g., "http://localhost:4317").
        exporter: Optional custom exporter (overrides OTLP).

    Returns:
        The configured TracerProvider.
    """
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)

    if exporter is None:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )

        exporter = OTLPSpanExporter(
            endpoint=otlp_endpoint or "http://localhost:4317",
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
    else:
        provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    logger.info(
        "OpenTelemetry tracing initialized: service=%s endpoint=%s",
        service_name,
        otlp_endpoint or "(custom exporter)",
    )
    return provider


def get_tracer(name: str) -> Tracer:
    """
    Get a named tracer from the global TracerProvider.

    Safe to call even when tracing is not enabled; returns a no-op tracer.
    """
    return trace.get_tracer(name)


def inject_trace_context() -> dict[str, str]:
    """
    Return the current trace context as stream fields.

    Returns a dict with a single ``traceparent`` key in W3C format, or an
    empty dict if no active span exists.
    """
    ctx = get_current_span().get_span_context()
    if not ctx.is_valid:
        return {}

    traceparent = f"00-{ctx.trace_id:032x}-{ctx.span_id:016x}-{ctx.trace_flags:02x}"
    return {TRACE_PARENT_FIELD: traceparent}


def extract_trace_context(fields: dict[str, str]) -> Context | None:
    """
    Parse a W3C traceparent from stream fields into an OTel Context.

    Args:
        fields: Stream entry fields.

    Returns:
        Context with a remote parent span, or None if absent or malformed.
    """
    traceparent = fields.get(TRACE_PARENT_FIELD)
    if not traceparent:
        return None

    parts = traceparent.split("-")
    if len(parts) != 4:
        return None

    try:
        remote_ctx = SpanContext(
            trace_id=int(parts[1], 16),
            span_id=int(parts[2], 16),
            is_remote=True,
            trace_flags=TraceFlags(int(parts[3], 16)),
        )
    except ValueError:
        logger.debug("Failed to parse traceparent: %s", traceparent)
        return None

    return trace.set_span_in_context(trace.NonRecordingSpan(remote_ctx))


@contextmanager
def traced(
    tracer: Tracer,
    name: str,
    attributes: dict[str, Any] | None = None,
    parent_context: Context | None = None,
):
    """
    Context manager that creates a span and records exceptions.

    Usage:
        tracer = get_tracer("pullstream.consumer")
        with traced(tracer, "notify", {"topic": "orders"}):
            ...
    """
    kwargs: dict[str, Any] = {}
    if parent_context is not None:
        kwargs["context"] = parent_context

    with tracer.start_as_current_span(name, **kwargs) as span:
        if attributes:
            for k, v in attributes.items():
                span.set_attribute(k, v)
        try:
            yield span
        except Exception as exc:
            span.set_status(StatusCode.ERROR, str(exc))
            span.record_exception(exc)
            raise


def add_trace_context(
    logger_: Any, method: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor that adds trace_id and span_id to log entries."""
    ctx = get_current_span().get_span_context()

    if ctx.is_valid:
        event_dict["trace_id"] = f"{ctx.trace_id:032x}"
        event_dict["span_id"] = f"{ctx.span_id:016x}"

    return event_dict
