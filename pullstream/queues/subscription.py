"""
Subscriptions and their listener registries.

A Subscription binds one topic to a payload codec and an ordered list of
listeners. Listeners may be plain callables or coroutine functions; each one
is isolated so a failure never stops the ones registered after it.
"""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import structlog

from pullstream.observability.metrics import get_metrics
from pullstream.queues.message import PayloadCodec
from pullstream.store.client import StreamStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Listener = Callable[[T], Any] | Callable[[T], Awaitable[Any]]


@dataclass(frozen=True)
class TopicStream:
    """Handle to one topic's stream in a store."""

    topic: str
    store: StreamStore


class Subscription(Generic[T]):
    """
    One topic watched by a PullConsumer.

    Created by PullConsumer.subscribe(); listeners are appended with
    register_listener() and invoked in registration order by notify().

    Usage:
        consumer.subscribe("orders", OrderCreated).register_listener(handle_order)
    """

    def __init__(self, stream: TopicStream, codec: PayloadCodec[T]):
        self._stream = stream
        self._codec = codec
        self._listeners: list[Listener] = []

    @property
    def topic(self) -> str:
        return self._stream.topic

    @property
    def stream(self) -> TopicStream:
        return self._stream

    @property
    def codec(self) -> PayloadCodec[T]:
        return self._codec

    @property
    def listeners(self) -> tuple[Listener, ...]:
        return tuple(self._listeners)

    def register_listener(self, listener: Listener) -> "Subscription[T]":
        """Append a listener; returns self for chaining."""
        self._listeners.append(listener)
        return self

    async def notify(self, payload: T) -> int:
        """
        Invoke every listener with the payload, in registration order.

        Returns:
            Number of listeners that raised
        """
        failures = 0
        for listener in self._listeners:
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                failures += 1
                get_metrics().record_listener_error(self.topic, type(e).__name__)
                logger.exception(
                    "Listener failed",
                    topic=self.topic,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                )
        return failures

    def __repr__(self) -> str:
        return f"Subscription(topic={self.topic!r}, codec={self._codec!r}, listeners={len(self._listeners)})"
