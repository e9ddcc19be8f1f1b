"""
Stream producer.

Appends messages to their topic's stream with an approximate MAXLEN trim.
Sending is fire-and-forget: failures are logged and counted, and the caller
gets None instead of an id.
"""

import logging
from typing import Any

from pullstream.config.settings import get_settings
from pullstream.observability.metrics import get_metrics
from pullstream.observability.tracing import inject_trace_context
from pullstream.queues.message import Message, PayloadCodec, codec_for
from pullstream.store.client import StreamStore
from pullstream.store.errors import StoreError
from pullstream.store.types import AUTO_ID

logger = logging.getLogger(__name__)


class Producer:
    """
    Publishes messages onto topic streams.

    Usage:
        producer = Producer(store)
        await producer.send("orders", {"order_id": "o-1", "amount": "3"})
        await producer.send_payload("orders", OrderCreated(order_id="o-1", amount=3))
    """

    def __init__(self, store: StreamStore, max_stream_length: int | None = None):
        """
        Initialize the producer.

        Args:
            store: Stream store client
            max_stream_length: Trim threshold (uses settings if None)
        """
        self._store = store
        self._max_stream_length = max_stream_length or get_settings().producer_max_stream_length

    async def send(
        self,
        topic: str,
        fields: dict[str, str],
        message_id: str = AUTO_ID,
    ) -> str | None:
        """
        Append fields to a topic's stream.

        The active trace context, if any, is added as a traceparent field.

        Args:
            topic: Stream key
            fields: Entry fields
            message_id: Explicit id or "*" for server-assigned

        Returns:
            The entry id, or None if the append failed

        Raises:
            ValueError: If topic is empty
        """
        if not topic:
            raise ValueError("Message topic is required")

        entry = {**fields, **inject_trace_context()}
        try:
            new_id = await self._store.append(
                topic,
                entry,
                message_id=message_id,
                maxlen=self._max_stream_length,
                approximate=True,
            )
        except StoreError as e:
            get_metrics().record_store_error("append", type(e).__name__)
            logger.error(f"Failed to append message to stream {topic}: {e}")
            return None

        logger.debug(f"Appended message {new_id} to stream {topic}")
        return new_id

    async def send_message(self, message: Message) -> str | None:
        """Send a Message, keeping its id unless it is empty."""
        return await self.send(message.topic, message.properties, message.id or AUTO_ID)

    async def send_payload(
        self,
        topic: str,
        payload: Any,
        codec: PayloadCodec | None = None,
        message_id: str = AUTO_ID,
    ) -> str | None:
        """
        Encode a payload and send it.

        Args:
            topic: Stream key
            payload: pydantic model instance or dict
            codec: Explicit codec (inferred from the payload type if None)
            message_id: Explicit id or "*" for server-assigned
        """
        codec = codec or codec_for(type(payload))
        return await self.send(topic, codec.encode(payload), message_id)
