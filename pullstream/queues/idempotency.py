"""
Idempotent single-delivery gate.

Transport is at-least-once: the same entry can reach several consumers of a
group (health pull, pending audit, claim). The gate makes application
effectively-once with two keys per (group, topic, id):

- a short-lived lock, so only one delivery at a time can look at the entry
- a consumed marker with a TTL, written once the entry has been applied

Protocol for one delivery:
1. try the lock with a bounded wait; give up (entry stays pending) on timeout
2. marker present -> ack and stop (duplicate suppressed)
3. decode the fields; on failure ack and drop
4. apply: notify listeners, write marker, ack (or ack, marker, notify when
   ack_mode="before_listeners")
5. renew the lease while listeners run; release the lock on every path.
   Lease expiry is the crash backstop
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from enum import Enum

import structlog

from pullstream.observability.metrics import get_metrics
from pullstream.observability.tracing import extract_trace_context, get_tracer, traced
from pullstream.queues.config import ConsumerConfig
from pullstream.queues.subscription import Subscription
from pullstream.store.client import StreamStore
from pullstream.store.errors import StoreError

logger = structlog.get_logger(__name__)

MARKER_VALUE = "consumed"


class ConsumeOutcome(str, Enum):
    """Result of one pass through the gate."""

    CONSUMED = "consumed"  # listeners invoked, marker written, acked
    DUPLICATE = "duplicate"  # marker already present, acked only
    LOCKED = "locked"  # lock not acquired in time, nothing changed
    MALFORMED = "malformed"  # fields could not be decoded, acked and dropped


class IdempotencyGate:
    """
    Lock + marker protocol guarding listener invocation.

    Store errors (lock, marker read/write, ack) propagate to the caller; the
    lock is still released on the way out.
    """

    def __init__(self, store: StreamStore, group: str, config: ConsumerConfig):
        self._store = store
        self._group = group
        self._config = config
        self._tracer = get_tracer(__name__)

    def lock_key(self, topic: str, message_id: str) -> str:
        return f"{self._config.key_prefix}lock:{self._group}:{topic}:{message_id}"

    def marker_key(self, topic: str, message_id: str) -> str:
        return f"{self._config.key_prefix}marker:{self._group}:{topic}:{message_id}"

    async def consume(
        self,
        subscription: Subscription,
        message_id: str,
        fields: dict[str, str],
    ) -> ConsumeOutcome:
        """
        Run one delivery of an entry through the gate.

        Args:
            subscription: Subscription the entry was read for
            message_id: Stream entry id
            fields: Raw entry fields

        Returns:
            What happened to the entry
        """
        topic = subscription.topic
        started = time.monotonic()

        lock = await self._store.try_lock(
            self.lock_key(topic, message_id),
            wait_seconds=self._config.lock_wait_seconds,
            lease_seconds=self._config.lock_lease_seconds,
        )
        if lock is None:
            logger.info("Lock busy, leaving entry pending", topic=topic, message_id=message_id)
            get_metrics().record_outcome(topic, ConsumeOutcome.LOCKED.value)
            return ConsumeOutcome.LOCKED

        try:
            async with self._lease_renewal(lock, topic, message_id):
                outcome = await self._consume_locked(subscription, message_id, fields)
        finally:
            try:
                await self._store.unlock(lock)
            except StoreError as e:
                # The lease expires on its own
                logger.warning("Lock release failed", topic=topic, message_id=message_id, error=str(e))

        get_metrics().record_outcome(topic, outcome.value, time.monotonic() - started)
        return outcome

    @asynccontextmanager
    async def _lease_renewal(self, lock, topic: str, message_id: str) -> AsyncIterator[None]:
        """Keep the lock's lease alive for as long as the body runs."""
        task = asyncio.create_task(self._renew(lock, topic, message_id))
        try:
            yield
        finally:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _renew(self, lock, topic: str, message_id: str) -> None:
        lease = self._config.lock_lease_seconds
        while True:
            await asyncio.sleep(lease / 2)
            try:
                extended = await self._store.extend_lock(lock, lease)
            except StoreError as e:
                logger.warning("Lock renewal failed", topic=topic, message_id=message_id, error=str(e))
                return
            if not extended:
                logger.warning("Lock lost during delivery", topic=topic, message_id=message_id)
                return

    async def _consume_locked(
        self,
        subscription: Subscription,
        message_id: str,
        fields: dict[str, str],
    ) -> ConsumeOutcome:
        topic = subscription.topic
        marker_key = self.marker_key(topic, message_id)

        if await self._store.get(marker_key):
            await self._store.ack(topic, self._group, message_id)
            logger.debug("Duplicate delivery suppressed", topic=topic, message_id=message_id)
            return ConsumeOutcome.DUPLICATE

        try:
            payload = subscription.codec.decode(fields)
        except Exception as e:
            logger.error(
                "Failed to decode entry, dropping it",
                topic=topic,
                message_id=message_id,
                error=str(e),
            )
            await self._store.ack(topic, self._group, message_id)
            return ConsumeOutcome.MALFORMED

        if self._config.ack_mode == "before_listeners":
            await self._store.ack(topic, self._group, message_id)
            await self._mark(marker_key)
            await self._notify(subscription, message_id, fields, payload)
        else:
            await self._notify(subscription, message_id, fields, payload)
            await self._mark(marker_key)
            await self._store.ack(topic, self._group, message_id)

        logger.debug("Entry consumed", topic=topic, message_id=message_id)
        return ConsumeOutcome.CONSUMED

    async def _mark(self, marker_key: str) -> None:
        await self._store.set(marker_key, MARKER_VALUE, ttl_seconds=self._config.marker_ttl_seconds)

    async def _notify(self, subscription: Subscription, message_id: str, fields: dict[str, str], payload) -> None:
        with traced(
            self._tracer,
            "pullstream.notify",
            {"topic": subscription.topic, "message_id": message_id},
            parent_context=extract_trace_context(fields),
        ):
            await subscription.notify(payload)
