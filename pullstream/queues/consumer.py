"""
Pull consumer engine.

A PullConsumer owns one consumer identity inside one consumer group and
drives every subscription through two recurring procedures:

- consume_health_messages(): read never-delivered entries (XREADGROUP ">")
  and pass each through the idempotency gate
- check_pending_list(): the pending audit. Lists this consumer's entries that
  have been idle too long, redelivers the ones still under the retry budget,
  moves the ones over it to the dead-letter stream, then hands entries that
  keep failing here to another member of the group (XCLAIM)

Scheduling is external: a caller or ConsumerService invokes the procedures
periodically. Subscriptions are processed concurrently and isolated from each
other; store failures are logged and counted, never raised to the caller.
"""

import asyncio
import inspect
import socket
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

import structlog

from pullstream.config.settings import Settings, get_settings
from pullstream.observability.metrics import get_metrics
from pullstream.queues.claim import RandomTargetPolicy, TargetPolicy
from pullstream.queues.config import ConsumerConfig
from pullstream.queues.idempotency import ConsumeOutcome, IdempotencyGate
from pullstream.queues.message import Message, codec_for
from pullstream.queues.subscription import Subscription, TopicStream
from pullstream.store.client import StreamStore
from pullstream.store.errors import GroupExistsError, StoreError
from pullstream.store.types import NEVER_DELIVERED, OWN_HISTORY, PendingEntry

logger = structlog.get_logger(__name__)

DeadLetterHook = Callable[[Message, str], Any] | Callable[[Message, str], Awaitable[Any]]


def default_consumer_name() -> str:
    """Host-address based identity, e.g. "worker-3/10.0.4.17"."""
    hostname = socket.gethostname()
    try:
        address = socket.gethostbyname(hostname)
    except OSError:
        address = "127.0.0.1"
    return f"{hostname}/{address}"


def classify_pending(
    entries: Iterable[PendingEntry],
    dead_letter_threshold: int,
) -> tuple[list[str], list[str]]:
    """
    Split pending entries into (dead, idle) id lists.

    An entry is dead once its delivery count reaches the threshold; anything
    below it is idle and gets redelivered.
    """
    dead: list[str] = []
    idle: list[str] = []
    for entry in entries:
        if entry.delivery_count >= dead_letter_threshold:
            dead.append(entry.message_id)
        else:
            idle.append(entry.message_id)
    return dead, idle


@dataclass
class CycleReport:
    """What one procedure run did for one subscription."""

    topic: str
    consumed: int = 0
    duplicates: int = 0
    locked: int = 0
    malformed: int = 0
    redelivered: int = 0
    dead_lettered: int = 0
    claimed: int = 0
    errors: int = 0

    def record(self, outcome: ConsumeOutcome) -> None:
        if outcome is ConsumeOutcome.CONSUMED:
            self.consumed += 1
        elif outcome is ConsumeOutcome.DUPLICATE:
            self.duplicates += 1
        elif outcome is ConsumeOutcome.LOCKED:
            self.locked += 1
        elif outcome is ConsumeOutcome.MALFORMED:
            self.malformed += 1


class PullConsumer:
    """
    Consumer-side delivery and recovery engine.

    Usage:
        store = StreamStore("redis://localhost:6379/0")
        await store.connect()

        consumer = PullConsumer(store, group="billing")
        consumer.subscribe("orders", OrderCreated).register_listener(handle_order)
        consumer.on_dead_letter(alert_admin)
        await consumer.start()

        await consumer.consume_health_messages()  # periodically
        await consumer.check_pending_list()  # periodically, less often
    """

    def __init__(
        self,
        store: StreamStore,
        group: str,
        config: ConsumerConfig | None = None,
        target_policy: TargetPolicy | None = None,
    ):
        """
        Initialize the consumer. Groups are created by start().

        Args:
            store: Stream store client (connected by the caller)
            group: Consumer group name
            config: Tunables (defaults from environment)
            target_policy: Claim target selection (random by default)
        """
        self._store = store
        self._group = group
        self._config = config or ConsumerConfig()
        self._consumer_name = self._config.consumer_name or default_consumer_name()
        self._target_policy = target_policy or RandomTargetPolicy()
        self._gate = IdempotencyGate(store, group, self._config)

        self._subscriptions: list[Subscription] = []
        self._streams: dict[str, TopicStream] = {}
        self._subscription_requests: asyncio.Queue[Subscription] = asyncio.Queue()
        self._dead_letter_hooks: list[DeadLetterHook] = []
        self._started = False

        self._metrics = get_metrics()
        self._log = logger.bind(group=group, consumer=self._consumer_name)

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        config: ConsumerConfig | None = None,
        store: StreamStore | None = None,
    ) -> "PullConsumer":
        """Build a consumer and its store from application settings."""
        settings = settings or get_settings()
        store = store or StreamStore(str(settings.redis_url))
        return cls(store, settings.consumer_group, config=config)

    @property
    def store(self) -> StreamStore:
        return self._store

    @property
    def group(self) -> str:
        return self._group

    @property
    def consumer_name(self) -> str:
        return self._consumer_name

    @property
    def config(self) -> ConsumerConfig:
        return self._config

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return tuple(self._subscriptions)

    @property
    def started(self) -> bool:
        return self._started

    # -- registry -------------------------------------------------------

    def subscribe(self, topic: str, payload_type: Any = dict) -> Subscription:
        """
        Watch a topic, decoding entries with the given payload type.

        Subscribing to the same topic twice is not guarded: it yields two
        subscriptions sharing one stream handle and one group cursor, and each
        entry goes to whichever of them reads it first.

        Args:
            topic: Stream key
            payload_type: pydantic model class, dict, or a PayloadCodec

        Raises:
            RuntimeError: after start(); use request_subscription() instead
        """
        if self._started:
            raise RuntimeError("Consumer already started; use request_subscription()")
        subscription = Subscription(self._stream_for(topic), codec_for(payload_type))
        self._streams.setdefault(topic, subscription.stream)
        self._subscriptions.append(subscription)
        return subscription

    def request_subscription(self, topic: str, payload_type: Any = dict) -> Subscription:
        """
        Queue a subscription on a running consumer.

        The engine picks it up (creating the group) at the start of its next
        procedure run.
        """
        subscription = Subscription(self._stream_for(topic), codec_for(payload_type))
        self._subscription_requests.put_nowait(subscription)
        return subscription

    def on_dead_letter(self, hook: DeadLetterHook) -> None:
        """Register a callback(message, dead_letter_id) run after each dead-letter move."""
        self._dead_letter_hooks.append(hook)

    def _stream_for(self, topic: str) -> TopicStream:
        return self._streams.get(topic) or TopicStream(topic=topic, store=self._store)

    async def _apply_subscription_requests(self) -> None:
        while not self._subscription_requests.empty():
            subscription = self._subscription_requests.get_nowait()
            self._streams.setdefault(subscription.topic, subscription.stream)
            await self._create_group(subscription.topic)
            self._subscriptions.append(subscription)
            self._log.info("Subscription added", topic=subscription.topic)

    # -- bootstrap ------------------------------------------------------

    async def start(self) -> None:
        """Create the consumer group on every subscribed topic."""
        for topic in dict.fromkeys(s.topic for s in self._subscriptions):
            await self._create_group(topic)
        self._started = True
        self._log.info(
            "Pull consumer started",
            topics=[s.topic for s in self._subscriptions],
            start=self._config.start_position.value,
        )

    async def _create_group(self, topic: str) -> None:
        try:
            await self._store.create_group(topic, self._group, self._config.start_position)
        except GroupExistsError:
            self._log.debug("Consumer group already exists", topic=topic)
        except StoreError as e:
            self._metrics.record_store_error("create_group", type(e).__name__)
            self._log.error("Failed to create consumer group", topic=topic, error=str(e))

    # -- procedures -----------------------------------------------------

    async def consume_health_messages(self) -> list[CycleReport]:
        """Pull up to fetch_message_size fresh entries per subscription and consume them."""
        await self._apply_subscription_requests()
        return await self._for_each_subscription(self._pull_fresh)

    async def check_pending_list(self) -> list[CycleReport]:
        """Run the pending audit (redeliver, dead-letter, claim) on every subscription."""
        await self._apply_subscription_requests()
        return await self._for_each_subscription(self._audit)

    async def _for_each_subscription(
        self,
        procedure: Callable[[Subscription], Awaitable[CycleReport]],
    ) -> list[CycleReport]:
        subscriptions = list(self._subscriptions)
        results = await asyncio.gather(
            *(procedure(s) for s in subscriptions),
            return_exceptions=True,
        )

        reports: list[CycleReport] = []
        for subscription, result in zip(subscriptions, results):
            if isinstance(result, CycleReport):
                reports.append(result)
                continue
            if not isinstance(result, Exception):
                raise result
            self._log.error(
                "Subscription procedure failed",
                topic=subscription.topic,
                error=str(result),
                exc_info=result,
            )
            reports.append(CycleReport(topic=subscription.topic, errors=1))
        return reports

    async def _pull_fresh(self, subscription: Subscription) -> CycleReport:
        report = CycleReport(topic=subscription.topic)
        try:
            entries = await self._store.group_read(
                subscription.topic,
                self._group,
                self._consumer_name,
                count=self._config.fetch_message_size,
                from_id=NEVER_DELIVERED,
            )
        except StoreError as e:
            self._store_failed("group_read", subscription.topic, e, report)
            return report

        await self._consume_entries(subscription, entries, report)
        return report

    async def _audit(self, subscription: Subscription) -> CycleReport:
        topic = subscription.topic
        report = CycleReport(topic=topic)
        try:
            pending = await self._store.list_pending(
                topic,
                self._group,
                self._consumer_name,
                min_idle_ms=self._config.pending_idle_ms,
                count=self._config.check_pending_list_size,
            )
        except StoreError as e:
            self._store_failed("list_pending", topic, e, report)
            return report

        self._metrics.set_pending_entries(topic, len(pending))
        dead_ids, idle_ids = classify_pending(pending, self._config.dead_letter_threshold)
        if dead_ids or idle_ids:
            self._log.info(
                "Pending audit",
                topic=topic,
                idle=len(idle_ids),
                dead=len(dead_ids),
            )

        await self._redeliver(subscription, idle_ids, report)
        await self._dead_letter(topic, dead_ids, report)

        try:
            report.claimed += await self.claim_idle_consumer(topic)
        except StoreError as e:
            self._store_failed("claim", topic, e, report)

        return report

    async def _consume_entries(
        self,
        subscription: Subscription,
        entries: dict[str, dict[str, str]],
        report: CycleReport,
    ) -> None:
        for message_id, fields in entries.items():
            try:
                outcome = await self._gate.consume(subscription, message_id, fields)
            except StoreError as e:
                self._store_failed(e.operation, subscription.topic, e, report)
                continue
            report.record(outcome)

    async def _redeliver(
        self,
        subscription: Subscription,
        idle_ids: list[str],
        report: CycleReport,
    ) -> None:
        if not idle_ids:
            return

        try:
            history = await self._store.group_read(
                subscription.topic,
                self._group,
                self._consumer_name,
                from_id=OWN_HISTORY,
            )
        except StoreError as e:
            self._store_failed("group_read", subscription.topic, e, report)
            return

        wanted = set(idle_ids)
        entries = {mid: fields for mid, fields in history.items() if mid in wanted}
        if entries:
            report.redelivered += len(entries)
            self._metrics.record_redelivered(subscription.topic, len(entries))
        await self._consume_entries(subscription, entries, report)

    # -- dead letters ---------------------------------------------------

    async def _dead_letter(self, topic: str, dead_ids: list[str], report: CycleReport) -> None:
        for message_id in dead_ids:
            try:
                dead_id = await self.dead_letter(topic, message_id)
            except StoreError as e:
                self._store_failed(e.operation, topic, e, report)
                continue
            if dead_id is not None:
                report.dead_lettered += 1

    async def dead_letter(self, topic: str, message_id: str) -> str | None:
        """
        Move one entry to the dead-letter stream.

        Copies the entry's fields unchanged, then removes and acknowledges it
        at the origin. An entry already gone from the origin (a peer moved it
        first) is skipped.

        Returns:
            The dead-letter entry id, or None if the origin entry was missing

        Raises:
            StoreError: any store call failed; the origin is left untouched
                unless the append already succeeded
        """
        entries = await self._store.range_read(topic, message_id, message_id)
        fields = entries.get(message_id)
        if not fields:
            self._log.debug("Dead-letter candidate already removed", topic=topic, message_id=message_id)
            return None

        dead_id = await self._store.append(self._config.dead_letter_stream, dict(fields))
        await self._store.remove(topic, message_id)
        await self._store.ack(topic, self._group, message_id)

        self._metrics.record_dead_lettered(topic)
        self._log.warning(
            "Moved entry to dead-letter stream",
            topic=topic,
            message_id=message_id,
            dead_letter_stream=self._config.dead_letter_stream,
            dead_letter_id=dead_id,
        )
        await self._run_dead_letter_hooks(Message(id=message_id, topic=topic, properties=dict(fields)), dead_id)
        return dead_id

    async def _run_dead_letter_hooks(self, message: Message, dead_id: str) -> None:
        for hook in self._dead_letter_hooks:
            try:
                result = hook(message, dead_id)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._log.exception(
                    "Dead-letter hook failed",
                    topic=message.topic,
                    message_id=message.id,
                    error=str(e),
                )

    # -- rebalancing ----------------------------------------------------

    async def claim_idle_consumer(self, topic: str) -> int:
        """
        Hand entries that keep failing here to another group member.

        Does nothing while this consumer is the only member. Otherwise every
        own pending entry at or over the dead-letter threshold is claimed,
        one XCLAIM per id, for a single target picked by the target policy.

        Returns:
            Number of entries claimed by the target

        Raises:
            StoreError: membership or pending listing failed
        """
        membership = await self._store.pending_info(topic, self._group)
        if len(membership) <= 1:
            return 0

        pending = await self._store.list_pending(
            topic,
            self._group,
            self._consumer_name,
            min_idle_ms=self._config.claim_idle_threshold_ms,
            count=self._config.check_pending_list_size,
        )
        stuck = [e for e in pending if e.delivery_count >= self._config.dead_letter_threshold]
        if not stuck:
            return 0

        target = self._target_policy(membership.keys(), self._consumer_name)
        if target is None:
            return 0

        claimed = 0
        for entry in stuck:
            try:
                claimed += len(
                    await self._store.claim(
                        topic,
                        self._group,
                        target,
                        self._config.claim_idle_threshold_ms,
                        entry.message_id,
                    )
                )
            except StoreError as e:
                self._metrics.record_store_error("claim", type(e).__name__)
                self._log.error("Claim failed", topic=topic, message_id=entry.message_id, error=str(e))

        if claimed:
            self._metrics.record_claimed(topic, claimed)
            self._log.info("Claimed stuck entries for peer", topic=topic, target=target, count=claimed)
        return claimed

    def _store_failed(self, operation: str, topic: str, error: StoreError, report: CycleReport) -> None:
        report.errors += 1
        self._metrics.record_store_error(operation, type(error).__name__)
        self._log.error("Store call failed", operation=operation, topic=topic, error=str(error))
