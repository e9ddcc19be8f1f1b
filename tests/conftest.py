"""Pytest fixtures for pullstream tests."""

import asyncio
from dataclasses import dataclass, field

import pytest

from pullstream.config.settings import Settings
from pullstream.queues.config import ConsumerConfig
from pullstream.store.errors import GroupExistsError, StoreCommandError, StoreError
from pullstream.store.types import (
    AUTO_ID,
    MAX_ID,
    MIN_ID,
    NEVER_DELIVERED,
    PendingEntry,
    StartPosition,
)


def _id_key(message_id: str) -> tuple[int, int]:
    ms, _, seq = message_id.partition("-")
    return int(ms), int(seq or 0)


@dataclass
class _Pending:
    consumer: str
    delivery_count: int
    delivered_at_ms: int


@dataclass
class _Group:
    last_delivered: str
    consumers: set[str] = field(default_factory=set)
    pending: dict[str, _Pending] = field(default_factory=dict)


class InMemoryStreamStore:
    """
    StreamStore double backed by dicts.

    Follows Redis Streams semantics closely enough for engine tests:
    consumer-group cursors, per-consumer pending lists with delivery counts,
    XINFO-style membership, idle-guarded claims, leased locks and TTL'd keys.
    Stream time is a manual clock advanced with advance(); lock leases follow
    the event loop clock. Any method can be made to fail with
    fail(operation, error).
    """

    def __init__(self):
        self.streams: dict[str, dict[str, dict[str, str]]] = {}
        self.groups: dict[tuple[str, str], _Group] = {}
        self.keys: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.locks: dict[str, tuple[object, float]] = {}
        self.extensions: list[str] = []
        self.now_ms = 1_000_000
        self.available = True
        self.connected = False
        self.calls: list[str] = []
        self._seq = 0
        self._failures: dict[str, StoreError] = {}

    # -- test controls --------------------------------------------------

    def advance(self, ms: int) -> None:
        self.now_ms += ms

    def fail(self, operation: str, error: StoreError | None = None) -> None:
        self._failures[operation] = error or StoreError(operation, "injected failure")

    def recover(self, operation: str) -> None:
        self._failures.pop(operation, None)

    def set_delivery_count(self, topic: str, group: str, message_id: str, count: int) -> None:
        self.groups[(topic, group)].pending[message_id].delivery_count = count

    def pending_ids(self, topic: str, group: str, consumer: str | None = None) -> list[str]:
        pending = self.groups[(topic, group)].pending
        return [mid for mid, p in pending.items() if consumer is None or p.consumer == consumer]

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        error = self._failures.get(operation)
        if error is not None:
            raise error

    def _group(self, operation: str, topic: str, group: str) -> _Group:
        state = self.groups.get((topic, group))
        if state is None:
            raise StoreCommandError(operation, f"NOGROUP No such key '{topic}' or consumer group '{group}'")
        return state

    # -- lifecycle ------------------------------------------------------

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def __aenter__(self) -> "InMemoryStreamStore":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def ping(self) -> bool:
        return self.available

    # -- streams --------------------------------------------------------

    async def append(self, topic, fields, message_id=AUTO_ID, maxlen=None, approximate=True) -> str:
        self._check("append")
        stream = self.streams.setdefault(topic, {})
        if message_id == AUTO_ID:
            self._seq += 1
            message_id = f"{self._seq}-0"
        stream[message_id] = dict(fields)
        if maxlen is not None:
            while len(stream) > maxlen:
                stream.pop(next(iter(stream)))
        return message_id

    async def range_read(self, topic, from_id=MIN_ID, to_id=MAX_ID, count=None) -> dict[str, dict[str, str]]:
        self._check("range_read")
        low = (0, 0) if from_id == MIN_ID else _id_key(from_id)
        high = None if to_id == MAX_ID else _id_key(to_id)
        entries = {}
        for mid in sorted(self.streams.get(topic, {}), key=_id_key):
            if _id_key(mid) < low or (high is not None and _id_key(mid) > high):
                continue
            entries[mid] = dict(self.streams[topic][mid])
            if count is not None and len(entries) >= count:
                break
        return entries

    async def remove(self, topic, *message_ids) -> int:
        self._check("remove")
        stream = self.streams.get(topic, {})
        return sum(1 for mid in message_ids if stream.pop(mid, None) is not None)

    async def stream_length(self, topic) -> int:
        self._check("stream_length")
        return len(self.streams.get(topic, {}))

    # -- consumer groups ------------------------------------------------

    async def create_group(self, topic, group, start=StartPosition.HEAD) -> None:
        self._check("create_group")
        if (topic, group) in self.groups:
            raise GroupExistsError("create_group", "BUSYGROUP Consumer Group name already exists")
        stream = self.streams.setdefault(topic, {})
        if start is StartPosition.NEWEST and stream:
            last = max(stream, key=_id_key)
        else:
            last = "0-0"
        self.groups[(topic, group)] = _Group(last_delivered=last)

    async def group_read(self, topic, group, consumer, count=None, from_id=NEVER_DELIVERED) -> dict[str, dict[str, str]]:
        self._check("group_read")
        state = self._group("group_read", topic, group)
        state.consumers.add(consumer)
        stream = self.streams.get(topic, {})
        entries: dict[str, dict[str, str]] = {}

        if from_id == NEVER_DELIVERED:
            for mid in sorted(stream, key=_id_key):
                if _id_key(mid) <= _id_key(state.last_delivered):
                    continue
                entries[mid] = dict(stream[mid])
                state.last_delivered = mid
                state.pending[mid] = _Pending(consumer, 1, self.now_ms)
                if count is not None and len(entries) >= count:
                    break
            return entries

        own = sorted(
            (mid for mid, p in state.pending.items() if p.consumer == consumer and _id_key(mid) > _id_key(from_id)),
            key=_id_key,
        )
        for mid in own:
            record = state.pending[mid]
            record.delivery_count += 1
            record.delivered_at_ms = self.now_ms
            if mid in stream:
                entries[mid] = dict(stream[mid])
            if count is not None and len(entries) >= count:
                break
        return entries

    async def ack(self, topic, group, *message_ids) -> int:
        self._check("ack")
        state = self._group("ack", topic, group)
        return sum(1 for mid in message_ids if state.pending.pop(mid, None) is not None)

    async def list_pending(
        self, topic, group, consumer=None, min_id=MIN_ID, max_id=MAX_ID, min_idle_ms=None, count=1000
    ) -> list[PendingEntry]:
        self._check("list_pending")
        state = self._group("list_pending", topic, group)
        result = []
        for mid in sorted(state.pending, key=_id_key):
            record = state.pending[mid]
            idle = self.now_ms - record.delivered_at_ms
            if consumer is not None and record.consumer != consumer:
                continue
            if min_idle_ms is not None and idle < min_idle_ms:
                continue
            result.append(PendingEntry(mid, record.consumer, record.delivery_count, idle))
            if len(result) >= count:
                break
        return result

    async def pending_info(self, topic, group) -> dict[str, int]:
        self._check("pending_info")
        state = self._group("pending_info", topic, group)
        return {
            name: sum(1 for p in state.pending.values() if p.consumer == name)
            for name in state.consumers
        }

    async def pending_summary(self, topic, group) -> int:
        self._check("pending_summary")
        return len(self._group("pending_summary", topic, group).pending)

    async def claim(self, topic, group, consumer, min_idle_ms, message_id) -> list[str]:
        self._check("claim")
        state = self._group("claim", topic, group)
        record = state.pending.get(message_id)
        if record is None or self.now_ms - record.delivered_at_ms < min_idle_ms:
            return []
        if message_id not in self.streams.get(topic, {}):
            del state.pending[message_id]
            return []
        state.consumers.add(consumer)
        record.consumer = consumer
        record.delivery_count += 1
        record.delivered_at_ms = self.now_ms
        return [message_id]

    # -- locks and markers ----------------------------------------------

    async def try_lock(self, key, wait_seconds, lease_seconds):
        self._check("try_lock")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds
        while self._lock_held(key):
            if loop.time() >= deadline:
                return None
            await asyncio.sleep(0.005)
        token = object()
        self.locks[key] = (token, loop.time() + lease_seconds)
        return (key, token)

    async def extend_lock(self, lock, lease_seconds) -> bool:
        self._check("extend_lock")
        key, token = lock
        if not self._owns(key, token):
            return False
        self.locks[key] = (token, asyncio.get_running_loop().time() + lease_seconds)
        self.extensions.append(key)
        return True

    async def unlock(self, lock) -> bool:
        self._check("unlock")
        key, token = lock
        owned = self._owns(key, token)
        if owned or not self._lock_held(key):
            self.locks.pop(key, None)
        return owned

    def _lock_held(self, key) -> bool:
        held = self.locks.get(key)
        return held is not None and asyncio.get_running_loop().time() < held[1]

    def _owns(self, key, token) -> bool:
        return self._lock_held(key) and self.locks[key][0] is token

    async def get(self, key) -> str | None:
        self._check("get")
        return self.keys.get(key)

    async def set(self, key, value, ttl_seconds=None) -> None:
        self._check("set")
        self.keys[key] = value
        self.ttls[key] = ttl_seconds


@pytest.fixture
def test_settings() -> Settings:
    """Settings configured for testing."""
    return Settings(
        environment="development",
        log_level="DEBUG",
        redis_url="redis://localhost:6379/1",  # Use DB 1 for tests
        consumer_group="test_workers",
        topics=["orders"],
        pull_interval_seconds=0.01,
        audit_interval_seconds=0.01,
        backoff_base_delay=0.01,
        backoff_max_delay=1.0,
    )


@pytest.fixture
def store() -> InMemoryStreamStore:
    """Empty in-memory stream store."""
    return InMemoryStreamStore()


@pytest.fixture
def consumer_config() -> ConsumerConfig:
    """Consumer tunables with short lock waits for fast tests."""
    return ConsumerConfig(
        consumer_name="c1",
        fetch_message_size=5,
        pending_list_idle_threshold=60,
        dead_letter_threshold=17,
        lock_wait_seconds=0.05,
        lock_lease_seconds=5.0,
    )
