"""
Redis Streams store client.

Thin async wrapper over redis-py exposing exactly the stream, consumer-group,
lock and key/value operations the pull consumer needs:

- append / range_read / remove on a topic's stream
- create_group / group_read / ack on a consumer group
- list_pending / pending_info / claim for recovery and rebalancing
- try_lock / extend_lock / unlock / get / set for the idempotency gate

Every redis-py failure is translated into a typed StoreError so callers never
see raw client exceptions.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from types import TracebackType

import redis.asyncio as redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

from pullstream.store.errors import (
    GroupExistsError,
    StoreCommandError,
    StoreError,
    TransientStoreError,
)
from pullstream.store.types import (
    AUTO_ID,
    MAX_ID,
    MIN_ID,
    NEVER_DELIVERED,
    PendingEntry,
    StartPosition,
)

logger = logging.getLogger(__name__)

Fields = dict[str, str]


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Map redis-py exceptions onto the StoreError hierarchy."""
    try:
        yield
    except StoreError:
        raise
    except redis.ResponseError as e:
        if "BUSYGROUP" in str(e):
            raise GroupExistsError(operation, str(e)) from e
        raise StoreCommandError(operation, str(e)) from e
    except redis.RedisError as e:
        # ConnectionError, TimeoutError, BusyLoadingError and friends
        raise TransientStoreError(operation, str(e) or type(e).__name__) from e


class StreamStore:
    """
    Async Redis Streams client used by producers and consumers.

    Usage:
        async with StreamStore("redis://localhost:6379/0") as store:
            msg_id = await store.append("orders", {"sku": "A1"})
            entries = await store.group_read("orders", "billing", "host/10.0.0.1", count=5)
    """

    def __init__(self, redis_url: str, client: redis.Redis | None = None):
        """
        Initialize the store.

        Args:
            redis_url: Redis connection URL
            client: Pre-built client (skips from_url on connect)
        """
        self._redis_url = redis_url
        self._redis: redis.Redis | None = client

    async def connect(self) -> None:
        """Open the Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        logger.info(f"Stream store connected to {self._redis_url}")

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None
            logger.info("Stream store connection closed")

    async def __aenter__(self) -> "StreamStore":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def redis(self) -> redis.Redis:
        """Get Redis client, raising if not connected."""
        if self._redis is None:
            raise RuntimeError("Not connected to Redis. Call connect() first.")
        return self._redis

    async def ping(self) -> bool:
        """Check if Redis connection is healthy."""
        try:
            return bool(await self.redis.ping())
        except redis.RedisError:
            return False

    # -- streams --------------------------------------------------------

    async def append(
        self,
        topic: str,
        fields: Fields,
        message_id: str = AUTO_ID,
        maxlen: int | None = None,
        approximate: bool = True,
    ) -> str:
        """
        Append an entry to a topic's stream (XADD).

        Args:
            topic: Stream key
            fields: Field mapping to store
            message_id: Explicit id or "*" for server-assigned
            maxlen: Trim threshold (MAXLEN), None to skip trimming
            approximate: Use "~" trimming

        Returns:
            The id of the appended entry
        """
        with _translate_errors("append"):
            new_id = await self.redis.xadd(
                name=topic,
                fields=fields,
                id=message_id,
                maxlen=maxlen,
                approximate=approximate,
            )
        return str(new_id)

    async def range_read(
        self,
        topic: str,
        from_id: str = MIN_ID,
        to_id: str = MAX_ID,
        count: int | None = None,
    ) -> dict[str, Fields]:
        """Read entries between two ids inclusive (XRANGE)."""
        with _translate_errors("range_read"):
            entries = await self.redis.xrange(topic, min=from_id, max=to_id, count=count)
        return {str(entry_id): fields for entry_id, fields in entries}

    async def remove(self, topic: str, *message_ids: str) -> int:
        """Delete entries from a stream (XDEL)."""
        with _translate_errors("remove"):
            return await self.redis.xdel(topic, *message_ids)

    async def stream_length(self, topic: str) -> int:
        with _translate_errors("stream_length"):
            return await self.redis.xlen(topic)

    # -- consumer groups ------------------------------------------------

    async def create_group(
        self,
        topic: str,
        group: str,
        start: StartPosition = StartPosition.HEAD,
    ) -> None:
        """
        Create a consumer group, creating the stream if needed (XGROUP CREATE MKSTREAM).

        Raises:
            GroupExistsError: the group already exists
        """
        with _translate_errors("create_group"):
            await self.redis.xgroup_create(
                name=topic,
                groupname=group,
                id=start.value,
                mkstream=True,
            )
        logger.info(f"Created consumer group '{group}' for stream '{topic}'")

    async def group_read(
        self,
        topic: str,
        group: str,
        consumer: str,
        count: int | None = None,
        from_id: str = NEVER_DELIVERED,
    ) -> dict[str, Fields]:
        """
        Read entries for a consumer of a group (XREADGROUP).

        With from_id=">" only never-delivered entries are returned. With
        from_id="0" the consumer's own pending history is returned; entries
        that were deleted from the stream come back without fields and are
        skipped.

        Returns:
            Ordered mapping of entry id to fields
        """
        with _translate_errors("group_read"):
            reply = await self.redis.xreadgroup(
                groupname=group,
                consumername=consumer,
                streams={topic: from_id},
                count=count,
            )

        entries: dict[str, Fields] = {}
        # reply is a list of [stream_name, [(id, fields), ...]]
        for _stream_name, msg_list in reply or []:
            for msg_id, fields in msg_list:
                if fields:
                    entries[str(msg_id)] = fields
        return entries

    async def ack(self, topic: str, group: str, *message_ids: str) -> int:
        """Acknowledge entries for a group (XACK)."""
        with _translate_errors("ack"):
            return await self.redis.xack(topic, group, *message_ids)

    async def list_pending(
        self,
        topic: str,
        group: str,
        consumer: str | None = None,
        min_id: str = MIN_ID,
        max_id: str = MAX_ID,
        min_idle_ms: int | None = None,
        count: int = 1000,
    ) -> list[PendingEntry]:
        """List pending entries with delivery counts (XPENDING extended form)."""
        with _translate_errors("list_pending"):
            raw = await self.redis.xpending_range(
                name=topic,
                groupname=group,
                min=min_id,
                max=max_id,
                count=count,
                consumername=consumer,
                idle=min_idle_ms,
            )
        return [PendingEntry.from_redis(item) for item in raw]

    async def pending_info(self, topic: str, group: str) -> dict[str, int]:
        """
        Group membership with per-consumer pending counts (XINFO CONSUMERS).

        Consumers with nothing pending are still members and are included.
        """
        with _translate_errors("pending_info"):
            consumers = await self.redis.xinfo_consumers(topic, group)
        return {str(c["name"]): int(c.get("pending", 0)) for c in consumers}

    async def pending_summary(self, topic: str, group: str) -> int:
        """Total number of pending entries in a group (XPENDING summary)."""
        with _translate_errors("pending_summary"):
            info = await self.redis.xpending(topic, group)
        return int(info["pending"]) if info else 0

    async def claim(
        self,
        topic: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        message_id: str,
    ) -> list[str]:
        """
        Reassign a pending entry to another consumer (XCLAIM).

        The entry is only moved if it has been idle at least min_idle_ms,
        so a concurrent claim by a peer makes this a no-op.

        Returns:
            Ids actually claimed (empty when the guard rejected the claim)
        """
        with _translate_errors("claim"):
            claimed = await self.redis.xclaim(
                topic,
                group,
                consumer,
                min_idle_ms,
                [message_id],
            )
        ids = []
        for entry in claimed:
            entry_id = entry[0] if isinstance(entry, (list, tuple)) else entry
            # Entries deleted from the stream come back as (None, None)
            if entry_id is not None:
                ids.append(str(entry_id))
        return ids

    # -- locks and markers ----------------------------------------------

    async def try_lock(
        self,
        key: str,
        wait_seconds: float,
        lease_seconds: float,
    ) -> Lock | None:
        """
        Acquire a distributed lock, waiting at most wait_seconds.

        The lock auto-expires after lease_seconds so a crashed holder cannot
        block the key forever.

        Returns:
            The held lock, or None if it could not be acquired in time
        """
        lock = self.redis.lock(key, timeout=lease_seconds, blocking_timeout=wait_seconds)
        with _translate_errors("try_lock"):
            acquired = await lock.acquire()
        return lock if acquired else None

    async def unlock(self, lock: Lock) -> bool:
        """
        Release a lock obtained from try_lock().

        Returns:
            False if the lease had already expired (another holder may own it)
        """
        with _translate_errors("unlock"):
            try:
                await lock.release()
            except LockError as e:
                # LockError subclasses RedisError, so handle it before translation
                logger.warning(f"Lock {lock.name} expired before release: {e}")
                return False
        return True

    async def extend_lock(self, lock: Lock, lease_seconds: float) -> bool:
        """
        Reset a held lock's lease to lease_seconds from now.

        Returns:
            False if the lock is no longer owned by this holder
        """
        with _translate_errors("extend_lock"):
            try:
                await lock.extend(lease_seconds, replace_ttl=True)
            except LockError as e:
                logger.warning(f"Lock {lock.name} lost before extend: {e}")
                return False
        return True

    async def get(self, key: str) -> str | None:
        with _translate_errors("get"):
            return await self.redis.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Set a key, optionally expiring after ttl_seconds."""
        with _translate_errors("set"):
            await self.redis.set(key, value, ex=ttl_seconds)
