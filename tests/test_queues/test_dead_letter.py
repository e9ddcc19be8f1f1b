"""
Tests for dead-letter routing.

Entries whose delivery count reaches the threshold are copied unchanged to
the shared dead-letter stream, then removed and acknowledged at the origin.
"""

import pytest

from pullstream.queues.message import Message
from pullstream.store.errors import TransientStoreError

GROUP = "billing"


async def _stuck_entry(store, fields: dict[str, str], delivery_count: int) -> str:
    """Append an entry, deliver it to c1 and age it past the idle threshold."""
    message_id = await store.append("orders", fields)
    await store.group_read("orders", GROUP, "c1", count=1)
    store.set_delivery_count("orders", GROUP, message_id, delivery_count)
    store.advance(61_000)
    return message_id


class TestDeadLetterRouting:
    """Tests for the audit's dead-letter step."""

    @pytest.mark.asyncio
    async def test_fields_are_copied_unchanged(self, store, consumer, received):
        consumer.subscribe("orders").register_listener(received.append)
        await consumer.start()
        message_id = await _stuck_entry(store, {"a": "1", "b": "2"}, 17)

        reports = await consumer.check_pending_list()

        dead = await store.range_read("DeadStream")
        assert list(dead.values()) == [{"a": "1", "b": "2"}]
        assert reports[0].dead_lettered == 1
        assert received == []
        assert message_id not in store.streams["orders"]
        assert store.pending_ids("orders", GROUP) == []

    @pytest.mark.asyncio
    async def test_below_threshold_is_redelivered_instead(self, store, consumer, received):
        consumer.subscribe("orders").register_listener(received.append)
        await consumer.start()
        await _stuck_entry(store, {"a": "1"}, 16)

        reports = await consumer.check_pending_list()

        assert await store.range_read("DeadStream") == {}
        assert reports[0].dead_lettered == 0
        assert reports[0].redelivered == 1
        assert received == [{"a": "1"}]

    @pytest.mark.asyncio
    async def test_custom_threshold_and_stream(self, store, consumer_config, received):
        from pullstream.queues.consumer import PullConsumer

        config = consumer_config.model_copy(update={"dead_letter_threshold": 3, "dead_letter_stream": "orders:dead"})
        consumer = PullConsumer(store, GROUP, config=config)
        consumer.subscribe("orders").register_listener(received.append)
        await consumer.start()
        await _stuck_entry(store, {"a": "1"}, 3)

        await consumer.check_pending_list()

        assert len(await store.range_read("orders:dead")) == 1
        assert "DeadStream" not in store.streams

    @pytest.mark.asyncio
    async def test_shared_stream_across_topics(self, store, consumer):
        consumer.subscribe("orders")
        consumer.subscribe("refunds")
        await consumer.start()
        await _stuck_entry(store, {"kind": "order"}, 20)
        refund_id = await store.append("refunds", {"kind": "refund"})
        await store.group_read("refunds", GROUP, "c1", count=1)
        store.set_delivery_count("refunds", GROUP, refund_id, 20)
        store.advance(61_000)

        await consumer.check_pending_list()

        kinds = sorted(f["kind"] for f in (await store.range_read("DeadStream")).values())
        assert kinds == ["order", "refund"]


class TestDeadLetterOperation:
    """Tests for PullConsumer.dead_letter()."""

    @pytest.mark.asyncio
    async def test_missing_origin_entry_is_skipped(self, store, consumer):
        consumer.subscribe("orders")
        await consumer.start()

        assert await consumer.dead_letter("orders", "99-0") is None
        assert "DeadStream" not in store.streams

    @pytest.mark.asyncio
    async def test_append_failure_leaves_origin_untouched(self, store, consumer):
        consumer.subscribe("orders")
        await consumer.start()
        message_id = await _stuck_entry(store, {"a": "1"}, 17)
        store.fail("append", TransientStoreError("append", "timeout"))

        reports = await consumer.check_pending_list()

        assert reports[0].errors == 1
        assert message_id in store.streams["orders"]
        assert store.pending_ids("orders", GROUP) == [message_id]

    @pytest.mark.asyncio
    async def test_hooks_receive_message_and_dead_id(self, store, consumer):
        seen: list[tuple[Message, str]] = []

        async def async_hook(message, dead_id):
            seen.append((message, dead_id))

        def broken_hook(message, dead_id):
            raise RuntimeError("alerting down")

        consumer.on_dead_letter(broken_hook)
        consumer.on_dead_letter(async_hook)
        consumer.subscribe("orders")
        await consumer.start()
        message_id = await _stuck_entry(store, {"a": "1"}, 17)

        dead_id = await consumer.dead_letter("orders", message_id)

        assert seen == [(Message(id=message_id, topic="orders", properties={"a": "1"}), dead_id)]
