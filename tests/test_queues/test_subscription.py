"""Tests for Subscription listener registry and notification."""

import pytest

from pullstream.queues.message import RawCodec
from pullstream.queues.subscription import Subscription, TopicStream


@pytest.fixture
def subscription(store) -> Subscription:
    return Subscription(TopicStream("orders", store), RawCodec())


class TestRegistry:
    def test_register_is_chainable_and_ordered(self, subscription):
        first, second = (lambda p: None), (lambda p: None)
        assert subscription.register_listener(first).register_listener(second) is subscription
        assert subscription.listeners == (first, second)
        assert subscription.topic == "orders"

    def test_same_listener_may_register_twice(self, subscription):
        calls = []
        subscription.register_listener(calls.append).register_listener(calls.append)
        assert len(subscription.listeners) == 2


class TestNotify:
    @pytest.mark.asyncio
    async def test_invokes_in_registration_order(self, subscription):
        order = []

        async def second(payload):
            order.append("second")

        subscription.register_listener(lambda p: order.append("first"))
        subscription.register_listener(second)

        assert await subscription.notify({"n": "1"}) == 0
        assert order == ["first", "second"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_siblings(self, subscription):
        seen = []

        def broken(payload):
            raise ValueError("bad payload")

        async def broken_async(payload):
            raise RuntimeError("downstream unavailable")

        subscription.register_listener(broken)
        subscription.register_listener(broken_async)
        subscription.register_listener(seen.append)

        failures = await subscription.notify({"n": "1"})

        assert failures == 2
        assert seen == [{"n": "1"}]

    @pytest.mark.asyncio
    async def test_no_listeners(self, subscription):
        assert await subscription.notify({}) == 0
