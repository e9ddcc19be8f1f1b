"""
Pull consumer: subscriptions, the idempotency gate and the recovery engine.

Classes:
    PullConsumer: Consumer-group engine with health pull and pending audit
    Subscription: One topic, its payload codec and its listeners
    IdempotencyGate: Lock + marker protocol guarding listener invocation
    ConsumerConfig: Tunables for pulls, audits, dead-lettering and claims

Example:
    from pullstream.queues import PullConsumer
    from pullstream.store import StreamStore

    store = StreamStore("redis://localhost:6379/0")
    await store.connect()

    consumer = PullConsumer(store, group="billing")
    consumer.subscribe("orders", OrderCreated).register_listener(handle_order)
    await consumer.start()
    await consumer.consume_health_messages()
"""

from pullstream.queues.claim import RandomTargetPolicy, choose_target
from pullstream.queues.config import ConsumerConfig
from pullstream.queues.consumer import CycleReport, PullConsumer, classify_pending
from pullstream.queues.idempotency import ConsumeOutcome, IdempotencyGate
from pullstream.queues.message import Message, ModelCodec, PayloadCodec, RawCodec
from pullstream.queues.subscription import Subscription

__all__ = [
    "ConsumeOutcome",
    "ConsumerConfig",
    "CycleReport",
    "IdempotencyGate",
    "Message",
    "ModelCodec",
    "PayloadCodec",
    "PullConsumer",
    "RandomTargetPolicy",
    "RawCodec",
    "Subscription",
    "choose_target",
    "classify_pending",
]
