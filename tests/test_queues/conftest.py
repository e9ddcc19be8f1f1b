"""Fixtures for pull consumer tests."""

import pytest

from pullstream.queues.claim import RandomTargetPolicy
from pullstream.queues.consumer import PullConsumer


@pytest.fixture
def consumer(store, consumer_config) -> PullConsumer:
    """Consumer "c1" in group "billing" over the in-memory store."""
    return PullConsumer(store, "billing", config=consumer_config, target_policy=RandomTargetPolicy(seed=7))


@pytest.fixture
def received() -> list:
    """Collects payloads seen by a recording listener."""
    return []
