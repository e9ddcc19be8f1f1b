"""
Claim target selection.

When entries keep failing under one consumer, the pending audit hands them to
another member of the group. Which member is a policy: random by default so
reassigned work does not herd onto one peer, deterministic in tests.
"""

import random
from collections.abc import Iterable
from typing import Protocol


class TargetPolicy(Protocol):
    """Pick the consumer that receives reassigned entries."""

    def __call__(self, membership: Iterable[str], exclude: str) -> str | None: ...


def choose_target(
    membership: Iterable[str],
    exclude: str,
    rng: random.Random | None = None,
) -> str | None:
    """
    Pick a random group member other than ``exclude``.

    Args:
        membership: Consumer identities registered in the group
        exclude: The caller's own identity
        rng: Random source (module-level random when None)

    Returns:
        A consumer identity, or None if no other member exists
    """
    candidates = sorted(name for name in set(membership) if name != exclude)
    if not candidates:
        return None
    return (rng or random).choice(candidates)


class RandomTargetPolicy:
    """choose_target() bound to its own random source."""

    def __init__(self, seed: int | None = None):
        self._rng = random.Random(seed)

    def __call__(self, membership: Iterable[str], exclude: str) -> str | None:
        return choose_target(membership, exclude, self._rng)
