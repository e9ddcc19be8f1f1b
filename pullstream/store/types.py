"""Value types exchanged with the stream store."""

from dataclasses import dataclass
from enum import Enum
from typing import Any

# Special ids understood by XREADGROUP
NEVER_DELIVERED = ">"
OWN_HISTORY = "0"

MIN_ID = "-"
MAX_ID = "+"
AUTO_ID = "*"


class StartPosition(str, Enum):
    """Where a newly created consumer group starts reading."""

    HEAD = "0"  # full history
    NEWEST = "$"  # only entries appended after creation


@dataclass(frozen=True)
class PendingEntry:
    """
    A delivered but unacknowledged entry as reported by XPENDING.

    Attributes:
        message_id: Stream entry id
        consumer: Consumer identity the entry is assigned to
        delivery_count: Times the entry was delivered or claimed
        idle_ms: Milliseconds since the last delivery
    """

    message_id: str
    consumer: str
    delivery_count: int
    idle_ms: int

    @classmethod
    def from_redis(cls, raw: dict[str, Any]) -> "PendingEntry":
        """Build from one item of redis-py's xpending_range() reply."""
        return cls(
            message_id=str(raw["message_id"]),
            consumer=str(raw["consumer"]),
            delivery_count=int(raw["times_delivered"]),
            idle_ms=int(raw["time_since_delivered"]),
        )
