"""
Pull consumer configuration.

Tunables for fresh-message pulls, the pending audit, dead-lettering, claim
rebalancing and the lock + marker idempotency gate.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pullstream.store.types import StartPosition


class ConsumerConfig(BaseSettings):
    """
    Configuration for a PullConsumer.

    Settings can be overridden via environment variables prefixed with
    PULLSTREAM_CONSUMER_.
    """

    model_config = SettingsConfigDict(
        env_prefix="PULLSTREAM_CONSUMER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    consumer_name: str | None = Field(
        default=None,
        description="Consumer identity inside the group (default: hostname/ip)",
    )

    # Fresh message pulls
    fetch_message_size: int = Field(
        default=5,
        ge=1,
        description="Entries requested per subscription on each health pull",
    )
    replay_from_beginning: bool = Field(
        default=True,
        description="Create groups at the start of the stream instead of at its end",
    )

    # Pending audit
    pending_list_idle_threshold: int = Field(
        default=60,
        ge=0,
        description="Seconds an entry must be idle before the audit redelivers it",
    )
    check_pending_list_size: int = Field(
        default=1000,
        ge=1,
        description="Pending entries inspected per subscription per audit",
    )
    dead_letter_threshold: int = Field(
        default=17,
        ge=1,
        description="Delivery count at which an entry is dead-lettered",
    )
    dead_letter_stream: str = Field(
        default="DeadStream",
        description="Stream shared by all topics for dead-lettered entries",
    )

    # Claim rebalancing
    claim_idle_threshold_ms: int = Field(
        default=10,
        ge=0,
        description="Minimum idle time (ms) for listing and claiming entries",
    )

    # Idempotency gate
    lock_wait_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Max time to wait for the per-message lock",
    )
    lock_lease_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Lock auto-expiry so a crashed holder cannot block the key",
    )
    marker_ttl_seconds: int = Field(
        default=1800,
        ge=1,
        description="How long a consumed marker suppresses duplicates",
    )
    key_prefix: str = Field(
        default="pullstream:",
        description="Prefix for lock and marker keys",
    )
    ack_mode: Literal["after_listeners", "before_listeners"] = Field(
        default="after_listeners",
        description=(
            "after_listeners: notify, write marker, then ack. "
            "before_listeners: ack and write marker before notifying"
        ),
    )

    @property
    def start_position(self) -> StartPosition:
        """Group creation offset derived from replay_from_beginning."""
        return StartPosition.HEAD if self.replay_from_beginning else StartPosition.NEWEST

    @property
    def pending_idle_ms(self) -> int:
        return self.pending_list_idle_threshold * 1000
