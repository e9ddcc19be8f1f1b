"""Redis Streams store client and its value and error types."""

from pullstream.store.client import StreamStore
from pullstream.store.errors import (
    GroupExistsError,
    StoreCommandError,
    StoreError,
    TransientStoreError,
)
from pullstream.store.types import PendingEntry, StartPosition

__all__ = [
    "GroupExistsError",
    "PendingEntry",
    "StartPosition",
    "StoreCommandError",
    "StoreError",
    "StreamStore",
    "TransientStoreError",
]
