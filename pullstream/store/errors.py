"""
Typed errors raised by the stream store client.

Every redis-py failure is translated into one of these so callers can tell a
retryable condition (connection lost, timeout) from a command the server
rejected (unknown group, wrong type) without parsing error strings.
"""


class StoreError(Exception):
    """Base class for stream store failures."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation}: {message}")


class TransientStoreError(StoreError):
    """Connection or timeout failure; the call may succeed on the next pass."""


class StoreCommandError(StoreError):
    """The server rejected the command (e.g. NOGROUP, WRONGTYPE)."""


class GroupExistsError(StoreCommandError):
    """Consumer group creation hit BUSYGROUP. Callers treat this as success."""
