"""
pullstream - pull-based message queue client over Redis Streams.

At-least-once delivery with idempotent consumption, redelivery of stalled
entries, dead-lettering of poison entries and claim-based rebalancing among
competing consumers of one group.
"""

__version__ = "0.1.0"
