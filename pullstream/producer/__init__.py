"""Producer side: append messages to topic streams."""

from pullstream.producer.producer import Producer

__all__ = ["Producer"]
