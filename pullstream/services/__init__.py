"""Long-running services built on the pull consumer."""

from pullstream.services.consumer_service import ConsumerService

__all__ = ["ConsumerService"]
