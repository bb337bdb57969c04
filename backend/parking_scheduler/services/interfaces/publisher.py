"""
Real-time event publisher interface.

Status changes (reservation confirmed, waitlist offer, queue position)
are pushed to connected clients through a publisher. Publishing is
fire-and-forget: implementations never raise into the caller.
"""

from abc import ABC, abstractmethod
from typing import Any


class EventPublisher(ABC):

    @abstractmethod
    async def publish(self, topic: str, user_id: int, data: dict[str, Any]) -> None:
        """Publish `data` on `topic` for `user_id`. Must not raise."""
        pass


class NullPublisher(EventPublisher):
    """Drops every event. Default when no real-time transport is configured."""

    async def publish(self, topic: str, user_id: int, data: dict[str, Any]) -> None:
        pass
