"""
Notification channel interface.
Allows swapping delivery transports without changing the delivery engine.
"""

from abc import ABC, abstractmethod
from typing import Any


class NotificationChannel(ABC):
    """
    Interface for outbound notification transports.

    Implementations:
    - LogChannel: Writes the message to the structured log (development, tests)
    - RedisChannel: Pushes the message onto a per-user Redis inbox list
    """

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> bool:
        """
        Deliver one rendered notification.

        Args:
            message: id, user_id, channel, kind, title, message and payload.
                `id` is stable across retries and lets receivers deduplicate.

        Returns:
            True if the transport accepted the message, False if it refused it.

        Raises:
            ExternalChannelError: the transport is unreachable
        """
        pass
