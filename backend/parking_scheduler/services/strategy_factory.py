"""
Delivery strategy factory.
Configures which notification channel and event publisher to use.
"""

from typing import Any, Optional

from parking_scheduler.core.config import get_settings
from parking_scheduler.services.interfaces.channel import NotificationChannel
from parking_scheduler.services.interfaces.log_channel import LogChannel
from parking_scheduler.services.interfaces.publisher import EventPublisher, NullPublisher
from parking_scheduler.services.redis_transport import RedisChannel, RedisEventPublisher

settings = get_settings()


def get_channel_strategy() -> NotificationChannel:
    """
    Select the notification channel from NOTIFICATION_CHANNEL.

    - log: LogChannel (development)
    - redis: RedisChannel (production)
    """
    if settings.NOTIFICATION_CHANNEL == "redis":
        return RedisChannel()
    return LogChannel()


def get_publisher_strategy() -> EventPublisher:
    """Select the real-time publisher from EVENT_PUBLISHER (none | redis)."""
    if settings.EVENT_PUBLISHER == "redis":
        return RedisEventPublisher()
    return NullPublisher()


# Singleton instances
_channel: Optional[NotificationChannel] = None
_publisher: Optional[EventPublisher] = None


def get_channel() -> NotificationChannel:
    """Get notification channel singleton."""
    global _channel
    if _channel is None:
        _channel = get_channel_strategy()
    return _channel


def get_publisher() -> EventPublisher:
    """Get event publisher singleton."""
    global _publisher
    if _publisher is None:
        _publisher = get_publisher_strategy()
    return _publisher


def set_publisher(publisher: Optional[EventPublisher]) -> None:
    """Replace the publisher singleton. None restores configuration-based selection."""
    global _publisher
    _publisher = publisher


async def publish_event(topic: str, user_id: int, data: dict[str, Any]) -> None:
    await get_publisher().publish(topic, user_id, data)
