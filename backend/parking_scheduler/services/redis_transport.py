"""
Redis-backed notification channel and event publisher.

Inbox:  LPUSH notifications:user:{user_id} <json>
Events: PUBLISH events:user:{user_id} <json>

Failure handling differs per side:
  - The channel raises ExternalChannelError so the delivery engine can
    schedule a retry with backoff.
  - The publisher "fails open": a lost real-time event is logged and
    dropped, the persisted state and notification remain authoritative.
"""

import json
from typing import Any

from parking_scheduler.core.errors import ExternalChannelError
from parking_scheduler.core.logging import get_logger
from parking_scheduler.infrastructure.redis_client import get_redis
from parking_scheduler.services.interfaces.channel import NotificationChannel
from parking_scheduler.services.interfaces.publisher import EventPublisher

logger = get_logger(__name__)


def inbox_key(user_id: int) -> str:
    return f"notifications:user:{user_id}"


def event_channel(user_id: int) -> str:
    return f"events:user:{user_id}"


class RedisChannel(NotificationChannel):
    """
    Delivers notifications into a per-user Redis list.

    Use when:
    - A push/email gateway worker drains the inbox lists
    - Clients poll their inbox directly
    """

    async def send(self, message: dict[str, Any]) -> bool:
        client = await get_redis()
        if not client:
            raise ExternalChannelError("Redis is unavailable")

        try:
            await client.lpush(inbox_key(message["user_id"]), json.dumps(message, default=str))
        except Exception as e:
            raise ExternalChannelError(f"Redis push failed: {e}") from e
        return True


class RedisEventPublisher(EventPublisher):
    """Publishes real-time events on a per-user pub/sub channel."""

    async def publish(self, topic: str, user_id: int, data: dict[str, Any]) -> None:
        client = await get_redis()
        if not client:
            return

        try:
            await client.publish(
                event_channel(user_id),
                json.dumps({"topic": topic, "data": data}, default=str),
            )
        except Exception as e:
            logger.warning("event_publish_failed", topic=topic, user_id=user_id, error=str(e))
