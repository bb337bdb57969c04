"""
Log channel - delivery by structured log line.
"""

from typing import Any

from parking_scheduler.core.logging import get_logger
from parking_scheduler.services.interfaces.channel import NotificationChannel

logger = get_logger(__name__)


class LogChannel(NotificationChannel):
    """
    Writes every notification to the log and reports success.

    Use when:
    - Local development without Redis
    - No downstream consumer reads the inbox yet
    """

    async def send(self, message: dict[str, Any]) -> bool:
        logger.info(
            "notification_delivered",
            notification_id=message["id"],
            user_id=message["user_id"],
            kind=message["kind"],
            title=message["title"],
        )
        return True
