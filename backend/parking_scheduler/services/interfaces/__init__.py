"""
Service interfaces for dependency inversion.
Allows swapping implementations without changing business logic.
"""

from .channel import NotificationChannel
from .log_channel import LogChannel
from .publisher import EventPublisher, NullPublisher

__all__ = ['NotificationChannel', 'LogChannel', 'EventPublisher', 'NullPublisher']
