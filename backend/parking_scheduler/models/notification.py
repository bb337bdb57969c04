"""
Notification job model: one outbound message and its delivery state.

Key design decisions:
- `payload` holds one variant of the closed NotificationPayload union,
  discriminated by `kind`; `title`/`message` are rendered at enqueue time
- The job id is the consumer-side dedupe key (delivery is at-least-once)
- Composite index on (status, scheduled_for) serves the dispatch scan
"""

import enum

from sqlalchemy import CheckConstraint, Column, Index, Integer, JSON, String, Text

from parking_scheduler.db.base import Base, TimestampMixin, UTCDateTime


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class NotificationChannelKind(str, enum.Enum):
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"


class NotificationJob(Base, TimestampMixin):
    __tablename__ = "notification_jobs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    kind = Column(String(40), nullable=False)
    channel = Column(String(20), nullable=False, default=NotificationChannelKind.PUSH.value)
    status = Column(String(20), nullable=False, default=NotificationStatus.PENDING.value)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False)

    scheduled_for = Column(UTCDateTime(), nullable=True)
    sent_at = Column(UTCDateTime(), nullable=True)
    delivered_at = Column(UTCDateTime(), nullable=True)
    read_at = Column(UTCDateTime(), nullable=True)
    expires_at = Column(UTCDateTime(), nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(UTCDateTime(), nullable=True)
    failure_reason = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("retry_count <= max_retries", name="check_notification_retries_within_max"),
        CheckConstraint(
            "status IN ('pending', 'sent', 'delivered', 'read', 'failed')",
            name="check_notification_status",
        ),
        Index("ix_notification_status_scheduled", "status", "scheduled_for"),
        Index("ix_notification_status_retry", "status", "next_retry_at"),
    )

    def __repr__(self) -> str:
        return f"<NotificationJob(id={self.id}, user={self.user_id}, kind={self.kind}, status={self.status})>"
