"""
Waitlist entry model: a user queued for a lot and interval with no free unit.

Key design decisions:
- `position` is only meaningful while ACTIVE and is renumbered 1..N on every
  membership change, ordered by (joined_at, id)
- `joined_at` comes from the service clock, not the row timestamp, so join
  order is reproducible under a frozen clock
"""

import enum

from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Integer, JSON, String, Text

from parking_scheduler.db.base import Base, TimestampMixin, UTCDateTime


class WaitlistStatus(str, enum.Enum):
    ACTIVE = "active"
    NOTIFIED = "notified"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    CONVERTED = "converted"


class WaitlistEntry(Base, TimestampMixin):
    __tablename__ = "waitlist_entries"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    resource_id = Column(Integer, ForeignKey("parking_lots.id"), nullable=False)
    status = Column(String(20), nullable=False, default=WaitlistStatus.ACTIVE.value)
    position = Column(Integer, nullable=False)
    desired_start = Column(UTCDateTime(), nullable=False)
    desired_end = Column(UTCDateTime(), nullable=False)
    required_units = Column(Integer, nullable=False, default=1)
    vehicle_info = Column(JSON, nullable=True)
    special_requests = Column(Text, nullable=True)

    joined_at = Column(UTCDateTime(), nullable=False)
    notified_at = Column(UTCDateTime(), nullable=True)
    expires_at = Column(UTCDateTime(), nullable=True)
    converted_at = Column(UTCDateTime(), nullable=True)
    converted_reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=True)

    __table_args__ = (
        CheckConstraint("desired_start < desired_end", name="check_waitlist_interval"),
        CheckConstraint("required_units > 0", name="check_waitlist_units_positive"),
        # Queue scans walk a lot's entries by status in position order
        Index("ix_waitlist_resource_status_position", "resource_id", "status", "position"),
        Index("ix_waitlist_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WaitlistEntry(id={self.id}, lot={self.resource_id}, position={self.position}, "
            f"status={self.status})>"
        )
