"""
Recurrence rule model: a reservation repeated on a calendar pattern.

Key design decisions:
- The time-of-day window is `start_time` + `duration_minutes`, interpreted in
  the configured scheduling timezone, so a window may cross midnight
- `next_occurrence` is a date; the rule is due once today reaches it
- Occurrence and failure histories are append-only JSON lists
- `days_of_week` uses Python weekday numbering (Monday=0 .. Sunday=6)
"""

import enum

from sqlalchemy import CheckConstraint, Column, Date, ForeignKey, Index, Integer, JSON, String, Text, Time

from parking_scheduler.db.base import Base, TimestampMixin, UTCDateTime


class RecurrencePattern(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    WEEKDAYS = "weekdays"
    WEEKENDS = "weekends"
    CUSTOM = "custom"


class RecurrenceStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class RecurrenceRule(Base, TimestampMixin):
    __tablename__ = "recurrence_rules"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    resource_id = Column(Integer, ForeignKey("parking_lots.id"), nullable=False)
    pattern = Column(String(20), nullable=False, default=RecurrencePattern.WEEKLY.value)
    status = Column(String(20), nullable=False, default=RecurrenceStatus.ACTIVE.value)
    repeat_interval = Column(Integer, nullable=False, default=1)
    days_of_week = Column(JSON, nullable=True)

    start_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    max_occurrences = Column(Integer, nullable=True)
    occurrence_count = Column(Integer, nullable=False, default=0)
    next_occurrence = Column(Date, nullable=False)

    vehicle_info = Column(JSON, nullable=True)
    special_requests = Column(Text, nullable=True)

    occurrence_history = Column(JSON, nullable=False, default=list)
    failure_history = Column(JSON, nullable=False, default=list)
    last_occurrence_at = Column(UTCDateTime(), nullable=True)
    paused_at = Column(UTCDateTime(), nullable=True)
    pause_reason = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("repeat_interval > 0", name="check_recurrence_interval_positive"),
        CheckConstraint("duration_minutes > 0", name="check_recurrence_duration_positive"),
        CheckConstraint(
            "max_occurrences IS NULL OR occurrence_count <= max_occurrences",
            name="check_recurrence_occurrences_within_max",
        ),
        # The recurrence tick scans active rules by due date
        Index("ix_recurrence_status_next", "status", "next_occurrence"),
    )

    def __repr__(self) -> str:
        return (
            f"<RecurrenceRule(id={self.id}, lot={self.resource_id}, pattern={self.pattern}, "
            f"next={self.next_occurrence}, status={self.status})>"
        )
