"""
Reservation model: one unit of a parking lot held for a half-open interval.

Key design decisions:
- Composite index on (resource_id, start_time) serves the overlap range query
- Status field keeps cancelled/completed rows for history instead of deleting
- `unit_number` is the assigned space, chosen lowest-free-first
- Cancellation and extension records are JSON so a row carries its own audit trail
- `reminder_sent_at` makes the reminder tick idempotent
"""

import enum

from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import relationship

from parking_scheduler.db.base import Base, TimestampMixin, UTCDateTime


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIAL_REFUND = "partial_refund"


# Statuses that hold a unit
HOLDING_STATUSES = (ReservationStatus.CONFIRMED.value, ReservationStatus.ACTIVE.value)


class Reservation(Base, TimestampMixin):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(20), nullable=False, unique=True)
    user_id = Column(Integer, nullable=False, index=True)
    resource_id = Column(Integer, ForeignKey("parking_lots.id"), nullable=False)
    unit_number = Column(Integer, nullable=False)
    start_time = Column(UTCDateTime(), nullable=False)
    end_time = Column(UTCDateTime(), nullable=False)
    status = Column(String(20), nullable=False, default=ReservationStatus.PENDING.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="ZMW")
    vehicle_info = Column(JSON, nullable=True)
    special_requests = Column(Text, nullable=True)
    recurrence_rule_id = Column(Integer, ForeignKey("recurrence_rules.id"), nullable=True)

    check_in_time = Column(UTCDateTime(), nullable=True)
    check_out_time = Column(UTCDateTime(), nullable=True)
    reminder_sent_at = Column(UTCDateTime(), nullable=True)
    cancellation = Column(JSON, nullable=True)
    extension_history = Column(JSON, nullable=False, default=list)

    parking_lot = relationship("ParkingLot", back_populates="reservations", lazy="noload")

    __table_args__ = (
        CheckConstraint("start_time < end_time", name="check_reservation_interval"),
        CheckConstraint("unit_number > 0", name="check_reservation_unit_positive"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'active', 'completed', 'cancelled', 'no_show')",
            name="check_reservation_status",
        ),
        # Overlap queries filter by lot and sweep by start time
        Index("ix_reservations_resource_start", "resource_id", "start_time"),
        Index("ix_reservations_status_start", "status", "start_time"),
    )

    def __repr__(self) -> str:
        return (
            f"<Reservation(id={self.id}, lot={self.resource_id}, unit={self.unit_number}, "
            f"status={self.status})>"
        )
