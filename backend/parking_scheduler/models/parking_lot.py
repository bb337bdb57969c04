"""
Parking lot model: the bookable resource.

Key design decisions:
- `capacity` is the number of physical units (spaces), numbered 1..capacity
- `version` column enables optimistic locking for concurrent allocation;
  every capacity-affecting write and every waitlist renumbering bumps it
- Pricing lives on the lot so quotes need no extra lookup
"""

from sqlalchemy import Boolean, CheckConstraint, Column, Integer, Numeric, String
from sqlalchemy.orm import relationship

from parking_scheduler.db.base import Base, TimestampMixin


class ParkingLot(Base, TimestampMixin):
    __tablename__ = "parking_lots"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    address = Column(String(500), nullable=True)
    capacity = Column(Integer, nullable=False)
    hourly_rate = Column(Numeric(10, 2), nullable=False)
    daily_rate = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="ZMW")
    is_active = Column(Boolean, nullable=False, default=True)

    # Optimistic locking version counter
    version = Column(Integer, nullable=False, default=1)

    reservations = relationship("Reservation", back_populates="parking_lot", lazy="noload")

    __table_args__ = (
        CheckConstraint("capacity > 0", name="check_lot_capacity_positive"),
        CheckConstraint("hourly_rate >= 0", name="check_lot_hourly_rate_non_negative"),
        CheckConstraint("daily_rate >= 0", name="check_lot_daily_rate_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<ParkingLot(id={self.id}, name={self.name}, capacity={self.capacity})>"
