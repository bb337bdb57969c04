from parking_scheduler.models.parking_lot import ParkingLot
from parking_scheduler.models.reservation import PaymentStatus, Reservation, ReservationStatus
from parking_scheduler.models.waitlist import WaitlistEntry, WaitlistStatus
from parking_scheduler.models.recurrence import RecurrencePattern, RecurrenceRule, RecurrenceStatus
from parking_scheduler.models.notification import (
    NotificationChannelKind,
    NotificationJob,
    NotificationStatus,
)

__all__ = [
    "ParkingLot",
    "Reservation", "ReservationStatus", "PaymentStatus",
    "WaitlistEntry", "WaitlistStatus",
    "RecurrenceRule", "RecurrencePattern", "RecurrenceStatus",
    "NotificationJob", "NotificationStatus", "NotificationChannelKind",
]
