from parking_scheduler.schemas.parking_lot import (
    ParkingLotCreate, ParkingLotResponse, AvailabilityResponse, PriceQuoteResponse,
)
from parking_scheduler.schemas.reservation import (
    VehicleInfo, ReservationCreate, ReservationCancel, ReservationExtend, ReservationResponse,
    ConflictResponse,
)
from parking_scheduler.schemas.waitlist import WaitlistJoin, WaitlistEntryResponse
from parking_scheduler.schemas.recurrence import (
    RecurrenceRuleCreate, RecurrenceRuleUpdate, RecurrenceRulePause, RecurrenceRuleResponse,
)
from parking_scheduler.schemas.notification import NotificationPayload, NotificationResponse

__all__ = [
    "ParkingLotCreate", "ParkingLotResponse", "AvailabilityResponse", "PriceQuoteResponse",
    "VehicleInfo", "ReservationCreate", "ReservationCancel", "ReservationExtend",
    "ReservationResponse", "ConflictResponse",
    "WaitlistJoin", "WaitlistEntryResponse",
    "RecurrenceRuleCreate", "RecurrenceRuleUpdate", "RecurrenceRulePause", "RecurrenceRuleResponse",
    "NotificationPayload", "NotificationResponse",
]
