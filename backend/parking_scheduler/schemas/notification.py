"""
Notification payload variants and response schemas.

The payload is a closed tagged union discriminated by `kind`. Adding a new
notification type means adding a variant here and a renderer in
notification_service; nothing accepts free-form payloads.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter


class BookingConfirmation(BaseModel):
    kind: Literal["booking_confirmation"] = "booking_confirmation"
    reservation_id: int
    reference: str
    lot_name: str
    unit_number: int
    start_time: datetime


class BookingReminder(BaseModel):
    kind: Literal["booking_reminder"] = "booking_reminder"
    reservation_id: int
    reference: str
    lot_name: str
    start_time: datetime


class BookingCancellation(BaseModel):
    kind: Literal["booking_cancellation"] = "booking_cancellation"
    reservation_id: int
    reference: str
    refund_amount: Decimal
    currency: str


class WaitlistJoined(BaseModel):
    kind: Literal["waitlist_joined"] = "waitlist_joined"
    waitlist_entry_id: int
    lot_name: str
    position: int


class WaitlistAvailable(BaseModel):
    kind: Literal["waitlist_available"] = "waitlist_available"
    waitlist_entry_id: int
    lot_name: str
    available_until: datetime


class WaitlistPositionUpdate(BaseModel):
    kind: Literal["waitlist_position_update"] = "waitlist_position_update"
    waitlist_entry_id: int
    lot_name: str
    position: int


class RecurrenceCreated(BaseModel):
    kind: Literal["recurrence_created"] = "recurrence_created"
    recurrence_rule_id: int
    reservation_id: int
    lot_name: str
    occurrence_date: date


class RecurrenceFailed(BaseModel):
    kind: Literal["recurrence_failed"] = "recurrence_failed"
    recurrence_rule_id: int
    lot_name: str
    occurrence_date: date
    reason: str


NotificationPayload = Annotated[
    Union[
        BookingConfirmation,
        BookingReminder,
        BookingCancellation,
        WaitlistJoined,
        WaitlistAvailable,
        WaitlistPositionUpdate,
        RecurrenceCreated,
        RecurrenceFailed,
    ],
    Field(discriminator="kind"),
]

payload_adapter: TypeAdapter[NotificationPayload] = TypeAdapter(NotificationPayload)


class NotificationResponse(BaseModel):
    id: int
    user_id: int
    kind: str
    channel: str
    status: str
    title: str
    message: str
    payload: dict[str, Any]
    scheduled_for: Optional[datetime]
    sent_at: Optional[datetime]
    read_at: Optional[datetime]
    retry_count: int
    created_at: datetime

    model_config = {"from_attributes": True}
