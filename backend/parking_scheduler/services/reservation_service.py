"""
Reservation lifecycle.

  PENDING ----+
              +--> CONFIRMED --check_in--> ACTIVE --check_out--> COMPLETED
              |        |
              +--------+--cancel--> CANCELLED
                       +--end passed, no check-in--> NO_SHOW

Creation allocates a unit through availability_service.allocate(), so two
requests for the last unit of a lot serialize on the lot's version and the
loser gets a Conflict instead of an overbooked space.

Every guard runs before any field is written; an illegal move raises
InvalidStateTransition and leaves the reservation untouched.

Refund policy on cancellation (hours before start):
  >= 24h  full refund
  2h-24h  PARTIAL_REFUND_RATIO of the amount
  <  2h   cancellation is refused altogether
"""

import secrets
import string
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from parking_scheduler.core.clock import Clock, system_clock
from parking_scheduler.core.config import get_settings
from parking_scheduler.core.errors import InvalidStateTransition, NotFoundError, ValidationError
from parking_scheduler.core.logging import get_logger
from parking_scheduler.core.metrics import record_reservation_attempt
from parking_scheduler.models.reservation import PaymentStatus, Reservation, ReservationStatus
from parking_scheduler.schemas.notification import (
    BookingCancellation,
    BookingConfirmation,
    BookingReminder,
)
from parking_scheduler.schemas.reservation import ReservationCreate
from parking_scheduler.services.availability_service import (
    Conflict,
    allocate,
    load_parking_lot,
    validate_interval,
)
from parking_scheduler.services.notification_service import enqueue_notification
from parking_scheduler.services.pricing import quote
from parking_scheduler.services.strategy_factory import publish_event

logger = get_logger(__name__)
settings = get_settings()

CANCELLABLE = (ReservationStatus.PENDING.value, ReservationStatus.CONFIRMED.value)
REFERENCE_ALPHABET = string.digits + string.ascii_uppercase


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(REFERENCE_ALPHABET[rem])
    return "".join(reversed(digits)) or "0"


def generate_reference(now: datetime) -> str:
    """BP + base36 millisecond timestamp + random suffix, e.g. BPLW3K9Q2A7XQ1."""
    suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(4))
    return f"BP{_base36(int(now.timestamp() * 1000))}{suffix}"


def refund_amount(amount: Decimal, start_time: datetime, now: datetime) -> Decimal:
    hours_until_start = (start_time - now).total_seconds() / 3600
    if hours_until_start >= settings.FULL_REFUND_HOURS:
        refund = Decimal(amount)
    elif hours_until_start >= settings.CANCELLATION_DEADLINE_HOURS:
        refund = Decimal(amount) * Decimal(str(settings.PARTIAL_REFUND_RATIO))
    else:
        refund = Decimal("0")
    return refund.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


async def _publish_status(reservation: Reservation) -> None:
    await publish_event(
        "reservation.status",
        reservation.user_id,
        {
            "reservation_id": reservation.id,
            "reference": reservation.reference,
            "status": reservation.status,
        },
    )


async def create_reservation(
    db: AsyncSession,
    reservation_data: ReservationCreate,
    user_id: int,
    clock: Clock = system_clock,
    recurrence_rule_id: Optional[int] = None,
    required_units: int = 1,
) -> Union[Reservation, Conflict]:
    """
    Book one unit of a lot for [start_time, end_time).
    Returns a Conflict when the lot has fewer than required_units free for
    the interval. Waitlist conversions pass the units the entry asked for.
    """
    now = clock.now()
    start, end = reservation_data.start_time, reservation_data.end_time
    validate_interval(start, end)
    if start < now:
        raise ValidationError("Reservation cannot start in the past")

    lot = await load_parking_lot(db, reservation_data.resource_id)
    if not lot.is_active:
        raise ValidationError(f"Parking lot {lot.id} is not accepting reservations")

    outcome = await allocate(db, lot.id, start, end, required_units=required_units)
    if isinstance(outcome, Conflict):
        record_reservation_attempt("conflict")
        logger.warning(
            "reservation_conflict",
            resource_id=lot.id,
            user_id=user_id,
            start=start.isoformat(),
            end=end.isoformat(),
            available=outcome.availability.available_units,
        )
        return outcome

    price = quote(lot, start, end)
    vehicle_info = reservation_data.vehicle_info
    reservation = Reservation(
        reference=generate_reference(now),
        user_id=user_id,
        resource_id=lot.id,
        unit_number=outcome.free_unit,
        start_time=start,
        end_time=end,
        status=ReservationStatus.CONFIRMED.value,
        payment_status=PaymentStatus.PENDING.value,
        amount=price.total_amount,
        currency=lot.currency,
        vehicle_info=vehicle_info.model_dump() if vehicle_info else None,
        special_requests=reservation_data.special_requests,
        recurrence_rule_id=recurrence_rule_id,
        extension_history=[],
    )
    db.add(reservation)
    await db.flush()
    await db.refresh(reservation)

    await enqueue_notification(
        db,
        user_id,
        BookingConfirmation(
            reservation_id=reservation.id,
            reference=reservation.reference,
            lot_name=lot.name,
            unit_number=reservation.unit_number,
            start_time=start,
        ),
        clock=clock,
    )
    await _publish_status(reservation)
    record_reservation_attempt("success")

    logger.info(
        "reservation_created",
        reservation_id=reservation.id,
        reference=reservation.reference,
        user_id=user_id,
        resource_id=lot.id,
        unit_number=reservation.unit_number,
        amount=str(reservation.amount),
    )
    return reservation


async def get_reservation(
    db: AsyncSession,
    reservation_id: int,
    user_id: Optional[int] = None,
) -> Reservation:
    query = (
        select(Reservation)
        .where(Reservation.id == reservation_id)
        .execution_options(populate_existing=True)
    )
    if user_id is not None:
        query = query.where(Reservation.user_id == user_id)
    result = await db.execute(query)
    reservation = result.scalar_one_or_none()
    if not reservation:
        raise NotFoundError("Reservation not found")
    return reservation


async def list_user_reservations(
    db: AsyncSession,
    user_id: int,
    status: Optional[str] = None,
) -> list[Reservation]:
    query = select(Reservation).where(Reservation.user_id == user_id)
    if status:
        query = query.where(Reservation.status == status)
    result = await db.execute(query.order_by(Reservation.start_time.desc()))
    return list(result.scalars().all())


async def cancel_reservation(
    db: AsyncSession,
    reservation: Reservation,
    reason: Optional[str] = None,
    cancelled_by: str = "user",
    clock: Clock = system_clock,
) -> Reservation:
    """Cancel before the deadline and record the refund owed."""
    now = clock.now()
    if reservation.status not in CANCELLABLE:
        raise InvalidStateTransition("reservation", reservation.status, "cancel")

    deadline = reservation.start_time - timedelta(hours=settings.CANCELLATION_DEADLINE_HOURS)
    if now >= deadline:
        raise InvalidStateTransition(
            "reservation",
            reservation.status,
            "cancel",
            reason=f"cancellation closes {settings.CANCELLATION_DEADLINE_HOURS}h before start",
        )

    refund = refund_amount(reservation.amount, reservation.start_time, now)
    reservation.status = ReservationStatus.CANCELLED.value
    reservation.cancellation = {
        "reason": reason,
        "cancelled_by": cancelled_by,
        "cancelled_at": now.isoformat(),
        "refund_amount": str(refund),
    }
    if reservation.payment_status == PaymentStatus.PAID.value:
        full = refund == Decimal(reservation.amount)
        reservation.payment_status = (
            PaymentStatus.REFUNDED.value if full else PaymentStatus.PARTIAL_REFUND.value
        )
    await db.flush()

    await enqueue_notification(
        db,
        reservation.user_id,
        BookingCancellation(
            reservation_id=reservation.id,
            reference=reservation.reference,
            refund_amount=refund,
            currency=reservation.currency,
        ),
        clock=clock,
    )
    await _publish_status(reservation)

    logger.info(
        "reservation_cancelled",
        reservation_id=reservation.id,
        resource_id=reservation.resource_id,
        cancelled_by=cancelled_by,
        refund=str(refund),
    )
    return reservation


async def check_in(
    db: AsyncSession,
    reservation: Reservation,
    clock: Clock = system_clock,
) -> Reservation:
    now = clock.now()
    if reservation.status != ReservationStatus.CONFIRMED.value:
        raise InvalidStateTransition("reservation", reservation.status, "check in")

    opens = reservation.start_time - timedelta(minutes=settings.CHECK_IN_WINDOW_MINUTES)
    if not opens <= now <= reservation.end_time:
        raise InvalidStateTransition(
            "reservation",
            reservation.status,
            "check in",
            reason=f"check-in opens {settings.CHECK_IN_WINDOW_MINUTES} minutes before start",
        )

    reservation.status = ReservationStatus.ACTIVE.value
    reservation.check_in_time = now
    await db.flush()
    await _publish_status(reservation)

    logger.info("reservation_checked_in", reservation_id=reservation.id, unit_number=reservation.unit_number)
    return reservation


async def check_out(
    db: AsyncSession,
    reservation: Reservation,
    clock: Clock = system_clock,
) -> Reservation:
    if reservation.status != ReservationStatus.ACTIVE.value or reservation.check_in_time is None:
        raise InvalidStateTransition("reservation", reservation.status, "check out")

    reservation.status = ReservationStatus.COMPLETED.value
    reservation.check_out_time = clock.now()
    await db.flush()
    await _publish_status(reservation)

    logger.info("reservation_checked_out", reservation_id=reservation.id)
    return reservation


async def extend_reservation(
    db: AsyncSession,
    reservation: Reservation,
    new_end_time: datetime,
    clock: Clock = system_clock,
) -> Union[Reservation, Conflict]:
    """
    Push the end of an ACTIVE reservation out, keeping its unit.
    The extra interval [end_time, new_end_time) is priced and appended to
    extension_history.
    """
    now = clock.now()
    if reservation.status != ReservationStatus.ACTIVE.value or reservation.check_in_time is None:
        raise InvalidStateTransition("reservation", reservation.status, "extend")
    if now >= reservation.end_time:
        raise InvalidStateTransition(
            "reservation", reservation.status, "extend", reason="reservation has already ended"
        )
    if new_end_time <= reservation.end_time:
        raise ValidationError("New end time must be after the current end time")

    old_end = reservation.end_time
    outcome = await allocate(
        db,
        reservation.resource_id,
        old_end,
        new_end_time,
        exclude_id=reservation.id,
        require_unit=reservation.unit_number,
    )
    if isinstance(outcome, Conflict):
        logger.warning(
            "reservation_extension_conflict",
            reservation_id=reservation.id,
            unit_number=reservation.unit_number,
            new_end=new_end_time.isoformat(),
        )
        return outcome

    lot = await load_parking_lot(db, reservation.resource_id)
    additional = quote(lot, old_end, new_end_time).total_amount
    reservation.extension_history = [
        *(reservation.extension_history or []),
        {
            "original_end_time": old_end.isoformat(),
            "new_end_time": new_end_time.isoformat(),
            "additional_amount": str(additional),
            "extended_at": now.isoformat(),
        },
    ]
    reservation.end_time = new_end_time
    reservation.amount = Decimal(reservation.amount) + additional
    await db.flush()

    logger.info(
        "reservation_extended",
        reservation_id=reservation.id,
        new_end=new_end_time.isoformat(),
        additional=str(additional),
    )
    return reservation


async def mark_no_show(
    db: AsyncSession,
    reservation: Reservation,
    clock: Clock = system_clock,
) -> Reservation:
    now = clock.now()
    if (
        reservation.status != ReservationStatus.CONFIRMED.value
        or reservation.check_in_time is not None
        or now <= reservation.end_time
    ):
        raise InvalidStateTransition("reservation", reservation.status, "mark no-show")

    reservation.status = ReservationStatus.NO_SHOW.value
    await db.flush()
    await _publish_status(reservation)

    logger.info("reservation_no_show", reservation_id=reservation.id, resource_id=reservation.resource_id)
    return reservation


async def record_payment(
    db: AsyncSession,
    reservation: Reservation,
    payment_status: str,
) -> Reservation:
    """Record the outcome of an external payment."""
    if reservation.status in (ReservationStatus.CANCELLED.value, ReservationStatus.NO_SHOW.value):
        raise InvalidStateTransition("reservation", reservation.status, "update payment for")
    if reservation.payment_status in (PaymentStatus.REFUNDED.value, PaymentStatus.PARTIAL_REFUND.value):
        raise InvalidStateTransition("payment", reservation.payment_status, "update")

    reservation.payment_status = PaymentStatus(payment_status).value
    await db.flush()
    logger.info("reservation_payment_updated", reservation_id=reservation.id, payment_status=payment_status)
    return reservation


async def send_reminder(
    db: AsyncSession,
    reservation: Reservation,
    clock: Clock = system_clock,
) -> bool:
    """Enqueue the pre-arrival reminder once. False if it was already sent."""
    if reservation.reminder_sent_at is not None:
        return False
    if reservation.status != ReservationStatus.CONFIRMED.value:
        raise InvalidStateTransition("reservation", reservation.status, "remind")

    lot = await load_parking_lot(db, reservation.resource_id)
    await enqueue_notification(
        db,
        reservation.user_id,
        BookingReminder(
            reservation_id=reservation.id,
            reference=reservation.reference,
            lot_name=lot.name,
            start_time=reservation.start_time,
        ),
        clock=clock,
        expires_at=reservation.start_time,
    )
    reservation.reminder_sent_at = clock.now()
    await db.flush()
    return True


async def reminder_candidate_ids(db: AsyncSession, clock: Clock = system_clock) -> list[int]:
    """CONFIRMED reservations starting inside the upcoming reminder window."""
    now = clock.now()
    window_start = now + timedelta(minutes=settings.REMINDER_LEAD_MINUTES)
    window_end = window_start + timedelta(minutes=settings.REMINDER_WINDOW_MINUTES)
    result = await db.execute(
        select(Reservation.id)
        .where(
            Reservation.status == ReservationStatus.CONFIRMED.value,
            Reservation.reminder_sent_at.is_(None),
            Reservation.start_time > window_start,
            Reservation.start_time <= window_end,
        )
        .order_by(Reservation.start_time.asc())
    )
    return list(result.scalars().all())


async def no_show_candidate_ids(db: AsyncSession, clock: Clock = system_clock) -> list[int]:
    """CONFIRMED reservations whose end passed without a check-in."""
    result = await db.execute(
        select(Reservation.id)
        .where(
            Reservation.status == ReservationStatus.CONFIRMED.value,
            Reservation.check_in_time.is_(None),
            Reservation.end_time < clock.now(),
        )
        .order_by(Reservation.end_time.asc())
    )
    return list(result.scalars().all())
