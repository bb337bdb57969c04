"""
Waitlist queue per parking lot.

QUEUE MODEL
===========
  ACTIVE --promote--> NOTIFIED --convert--> CONVERTED
    |                    |  \--race lost--> ACTIVE (original join-order place)
    |                    +--offer lapses--> EXPIRED
    +--leave / expire--> CANCELLED / EXPIRED

Positions are 1..N over the ACTIVE entries of a lot, ordered by
(joined_at, id). Whenever ACTIVE membership changes the queue is
renumbered, and holders whose number moved are told about it.

SERIALIZATION
=============
Every operation that changes queue membership first calls
lock_parking_lot(), which bumps the lot version. That UPDATE holds the lot
row until commit, so concurrent joins and leaves on the same lot renumber
one after another instead of interleaving. It also invalidates any
in-flight optimistic allocation on the lot, which simply retries.

OFFERS
======
Promotion reserves nothing. An entry is offered a space when the lot's
free units, minus units already offered to overlapping unexpired NOTIFIED
entries, cover its request. With capacity 1 only the head of the queue is
offered; larger lots may have several live offers at once.
"""

from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from parking_scheduler.core.clock import Clock, system_clock
from parking_scheduler.core.config import get_settings
from parking_scheduler.core.errors import InvalidStateTransition, NotFoundError, ValidationError
from parking_scheduler.core.logging import get_logger
from parking_scheduler.core.metrics import record_waitlist_operation
from parking_scheduler.models.parking_lot import ParkingLot
from parking_scheduler.models.reservation import Reservation
from parking_scheduler.models.waitlist import WaitlistEntry, WaitlistStatus
from parking_scheduler.schemas.notification import (
    WaitlistAvailable,
    WaitlistJoined,
    WaitlistPositionUpdate,
)
from parking_scheduler.schemas.reservation import ReservationCreate, VehicleInfo
from parking_scheduler.schemas.waitlist import WaitlistJoin
from parking_scheduler.services.availability_service import (
    Conflict,
    check_availability,
    load_parking_lot,
    lock_parking_lot,
    overlaps,
    validate_interval,
)
from parking_scheduler.services.notification_service import enqueue_notification
from parking_scheduler.services.reservation_service import create_reservation
from parking_scheduler.services.strategy_factory import publish_event

logger = get_logger(__name__)
settings = get_settings()

OPEN_STATUSES = (WaitlistStatus.ACTIVE.value, WaitlistStatus.NOTIFIED.value)


def _waiting_expiry(entry: WaitlistEntry) -> datetime:
    return entry.desired_start + timedelta(hours=settings.WAITLIST_EXPIRY_HOURS)


async def _active_entries(db: AsyncSession, resource_id: int) -> list[WaitlistEntry]:
    result = await db.execute(
        select(WaitlistEntry)
        .where(
            WaitlistEntry.resource_id == resource_id,
            WaitlistEntry.status == WaitlistStatus.ACTIVE.value,
        )
        .order_by(WaitlistEntry.joined_at.asc(), WaitlistEntry.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _live_offers(db: AsyncSession, resource_id: int, now: datetime) -> list[WaitlistEntry]:
    result = await db.execute(
        select(WaitlistEntry).where(
            WaitlistEntry.resource_id == resource_id,
            WaitlistEntry.status == WaitlistStatus.NOTIFIED.value,
            WaitlistEntry.expires_at > now,
        )
    )
    return list(result.scalars().all())


async def _renumber(db: AsyncSession, lot: ParkingLot, clock: Clock) -> int:
    """
    Rewrite positions 1..N in join order. Caller holds the lot lock.
    Returns how many entries moved.
    """
    moved = []
    for position, entry in enumerate(await _active_entries(db, lot.id), start=1):
        if entry.position != position:
            entry.position = position
            moved.append(entry)
    await db.flush()

    for entry in moved:
        await enqueue_notification(
            db,
            entry.user_id,
            WaitlistPositionUpdate(waitlist_entry_id=entry.id, lot_name=lot.name, position=entry.position),
            clock=clock,
        )
        await publish_event(
            "waitlist.position",
            entry.user_id,
            {"waitlist_entry_id": entry.id, "resource_id": lot.id, "position": entry.position},
        )

    if moved:
        logger.info("waitlist_renumbered", resource_id=lot.id, moved=len(moved))
    return len(moved)


async def join_waitlist(
    db: AsyncSession,
    join_data: WaitlistJoin,
    user_id: int,
    clock: Clock = system_clock,
) -> WaitlistEntry:
    """Queue a request for a lot that is full for the desired interval."""
    now = clock.now()
    start, end = join_data.desired_start, join_data.desired_end
    validate_interval(start, end)
    if end <= now:
        raise ValidationError("Desired interval has already ended")

    lot = await load_parking_lot(db, join_data.resource_id)
    await lock_parking_lot(db, lot.id)

    availability = await check_availability(db, lot.id, start, end, join_data.required_units)
    if availability.is_available:
        raise ValidationError("Parking is available for this interval, book it directly")

    duplicate = await db.execute(
        select(WaitlistEntry.id).where(
            WaitlistEntry.resource_id == lot.id,
            WaitlistEntry.user_id == user_id,
            WaitlistEntry.status.in_(OPEN_STATUSES),
            WaitlistEntry.desired_start < end,
            WaitlistEntry.desired_end > start,
        )
    )
    if duplicate.first():
        raise ValidationError("You are already on the waitlist for an overlapping interval")

    waiting = (
        await db.execute(
            select(func.count(WaitlistEntry.id)).where(
                WaitlistEntry.resource_id == lot.id,
                WaitlistEntry.status == WaitlistStatus.ACTIVE.value,
            )
        )
    ).scalar()

    vehicle_info = join_data.vehicle_info
    entry = WaitlistEntry(
        user_id=user_id,
        resource_id=lot.id,
        status=WaitlistStatus.ACTIVE.value,
        position=waiting + 1,
        desired_start=start,
        desired_end=end,
        required_units=join_data.required_units,
        vehicle_info=vehicle_info.model_dump() if vehicle_info else None,
        special_requests=join_data.special_requests,
        joined_at=now,
    )
    entry.expires_at = _waiting_expiry(entry)
    db.add(entry)
    await db.flush()
    await db.refresh(entry)

    await enqueue_notification(
        db,
        user_id,
        WaitlistJoined(waitlist_entry_id=entry.id, lot_name=lot.name, position=entry.position),
        clock=clock,
    )
    record_waitlist_operation("join")
    logger.info(
        "waitlist_joined",
        waitlist_entry_id=entry.id,
        resource_id=lot.id,
        user_id=user_id,
        position=entry.position,
    )
    return entry


async def get_entry(
    db: AsyncSession,
    entry_id: int,
    user_id: Optional[int] = None,
) -> WaitlistEntry:
    query = (
        select(WaitlistEntry)
        .where(WaitlistEntry.id == entry_id)
        .execution_options(populate_existing=True)
    )
    if user_id is not None:
        query = query.where(WaitlistEntry.user_id == user_id)
    result = await db.execute(query)
    entry = result.scalar_one_or_none()
    if not entry:
        raise NotFoundError("Waitlist entry not found")
    return entry


async def list_user_entries(
    db: AsyncSession,
    user_id: int,
    open_only: bool = False,
) -> list[WaitlistEntry]:
    query = select(WaitlistEntry).where(WaitlistEntry.user_id == user_id)
    if open_only:
        query = query.where(WaitlistEntry.status.in_(OPEN_STATUSES))
    result = await db.execute(query.order_by(WaitlistEntry.joined_at.desc()))
    return list(result.scalars().all())


async def leave_waitlist(
    db: AsyncSession,
    entry: WaitlistEntry,
    clock: Clock = system_clock,
) -> WaitlistEntry:
    if entry.status not in OPEN_STATUSES:
        raise InvalidStateTransition("waitlist entry", entry.status, "leave")

    lot = await load_parking_lot(db, entry.resource_id)
    await lock_parking_lot(db, lot.id)
    entry = await get_entry(db, entry.id)
    if entry.status not in OPEN_STATUSES:
        raise InvalidStateTransition("waitlist entry", entry.status, "leave")

    was_waiting = entry.status == WaitlistStatus.ACTIVE.value
    entry.status = WaitlistStatus.CANCELLED.value
    await db.flush()
    if was_waiting:
        await _renumber(db, lot, clock)

    record_waitlist_operation("leave")
    logger.info("waitlist_left", waitlist_entry_id=entry.id, resource_id=lot.id)
    return entry


async def _offer(db: AsyncSession, entry: WaitlistEntry, lot: ParkingLot, now: datetime, clock: Clock) -> None:
    entry.status = WaitlistStatus.NOTIFIED.value
    entry.notified_at = now
    entry.expires_at = now + timedelta(minutes=settings.WAITLIST_OFFER_MINUTES)
    await db.flush()

    await enqueue_notification(
        db,
        entry.user_id,
        WaitlistAvailable(waitlist_entry_id=entry.id, lot_name=lot.name, available_until=entry.expires_at),
        clock=clock,
        expires_at=entry.expires_at,
    )
    await publish_event(
        "waitlist.available",
        entry.user_id,
        {
            "waitlist_entry_id": entry.id,
            "resource_id": lot.id,
            "available_until": entry.expires_at.isoformat(),
        },
    )
    record_waitlist_operation("promote")
    logger.info(
        "waitlist_promoted",
        waitlist_entry_id=entry.id,
        resource_id=lot.id,
        expires_at=entry.expires_at.isoformat(),
    )


async def _can_offer(
    db: AsyncSession,
    entry: WaitlistEntry,
    offers: list[WaitlistEntry],
    now: datetime,
) -> bool:
    if entry.desired_start <= now:
        # Too late to book; the entry will expire on its own
        return False
    availability = await check_availability(
        db, entry.resource_id, entry.desired_start, entry.desired_end, entry.required_units
    )
    offered = sum(
        o.required_units for o in offers
        if o.id != entry.id
        and o.expires_at > now
        and overlaps(o.desired_start, o.desired_end, entry.desired_start, entry.desired_end)
    )
    return availability.available_units - offered >= entry.required_units


async def promote_entry(
    db: AsyncSession,
    entry: WaitlistEntry,
    clock: Clock = system_clock,
) -> bool:
    """Offer a space to one ACTIVE entry if the lot can take it. False when it cannot."""
    if entry.status != WaitlistStatus.ACTIVE.value:
        raise InvalidStateTransition("waitlist entry", entry.status, "promote")

    now = clock.now()
    lot = await load_parking_lot(db, entry.resource_id)
    await lock_parking_lot(db, lot.id)

    offers = await _live_offers(db, lot.id, now)
    if not await _can_offer(db, entry, offers, now):
        return False

    await _offer(db, entry, lot, now, clock)
    await _renumber(db, lot, clock)
    return True


async def promote_waiting(
    db: AsyncSession,
    resource_id: int,
    clock: Clock = system_clock,
) -> int:
    """
    Expire lapsed entries, then walk the queue head first and offer spaces
    while the lot has them. Returns the number of entries promoted.
    """
    now = clock.now()
    lot = await load_parking_lot(db, resource_id)
    await lock_parking_lot(db, lot.id)
    await _expire_lapsed(db, lot, clock)

    offers = await _live_offers(db, lot.id, now)
    promoted = 0
    for entry in await _active_entries(db, lot.id):
        if await _can_offer(db, entry, offers, now):
            await _offer(db, entry, lot, now, clock)
            offers.append(entry)
            promoted += 1

    if promoted:
        await _renumber(db, lot, clock)
    return promoted


async def convert_entry(
    db: AsyncSession,
    entry: WaitlistEntry,
    clock: Clock = system_clock,
) -> Union[Reservation, Conflict]:
    """
    Turn a live offer into a reservation.

    The offer held nothing, so some of the units it covered may have gone
    to someone else in the meantime. When fewer than required_units are
    still free the entry goes back to ACTIVE in its original place and the
    Conflict is returned.
    """
    now = clock.now()
    if entry.status != WaitlistStatus.NOTIFIED.value:
        raise InvalidStateTransition("waitlist entry", entry.status, "convert")
    if entry.expires_at is None or entry.expires_at <= now:
        raise InvalidStateTransition(
            "waitlist entry", entry.status, "convert", reason="the offer has expired"
        )

    lot = await load_parking_lot(db, entry.resource_id)
    outcome = await create_reservation(
        db,
        ReservationCreate(
            resource_id=entry.resource_id,
            start_time=entry.desired_start,
            end_time=entry.desired_end,
            vehicle_info=VehicleInfo(**entry.vehicle_info) if entry.vehicle_info else None,
            special_requests=entry.special_requests,
        ),
        entry.user_id,
        clock=clock,
        required_units=entry.required_units,
    )

    await lock_parking_lot(db, lot.id)
    if isinstance(outcome, Conflict):
        entry.status = WaitlistStatus.ACTIVE.value
        entry.notified_at = None
        entry.expires_at = _waiting_expiry(entry)
        await db.flush()
        await _renumber(db, lot, clock)

        record_waitlist_operation("demote")
        logger.warning(
            "waitlist_conversion_lost",
            waitlist_entry_id=entry.id,
            resource_id=lot.id,
            position=entry.position,
        )
        return outcome

    entry.status = WaitlistStatus.CONVERTED.value
    entry.converted_at = now
    entry.converted_reservation_id = outcome.id
    await db.flush()

    record_waitlist_operation("convert")
    logger.info(
        "waitlist_converted",
        waitlist_entry_id=entry.id,
        reservation_id=outcome.id,
        resource_id=lot.id,
    )
    return outcome


async def expire_entry(
    db: AsyncSession,
    entry: WaitlistEntry,
    clock: Clock = system_clock,
) -> WaitlistEntry:
    now = clock.now()
    if entry.status not in OPEN_STATUSES or entry.expires_at is None or entry.expires_at > now:
        raise InvalidStateTransition("waitlist entry", entry.status, "expire")

    lot = await load_parking_lot(db, entry.resource_id)
    await lock_parking_lot(db, lot.id)
    was_waiting = entry.status == WaitlistStatus.ACTIVE.value
    entry.status = WaitlistStatus.EXPIRED.value
    await db.flush()
    if was_waiting:
        await _renumber(db, lot, clock)

    record_waitlist_operation("expire")
    logger.info("waitlist_expired", waitlist_entry_id=entry.id, resource_id=lot.id)
    return entry


async def _expire_lapsed(db: AsyncSession, lot: ParkingLot, clock: Clock) -> int:
    result = await db.execute(
        select(WaitlistEntry)
        .where(
            WaitlistEntry.resource_id == lot.id,
            WaitlistEntry.status.in_(OPEN_STATUSES),
            WaitlistEntry.expires_at <= clock.now(),
        )
        .execution_options(populate_existing=True)
    )
    lapsed = list(result.scalars().all())
    if not lapsed:
        return 0

    queue_changed = False
    for entry in lapsed:
        queue_changed = queue_changed or entry.status == WaitlistStatus.ACTIVE.value
        entry.status = WaitlistStatus.EXPIRED.value
        record_waitlist_operation("expire")
    await db.flush()
    if queue_changed:
        await _renumber(db, lot, clock)

    logger.info("waitlist_entries_expired", resource_id=lot.id, count=len(lapsed))
    return len(lapsed)


async def expire_lapsed(
    db: AsyncSession,
    resource_id: int,
    clock: Clock = system_clock,
) -> int:
    """Expire every ACTIVE or NOTIFIED entry of a lot whose expires_at has passed."""
    lot = await load_parking_lot(db, resource_id)
    await lock_parking_lot(db, lot.id)
    return await _expire_lapsed(db, lot, clock)


async def lots_with_open_entries(db: AsyncSession) -> list[int]:
    result = await db.execute(
        select(WaitlistEntry.resource_id)
        .where(WaitlistEntry.status.in_(OPEN_STATUSES))
        .distinct()
        .order_by(WaitlistEntry.resource_id.asc())
    )
    return list(result.scalars().all())
