"""
Tests for the waitlist queue: join, FIFO positions, promotion, conversion and expiry.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from parking_scheduler.core.errors import InvalidStateTransition, ValidationError
from parking_scheduler.models.notification import NotificationJob
from parking_scheduler.models.reservation import Reservation
from parking_scheduler.schemas.waitlist import WaitlistJoin
from parking_scheduler.services.availability_service import Conflict
from parking_scheduler.services.reservation_service import cancel_reservation, create_reservation
from parking_scheduler.services.waitlist_service import (
    convert_entry,
    expire_entry,
    expire_lapsed,
    get_entry,
    join_waitlist,
    leave_waitlist,
    lots_with_open_entries,
    promote_entry,
    promote_waiting,
)

from conftest import NOW, TOMORROW_9AM, booking


def join_request(
    resource_id: int, start=TOMORROW_9AM, hours: float = 1, required_units: int = 1
) -> WaitlistJoin:
    return WaitlistJoin(
        resource_id=resource_id,
        desired_start=start,
        desired_end=start + timedelta(hours=hours),
        required_units=required_units,
        vehicle_info={"license_plate": "WL 42"},
    )


async def fill_lot(db, clock, lot, user_id: int = 100) -> Reservation:
    reservation = await create_reservation(db, booking(lot.id), user_id, clock)
    await db.commit()
    return reservation


@pytest.mark.asyncio
async def test_join_rejected_while_space_is_free(db_session, clock, single_space_lot):
    with pytest.raises(ValidationError):
        await join_waitlist(db_session, join_request(single_space_lot.id), 1, clock)


@pytest.mark.asyncio
async def test_join_full_lot(db_session, clock, single_space_lot):
    await fill_lot(db_session, clock, single_space_lot)

    entry = await join_waitlist(db_session, join_request(single_space_lot.id), 1, clock)

    assert entry.status == "active"
    assert entry.position == 1
    assert entry.joined_at == NOW
    assert entry.expires_at == TOMORROW_9AM + timedelta(hours=24)
    assert entry.vehicle_info["license_plate"] == "WL 42"


@pytest.mark.asyncio
async def test_duplicate_join_rejected(db_session, clock, single_space_lot):
    await fill_lot(db_session, clock, single_space_lot)
    await join_waitlist(db_session, join_request(single_space_lot.id), 1, clock)

    with pytest.raises(ValidationError):
        await join_waitlist(
            db_session, join_request(single_space_lot.id, start=TOMORROW_9AM + timedelta(minutes=30)), 1, clock
        )


@pytest.mark.asyncio
async def test_positions_follow_join_order(db_session, clock, single_space_lot, publisher):
    await fill_lot(db_session, clock, single_space_lot)

    entries = []
    for user_id in (1, 2, 3):
        entries.append(await join_waitlist(db_session, join_request(single_space_lot.id), user_id, clock))
        clock.advance(seconds=1)
    assert [e.position for e in entries] == [1, 2, 3]

    first, second, third = entries
    await leave_waitlist(db_session, second, clock)

    assert second.status == "cancelled"
    assert (await get_entry(db_session, first.id)).position == 1
    assert (await get_entry(db_session, third.id)).position == 2

    updates = (
        await db_session.execute(
            select(NotificationJob).where(NotificationJob.kind == "waitlist_position_update")
        )
    ).scalars().all()
    assert [(job.user_id, job.payload["position"]) for job in updates] == [(3, 2)]
    assert ("waitlist.position", 3, {"waitlist_entry_id": third.id, "resource_id": single_space_lot.id, "position": 2}) in publisher.events


@pytest.mark.asyncio
async def test_leave_twice_is_refused(db_session, clock, single_space_lot):
    await fill_lot(db_session, clock, single_space_lot)
    entry = await join_waitlist(db_session, join_request(single_space_lot.id), 1, clock)
    await leave_waitlist(db_session, entry, clock)
    with pytest.raises(InvalidStateTransition):
        await leave_waitlist(db_session, entry, clock)


@pytest.mark.asyncio
async def test_promotion_offers_only_the_head(db_session, clock, single_space_lot):
    holder = await fill_lot(db_session, clock, single_space_lot)
    first = await join_waitlist(db_session, join_request(single_space_lot.id), 1, clock)
    clock.advance(seconds=1)
    second = await join_waitlist(db_session, join_request(single_space_lot.id), 2, clock)

    # Nothing free yet
    assert await promote_waiting(db_session, single_space_lot.id, clock) == 0

    await cancel_reservation(db_session, holder, clock=clock)
    promoted = await promote_waiting(db_session, single_space_lot.id, clock)

    assert promoted == 1
    first = await get_entry(db_session, first.id)
    second = await get_entry(db_session, second.id)
    assert first.status == "notified"
    assert first.notified_at == clock.now()
    assert first.expires_at == clock.now() + timedelta(minutes=15)
    assert second.status == "active"
    assert second.position == 1

    offer = (
        await db_session.execute(select(NotificationJob).where(NotificationJob.kind == "waitlist_available"))
    ).scalar_one()
    assert offer.user_id == 1
    assert offer.expires_at == first.expires_at

    # The live offer still counts against the free space
    assert await promote_entry(db_session, second, clock) is False


@pytest.mark.asyncio
async def test_convert_live_offer(db_session, clock, single_space_lot):
    holder = await fill_lot(db_session, clock, single_space_lot)
    entry = await join_waitlist(db_session, join_request(single_space_lot.id), 1, clock)
    await cancel_reservation(db_session, holder, clock=clock)
    await promote_waiting(db_session, single_space_lot.id, clock)

    clock.advance(minutes=5)
    reservation = await convert_entry(db_session, entry, clock)

    assert isinstance(reservation, Reservation)
    assert reservation.user_id == 1
    assert reservation.start_time == entry.desired_start
    assert reservation.vehicle_info["license_plate"] == "WL 42"
    assert entry.status == "converted"
    assert entry.converted_reservation_id == reservation.id
    assert entry.converted_at == clock.now()


@pytest.mark.asyncio
async def test_conversion_race_lost_returns_entry_to_queue(db_session, clock, single_space_lot):
    holder = await fill_lot(db_session, clock, single_space_lot)
    entry = await join_waitlist(db_session, join_request(single_space_lot.id), 1, clock)
    clock.advance(seconds=1)
    later = await join_waitlist(db_session, join_request(single_space_lot.id), 2, clock)
    await cancel_reservation(db_session, holder, clock=clock)
    await promote_waiting(db_session, single_space_lot.id, clock)

    # Someone books the freed space directly before the offer is taken
    walk_in = await create_reservation(db_session, booking(single_space_lot.id), 3, clock)
    assert isinstance(walk_in, Reservation)

    outcome = await convert_entry(db_session, entry, clock)

    assert isinstance(outcome, Conflict)
    assert entry.status == "active"
    assert entry.notified_at is None
    assert entry.expires_at == TOMORROW_9AM + timedelta(hours=24)
    assert entry.position == 1
    assert (await get_entry(db_session, later.id)).position == 2


@pytest.mark.asyncio
async def test_conversion_needs_every_requested_unit(db_session, clock, test_lot):
    holder = await fill_lot(db_session, clock, test_lot)
    entry = await join_waitlist(
        db_session, join_request(test_lot.id, required_units=2), 1, clock
    )
    await cancel_reservation(db_session, holder, clock=clock)
    assert await promote_waiting(db_session, test_lot.id, clock) == 1

    # One of the two offered spaces is taken before the offer is used
    walk_in = await create_reservation(db_session, booking(test_lot.id), 3, clock)
    assert isinstance(walk_in, Reservation)

    outcome = await convert_entry(db_session, entry, clock)

    assert isinstance(outcome, Conflict)
    assert outcome.availability.available_units == 1
    assert entry.status == "active"
    assert entry.converted_reservation_id is None
    assert entry.position == 1


@pytest.mark.asyncio
async def test_expired_offer_cannot_be_converted(db_session, clock, single_space_lot):
    holder = await fill_lot(db_session, clock, single_space_lot)
    entry = await join_waitlist(db_session, join_request(single_space_lot.id), 1, clock)
    await cancel_reservation(db_session, holder, clock=clock)
    await promote_waiting(db_session, single_space_lot.id, clock)

    clock.advance(minutes=16)
    with pytest.raises(InvalidStateTransition):
        await convert_entry(db_session, entry, clock)
    assert entry.status == "notified"


@pytest.mark.asyncio
async def test_lapsed_offer_expires_and_next_entry_is_offered(db_session, clock, single_space_lot):
    holder = await fill_lot(db_session, clock, single_space_lot)
    first = await join_waitlist(db_session, join_request(single_space_lot.id), 1, clock)
    clock.advance(seconds=1)
    second = await join_waitlist(db_session, join_request(single_space_lot.id), 2, clock)
    await cancel_reservation(db_session, holder, clock=clock)
    await promote_waiting(db_session, single_space_lot.id, clock)

    clock.advance(minutes=16)
    assert await promote_waiting(db_session, single_space_lot.id, clock) == 1

    assert (await get_entry(db_session, first.id)).status == "expired"
    assert (await get_entry(db_session, second.id)).status == "notified"


@pytest.mark.asyncio
async def test_expire_lapsed_waiting_entries(db_session, clock, single_space_lot):
    await fill_lot(db_session, clock, single_space_lot)
    entry = await join_waitlist(db_session, join_request(single_space_lot.id), 1, clock)
    assert await lots_with_open_entries(db_session) == [single_space_lot.id]

    clock.set(entry.expires_at)
    assert await expire_lapsed(db_session, single_space_lot.id, clock) == 1

    assert (await get_entry(db_session, entry.id)).status == "expired"
    assert await lots_with_open_entries(db_session) == []


@pytest.mark.asyncio
async def test_expire_single_entry_only_after_its_deadline(db_session, clock, single_space_lot):
    await fill_lot(db_session, clock, single_space_lot)
    first = await join_waitlist(db_session, join_request(single_space_lot.id), 1, clock)
    clock.advance(seconds=1)
    second = await join_waitlist(db_session, join_request(single_space_lot.id), 2, clock)

    with pytest.raises(InvalidStateTransition):
        await expire_entry(db_session, first, clock)

    clock.set(first.expires_at)
    await expire_entry(db_session, first, clock)

    assert first.status == "expired"
    assert (await get_entry(db_session, second.id)).position == 1
