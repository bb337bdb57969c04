"""
Tests for the scheduler orchestrator ticks.

Setup is committed through db_session before each tick, and results are
read back with the service getters, which reload from the database.
"""

from datetime import time, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from parking_scheduler.models.notification import NotificationJob
from parking_scheduler.models.reservation import Reservation
from parking_scheduler.schemas.recurrence import RecurrenceRuleCreate
from parking_scheduler.schemas.waitlist import WaitlistJoin
from parking_scheduler.services import reservation_service
from parking_scheduler.services.recurrence_service import create_rule, get_rule
from parking_scheduler.services.reservation_service import (
    cancel_reservation,
    create_reservation,
    get_reservation,
)
from parking_scheduler.services.waitlist_service import get_entry, join_waitlist

from conftest import NOW, booking


async def count(db, model, *criteria) -> int:
    return (await db.execute(select(func.count(model.id)).where(*criteria))).scalar()


async def book_soon(db, clock, lot, user_id: int = 1) -> Reservation:
    """A reservation starting inside the reminder window."""
    reservation = await create_reservation(db, booking(lot.id, start=NOW + timedelta(minutes=40)), user_id, clock)
    await db.commit()
    return reservation


@pytest.mark.asyncio
async def test_recurrence_tick_is_idempotent(db_session, clock, orchestrator, single_space_lot):
    rule = await create_rule(
        db_session,
        RecurrenceRuleCreate(
            resource_id=single_space_lot.id,
            pattern="daily",
            start_time=time(9, 0),
            duration_minutes=60,
            start_date=NOW.date(),
        ),
        user_id=1,
        clock=clock,
    )
    await db_session.commit()

    first = await orchestrator.trigger_recurrence_tick()
    second = await orchestrator.trigger_recurrence_tick()

    assert first.outcomes["created"] == 1
    assert first.failed == 0
    assert second.processed == 0
    assert await count(db_session, Reservation, Reservation.recurrence_rule_id == rule.id) == 1
    rule = await get_rule(db_session, rule.id)
    assert rule.occurrence_count == 1
    assert rule.next_occurrence == NOW.date() + timedelta(days=1)


@pytest.mark.asyncio
async def test_reminder_tick_sends_once(db_session, clock, orchestrator, single_space_lot):
    reservation = await book_soon(db_session, clock, single_space_lot)

    first = await orchestrator.trigger_reminder_tick()
    second = await orchestrator.trigger_reminder_tick()

    assert first.outcomes["reminded"] == 1
    assert second.processed == 0
    assert await count(db_session, NotificationJob, NotificationJob.kind == "booking_reminder") == 1
    reservation = await get_reservation(db_session, reservation.id)
    assert reservation.reminder_sent_at == NOW


@pytest.mark.asyncio
async def test_reminder_tick_ignores_reservations_outside_window(db_session, clock, orchestrator, single_space_lot):
    await create_reservation(db_session, booking(single_space_lot.id, start=NOW + timedelta(hours=2)), 1, clock)
    await db_session.commit()

    report = await orchestrator.trigger_reminder_tick()
    assert report.processed == 0


@pytest.mark.asyncio
async def test_dispatch_tick_delivers_pending(db_session, clock, channel, orchestrator, single_space_lot):
    await create_reservation(db_session, booking(single_space_lot.id), 1, clock)
    await db_session.commit()

    report = await orchestrator.trigger_notification_dispatch()

    assert report.outcomes["sent"] == 1
    assert [message["kind"] for message in channel.sent] == ["booking_confirmation"]


@pytest.mark.asyncio
async def test_dispatch_tick_retries_after_backoff(db_session, clock, channel, orchestrator, single_space_lot):
    await create_reservation(db_session, booking(single_space_lot.id), 1, clock)
    await db_session.commit()

    channel.fail = True
    failed = await orchestrator.trigger_notification_dispatch()
    assert failed.outcomes["failed"] == 1
    assert channel.sent == []

    channel.fail = False
    early = await orchestrator.trigger_notification_dispatch()
    assert early.outcomes["requeued"] == 0
    assert channel.sent == []

    clock.advance(minutes=5)
    retried = await orchestrator.trigger_notification_dispatch()
    assert retried.outcomes["requeued"] == 1
    assert retried.outcomes["sent"] == 1
    assert len(channel.sent) == 1


@pytest.mark.asyncio
async def test_waitlist_tick_promotes_after_cancellation(db_session, clock, orchestrator, single_space_lot):

    holder = await create_reservation(db_session, booking(single_space_lot.id), 1, clock)
    entry = await join_waitlist(
        db_session,
        WaitlistJoin(resource_id=single_space_lot.id, desired_start=holder.start_time, desired_end=holder.end_time),
        2,
        clock,
    )
    await db_session.commit()

    assert (await orchestrator.trigger_waitlist_tick()).outcomes["promoted"] == 0

    await cancel_reservation(db_session, holder, clock=clock)
    await db_session.commit()
    report = await orchestrator.trigger_waitlist_tick()

    assert report.outcomes["promoted"] == 1
    assert (await get_entry(db_session, entry.id)).status == "notified"


@pytest.mark.asyncio
async def test_cleanup_marks_no_shows(db_session, clock, orchestrator, single_space_lot):
    reservation = await create_reservation(db_session, booking(single_space_lot.id), 1, clock)
    await db_session.commit()

    clock.set(reservation.end_time + timedelta(minutes=1))
    report = await orchestrator.trigger_cleanup()

    assert report.outcomes["no_show"] == 1
    assert (await get_reservation(db_session, reservation.id)).status == "no_show"


@pytest.mark.asyncio
async def test_reminder_tick_skips_reservations_cancelled_after_the_scan(
    db_session, clock, orchestrator, single_space_lot, monkeypatch
):
    reservation = await create_reservation(db_session, booking(single_space_lot.id), 1, clock)
    await cancel_reservation(db_session, reservation, clock=clock)
    await db_session.commit()

    async def stale_scan(db, clock):
        return [reservation.id]

    monkeypatch.setattr(reservation_service, "reminder_candidate_ids", stale_scan)
    report = await orchestrator.trigger_reminder_tick()

    assert report.outcomes["skipped"] == 1
    assert report.outcomes["reminded"] == 0
    assert (await get_reservation(db_session, reservation.id)).reminder_sent_at is None


@pytest.mark.asyncio
async def test_failing_item_does_not_stop_the_batch(
    db_session, clock, orchestrator, test_lot, monkeypatch
):
    await book_soon(db_session, clock, test_lot, user_id=1)
    await book_soon(db_session, clock, test_lot, user_id=2)
    original = reservation_service.send_reminder

    async def flaky(db, reservation, clock):
        if reservation.user_id == 1:
            raise RuntimeError("template missing")
        return await original(db, reservation, clock)

    monkeypatch.setattr(reservation_service, "send_reminder", flaky)
    report = await orchestrator.trigger_reminder_tick()

    assert report.failed == 1
    assert report.processed == 1
    assert report.outcomes["reminded"] == 1
    assert not report.aborted


@pytest.mark.asyncio
async def test_store_outage_aborts_the_batch(db_session, clock, orchestrator, test_lot, monkeypatch):
    await book_soon(db_session, clock, test_lot, user_id=1)
    await book_soon(db_session, clock, test_lot, user_id=2)
    calls = []

    async def outage(db, reservation, clock):
        calls.append(reservation.id)
        raise OperationalError("UPDATE reservations", {}, Exception("connection lost"))

    monkeypatch.setattr(reservation_service, "send_reminder", outage)
    report = await orchestrator.trigger_reminder_tick()

    assert report.aborted
    assert report.failed == 1
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_stop_request_ends_batch_between_items(db_session, clock, orchestrator, single_space_lot):
    await book_soon(db_session, clock, single_space_lot)
    orchestrator._stop_requested = True

    report = await orchestrator.trigger_reminder_tick()

    assert report.stopped
    assert report.processed == 0


@pytest.mark.asyncio
async def test_start_and_stop(orchestrator):
    orchestrator.start()
    try:
        assert orchestrator.running
        assert {job.id for job in orchestrator._scheduler.get_jobs()} == {
            "recurrence", "waitlist", "reminder", "dispatch", "cleanup",
        }
    finally:
        await orchestrator.stop()
    assert not orchestrator.running
