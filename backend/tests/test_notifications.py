"""
Tests for notification rendering, delivery, retry backoff and housekeeping.
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest

from parking_scheduler.core.errors import InvalidStateTransition
from parking_scheduler.schemas.notification import (
    BookingCancellation,
    BookingConfirmation,
    BookingReminder,
    RecurrenceCreated,
    RecurrenceFailed,
    WaitlistAvailable,
    WaitlistJoined,
    WaitlistPositionUpdate,
    payload_adapter,
)
from parking_scheduler.services import notification_service
from parking_scheduler.services.interfaces.channel import NotificationChannel
from parking_scheduler.services.notification_service import (
    dispatch_pending,
    enqueue_notification,
    expire_stale,
    get_notification,
    list_user_notifications,
    mark_delivered,
    mark_read,
    purge_old,
    render,
    retry_due,
    send_notification,
)

from conftest import NOW, TOMORROW_9AM


class SlowChannel(NotificationChannel):
    async def send(self, message):
        await asyncio.sleep(1)
        return True


class RejectingChannel(NotificationChannel):
    async def send(self, message):
        return False


def confirmation(reservation_id: int = 1) -> BookingConfirmation:
    return BookingConfirmation(
        reservation_id=reservation_id,
        reference="BPTEST0001",
        lot_name="Cairo Road Garage",
        unit_number=3,
        start_time=TOMORROW_9AM,
    )


ALL_PAYLOADS = [
    confirmation(),
    BookingReminder(reservation_id=1, reference="BPTEST0001", lot_name="Cairo Road Garage", start_time=TOMORROW_9AM),
    BookingCancellation(reservation_id=1, reference="BPTEST0001", refund_amount=Decimal("12.00"), currency="ZMW"),
    WaitlistJoined(waitlist_entry_id=4, lot_name="Cairo Road Garage", position=2),
    WaitlistAvailable(waitlist_entry_id=4, lot_name="Cairo Road Garage", available_until=NOW),
    WaitlistPositionUpdate(waitlist_entry_id=4, lot_name="Cairo Road Garage", position=1),
    RecurrenceCreated(recurrence_rule_id=9, reservation_id=1, lot_name="Cairo Road Garage", occurrence_date=date(2026, 3, 9)),
    RecurrenceFailed(recurrence_rule_id=9, lot_name="Cairo Road Garage", occurrence_date=date(2026, 3, 9), reason="full"),
]


@pytest.mark.parametrize("payload", ALL_PAYLOADS, ids=lambda p: p.kind)
def test_every_kind_renders(payload):
    title, message = render(payload)
    assert title
    assert "Cairo Road Garage" in message or "BPTEST0001" in message


def test_payload_round_trips_through_json():
    stored = confirmation().model_dump(mode="json")
    assert payload_adapter.validate_python(stored) == confirmation()


def test_confirmation_text():
    title, message = render(confirmation())
    assert title == "Booking Confirmed"
    assert message == (
        "Your parking at Cairo Road Garage (space 3) is confirmed for 2026-03-03 09:00. "
        "Reference: BPTEST0001"
    )


@pytest.mark.asyncio
async def test_send_delivers_with_job_id(db_session, clock, channel):
    job = await enqueue_notification(db_session, 7, confirmation(), clock=clock)
    assert job.status == "pending"
    assert job.scheduled_for == NOW

    await send_notification(db_session, job, channel, clock)

    assert job.status == "sent"
    assert job.sent_at == NOW
    assert channel.sent[0]["id"] == job.id
    assert channel.sent[0]["user_id"] == 7
    assert channel.sent[0]["payload"]["reference"] == "BPTEST0001"

    with pytest.raises(InvalidStateTransition):
        await send_notification(db_session, job, channel, clock)


@pytest.mark.asyncio
async def test_failed_sends_back_off_then_give_up(db_session, clock, channel):
    channel.fail = True
    job = await enqueue_notification(db_session, 7, confirmation(), clock=clock)

    for attempt, minutes in enumerate((5, 25, 125), start=1):
        await send_notification(db_session, job, channel, clock)
        assert job.status == "failed"
        assert job.retry_count == attempt
        assert job.next_retry_at == clock.now() + timedelta(minutes=minutes)
        assert job.failure_reason == "channel down"

        # Not before the backoff has elapsed
        clock.advance(minutes=minutes - 1)
        assert await retry_due(db_session, clock) == 0
        clock.advance(minutes=1)
        assert await retry_due(db_session, clock) == 1
        job = await get_notification(db_session, job.id)
        assert job.status == "pending"

    await send_notification(db_session, job, channel, clock)

    assert job.status == "failed"
    assert job.retry_count == job.max_retries == 3
    assert job.next_retry_at is None
    clock.advance(days=1)
    assert await retry_due(db_session, clock) == 0


@pytest.mark.asyncio
async def test_retry_succeeds_after_channel_recovers(db_session, clock, channel):
    channel.fail = True
    job = await enqueue_notification(db_session, 7, confirmation(), clock=clock)
    await send_notification(db_session, job, channel, clock)

    channel.fail = False
    clock.advance(minutes=5)
    counts = await dispatch_pending(db_session, channel, clock)

    assert counts == {"requeued": 1, "expired": 0, "sent": 1, "failed": 0}
    job = await get_notification(db_session, job.id)
    assert job.status == "sent"
    assert job.retry_count == 1
    assert len(channel.sent) == 1


@pytest.mark.asyncio
async def test_send_timeout_counts_as_failure(db_session, clock, monkeypatch):
    monkeypatch.setattr(notification_service.settings, "NOTIFICATION_SEND_TIMEOUT", 0.01)
    job = await enqueue_notification(db_session, 7, confirmation(), clock=clock)

    await send_notification(db_session, job, SlowChannel(), clock)

    assert job.status == "failed"
    assert job.failure_reason == "send timed out"
    assert job.retry_count == 1


@pytest.mark.asyncio
async def test_rejected_send_counts_as_failure(db_session, clock):
    job = await enqueue_notification(db_session, 7, confirmation(), clock=clock)
    await send_notification(db_session, job, RejectingChannel(), clock)
    assert job.status == "failed"
    assert job.failure_reason == "rejected by channel"


@pytest.mark.asyncio
async def test_expired_job_is_never_sent(db_session, clock, channel):
    job = await enqueue_notification(
        db_session, 7, confirmation(), clock=clock, expires_at=NOW + timedelta(minutes=10)
    )
    clock.advance(minutes=10)

    await send_notification(db_session, job, channel, clock)

    assert job.status == "failed"
    assert job.failure_reason == "expired"
    assert job.retry_count == 0
    assert channel.sent == []


@pytest.mark.asyncio
async def test_expire_stale(db_session, clock):
    stale = await enqueue_notification(
        db_session, 7, confirmation(1), clock=clock, expires_at=NOW + timedelta(minutes=10)
    )
    fresh = await enqueue_notification(db_session, 7, confirmation(2), clock=clock)
    clock.advance(minutes=15)

    assert await expire_stale(db_session, clock) == 1

    assert (await get_notification(db_session, stale.id)).status == "failed"
    assert (await get_notification(db_session, fresh.id)).status == "pending"


@pytest.mark.asyncio
async def test_scheduled_job_waits_for_its_time(db_session, clock, channel):
    await enqueue_notification(
        db_session, 7, confirmation(), clock=clock, scheduled_for=NOW + timedelta(hours=1)
    )
    assert await dispatch_pending(db_session, channel, clock) == {
        "requeued": 0, "expired": 0, "sent": 0, "failed": 0,
    }
    clock.advance(hours=1)
    assert (await dispatch_pending(db_session, channel, clock))["sent"] == 1


@pytest.mark.asyncio
async def test_delivery_and_read_receipts(db_session, clock, channel):
    job = await enqueue_notification(db_session, 7, confirmation(), clock=clock)

    with pytest.raises(InvalidStateTransition):
        await mark_read(db_session, job, clock)

    await send_notification(db_session, job, channel, clock)
    await mark_delivered(db_session, job, clock)
    assert job.status == "delivered"

    clock.advance(minutes=2)
    await mark_read(db_session, job, clock)
    assert job.status == "read"
    assert job.read_at == clock.now()
    assert await list_user_notifications(db_session, 7, unread_only=True) == []


@pytest.mark.asyncio
async def test_purge_old_keeps_recent_and_unread(db_session, clock, channel):
    old = await enqueue_notification(db_session, 7, confirmation(1), clock=clock)
    recent = await enqueue_notification(db_session, 7, confirmation(2), clock=clock)
    unsent = await enqueue_notification(db_session, 7, confirmation(3), clock=clock)
    for job in (old, recent):
        await send_notification(db_session, job, channel, clock)
        await mark_read(db_session, job, clock)

    old.created_at = NOW - timedelta(days=40)
    recent.created_at = NOW - timedelta(days=5)
    unsent.created_at = NOW - timedelta(days=40)
    await db_session.flush()

    assert await purge_old(db_session, clock) == 1

    remaining = await list_user_notifications(db_session, 7)
    assert {job.id for job in remaining} == {recent.id, unsent.id}
