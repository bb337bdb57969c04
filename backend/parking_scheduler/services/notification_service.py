"""
Notification engine: enqueue, render, deliver with retry.

LIFECYCLE
=========
  PENDING --send ok--> SENT --> DELIVERED --> READ
  PENDING --send fails--> FAILED --retry_due--> PENDING
  PENDING --expires_at passed--> FAILED (reason "expired")

RETRY POLICY
============
Each failed send that still has budget increments retry_count and sets
next_retry_at = now + 5^retry_count minutes (5, 25, 125 with the default
budget of 3). Once retry_count == max_retries the next failure is final:
the job stays FAILED with next_retry_at cleared, so retry_due never picks
it up again. retry_count therefore never exceeds max_retries.

Sends are bounded by NOTIFICATION_SEND_TIMEOUT. A timeout counts as a
failure. The job id travels with the message so a channel that did
receive a timed-out message can drop the retried duplicate.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from parking_scheduler.core.clock import Clock, local_zone, system_clock
from parking_scheduler.core.config import get_settings
from parking_scheduler.core.errors import ExternalChannelError, InvalidStateTransition, NotFoundError
from parking_scheduler.core.logging import get_logger
from parking_scheduler.core.metrics import record_notification_send
from parking_scheduler.models.notification import (
    NotificationChannelKind,
    NotificationJob,
    NotificationStatus,
)
from parking_scheduler.schemas.notification import NotificationPayload
from parking_scheduler.services.interfaces.channel import NotificationChannel

logger = get_logger(__name__)
settings = get_settings()

BACKOFF_BASE_MINUTES = 5


def _local(value: datetime) -> str:
    return value.astimezone(local_zone()).strftime("%Y-%m-%d %H:%M")


def render(payload: NotificationPayload) -> tuple[str, str]:
    """Title and message body for a payload variant."""
    kind = payload.kind
    if kind == "booking_confirmation":
        return (
            "Booking Confirmed",
            f"Your parking at {payload.lot_name} (space {payload.unit_number}) is confirmed "
            f"for {_local(payload.start_time)}. Reference: {payload.reference}",
        )
    if kind == "booking_reminder":
        return (
            "Parking Reminder",
            f"Your parking at {payload.lot_name} starts at {_local(payload.start_time)}. "
            f"Reference: {payload.reference}",
        )
    if kind == "booking_cancellation":
        return (
            "Booking Cancelled",
            f"Booking {payload.reference} was cancelled. "
            f"Refund: {payload.refund_amount} {payload.currency}",
        )
    if kind == "waitlist_joined":
        return (
            "Joined Waitlist",
            f"You are number {payload.position} on the waitlist for {payload.lot_name}.",
        )
    if kind == "waitlist_available":
        return (
            "Parking Available",
            f"A space opened up at {payload.lot_name}. "
            f"Book before {_local(payload.available_until)} to keep it.",
        )
    if kind == "waitlist_position_update":
        return (
            "Waitlist Update",
            f"You are now number {payload.position} on the waitlist for {payload.lot_name}.",
        )
    if kind == "recurrence_created":
        return (
            "Recurring Booking Created",
            f"Your recurring parking at {payload.lot_name} for "
            f"{payload.occurrence_date.isoformat()} has been booked.",
        )
    if kind == "recurrence_failed":
        return (
            "Recurring Booking Failed",
            f"We could not book {payload.lot_name} for {payload.occurrence_date.isoformat()}: "
            f"{payload.reason}",
        )
    raise ValueError(f"Unknown notification kind: {kind}")


async def enqueue_notification(
    db: AsyncSession,
    user_id: int,
    payload: NotificationPayload,
    clock: Clock = system_clock,
    channel: NotificationChannelKind = NotificationChannelKind.PUSH,
    scheduled_for: Optional[datetime] = None,
    expires_at: Optional[datetime] = None,
    max_retries: Optional[int] = None,
) -> NotificationJob:
    """Persist a PENDING job. Delivery happens on the next dispatch tick."""
    title, message = render(payload)
    job = NotificationJob(
        user_id=user_id,
        kind=payload.kind,
        channel=channel.value,
        status=NotificationStatus.PENDING.value,
        title=title,
        message=message,
        payload=payload.model_dump(mode="json"),
        scheduled_for=scheduled_for or clock.now(),
        expires_at=expires_at,
        retry_count=0,
        max_retries=settings.NOTIFICATION_MAX_RETRIES if max_retries is None else max_retries,
    )
    db.add(job)
    await db.flush()

    logger.info("notification_enqueued", notification_id=job.id, user_id=user_id, kind=job.kind)
    return job


def _record_failure(job: NotificationJob, reason: str, now: datetime) -> None:
    job.status = NotificationStatus.FAILED.value
    job.failure_reason = reason
    if job.retry_count < job.max_retries:
        job.retry_count += 1
        job.next_retry_at = now + timedelta(minutes=BACKOFF_BASE_MINUTES ** job.retry_count)
    else:
        job.next_retry_at = None


def _is_expired(job: NotificationJob, now: datetime) -> bool:
    return job.expires_at is not None and job.expires_at <= now


async def send_notification(
    db: AsyncSession,
    job: NotificationJob,
    channel: NotificationChannel,
    clock: Clock = system_clock,
) -> NotificationJob:
    """
    Attempt delivery of one PENDING job.
    Channel failures are recorded on the job, never raised.
    """
    if job.status != NotificationStatus.PENDING.value:
        raise InvalidStateTransition("notification", job.status, "send")

    now = clock.now()
    if _is_expired(job, now):
        job.status = NotificationStatus.FAILED.value
        job.failure_reason = "expired"
        job.next_retry_at = None
        await db.flush()
        record_notification_send("expired")
        logger.info("notification_expired", notification_id=job.id)
        return job

    message = {
        "id": job.id,
        "user_id": job.user_id,
        "channel": job.channel,
        "kind": job.kind,
        "title": job.title,
        "message": job.message,
        "payload": job.payload,
    }

    try:
        accepted = await asyncio.wait_for(
            channel.send(message), timeout=settings.NOTIFICATION_SEND_TIMEOUT
        )
        failure = None if accepted else "rejected by channel"
    except asyncio.TimeoutError:
        failure = "send timed out"
    except ExternalChannelError as e:
        failure = e.detail

    if failure is None:
        job.status = NotificationStatus.SENT.value
        job.sent_at = now
        job.failure_reason = None
        job.next_retry_at = None
        record_notification_send("sent")
        logger.info("notification_sent", notification_id=job.id, user_id=job.user_id, kind=job.kind)
    else:
        _record_failure(job, failure, now)
        record_notification_send("failed")
        logger.warning(
            "notification_send_failed",
            notification_id=job.id,
            retry_count=job.retry_count,
            next_retry_at=job.next_retry_at,
            reason=failure,
        )

    await db.flush()
    return job


async def retry_due(db: AsyncSession, clock: Clock = system_clock) -> int:
    """Move FAILED jobs whose backoff has elapsed back to PENDING."""
    result = await db.execute(
        update(NotificationJob)
        .where(
            NotificationJob.status == NotificationStatus.FAILED.value,
            NotificationJob.next_retry_at.is_not(None),
            NotificationJob.next_retry_at <= clock.now(),
        )
        .values(
            status=NotificationStatus.PENDING.value,
            next_retry_at=None,
            failure_reason=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("notifications_requeued", count=result.rowcount)
    return result.rowcount


async def expire_stale(db: AsyncSession, clock: Clock = system_clock) -> int:
    """Fail PENDING jobs whose expires_at has passed."""
    result = await db.execute(
        update(NotificationJob)
        .where(
            NotificationJob.status == NotificationStatus.PENDING.value,
            NotificationJob.expires_at.is_not(None),
            NotificationJob.expires_at <= clock.now(),
        )
        .values(
            status=NotificationStatus.FAILED.value,
            failure_reason="expired",
            next_retry_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        record_notification_send("expired", result.rowcount)
        logger.info("notifications_expired", count=result.rowcount)
    return result.rowcount


async def due_notification_ids(
    db: AsyncSession,
    clock: Clock = system_clock,
    limit: Optional[int] = None,
) -> list[int]:
    """PENDING jobs whose scheduled time has come, oldest first."""
    now = clock.now()
    result = await db.execute(
        select(NotificationJob.id)
        .where(
            NotificationJob.status == NotificationStatus.PENDING.value,
            or_(NotificationJob.scheduled_for.is_(None), NotificationJob.scheduled_for <= now),
        )
        .order_by(NotificationJob.scheduled_for.asc(), NotificationJob.id.asc())
        .limit(limit or settings.NOTIFICATION_BATCH_SIZE)
    )
    return list(result.scalars().all())


async def dispatch_pending(
    db: AsyncSession,
    channel: NotificationChannel,
    clock: Clock = system_clock,
    limit: Optional[int] = None,
) -> dict[str, int]:
    """
    One delivery pass inside a single session: requeue due retries,
    expire stale jobs, then send what is due.
    """
    counts = {"requeued": await retry_due(db, clock), "expired": await expire_stale(db, clock)}
    counts["sent"] = counts["failed"] = 0

    for job_id in await due_notification_ids(db, clock, limit):
        job = await get_notification(db, job_id)
        await send_notification(db, job, channel, clock)
        key = "sent" if job.status == NotificationStatus.SENT.value else "failed"
        counts[key] += 1

    return counts


async def get_notification(
    db: AsyncSession,
    notification_id: int,
    user_id: Optional[int] = None,
) -> NotificationJob:
    query = (
        select(NotificationJob)
        .where(NotificationJob.id == notification_id)
        .execution_options(populate_existing=True)
    )
    if user_id is not None:
        query = query.where(NotificationJob.user_id == user_id)
    result = await db.execute(query)
    job = result.scalar_one_or_none()
    if not job:
        raise NotFoundError(f"Notification {notification_id} not found")
    return job


async def list_user_notifications(
    db: AsyncSession,
    user_id: int,
    unread_only: bool = False,
    limit: int = 50,
) -> list[NotificationJob]:
    query = select(NotificationJob).where(NotificationJob.user_id == user_id)
    if unread_only:
        query = query.where(NotificationJob.read_at.is_(None))
    result = await db.execute(
        query.order_by(NotificationJob.created_at.desc(), NotificationJob.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def mark_delivered(
    db: AsyncSession, job: NotificationJob, clock: Clock = system_clock
) -> NotificationJob:
    if job.status != NotificationStatus.SENT.value:
        raise InvalidStateTransition("notification", job.status, "mark delivered")
    job.status = NotificationStatus.DELIVERED.value
    job.delivered_at = clock.now()
    await db.flush()
    return job


async def mark_read(
    db: AsyncSession, job: NotificationJob, clock: Clock = system_clock
) -> NotificationJob:
    if job.status == NotificationStatus.READ.value:
        return job
    if job.status not in (NotificationStatus.SENT.value, NotificationStatus.DELIVERED.value):
        raise InvalidStateTransition("notification", job.status, "mark read")
    now = clock.now()
    if job.delivered_at is None:
        job.delivered_at = now
    job.status = NotificationStatus.READ.value
    job.read_at = now
    await db.flush()
    return job


async def purge_old(db: AsyncSession, clock: Clock = system_clock, days: Optional[int] = None) -> int:
    """Delete READ and DELIVERED jobs older than the retention window."""
    cutoff = clock.now() - timedelta(days=days or settings.NOTIFICATION_RETENTION_DAYS)
    result = await db.execute(
        delete(NotificationJob)
        .where(
            NotificationJob.status.in_(
                (NotificationStatus.READ.value, NotificationStatus.DELIVERED.value)
            ),
            NotificationJob.created_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("notifications_purged", count=result.rowcount, cutoff=cutoff.isoformat())
    return result.rowcount
