"""
Scheduler orchestrator: the periodic jobs that keep reservations moving.

TICKS
=====
  recurrence   hourly        materialize due recurrence rules
  waitlist     every 5 min   expire lapsed entries, offer freed spaces
  reminder     every 15 min  remind CONFIRMED reservations starting soon
  dispatch     every minute  requeue due retries, deliver PENDING notifications
  cleanup      daily 02:00   expire waitlist entries, mark no-shows,
                             expire and purge notifications

Cadences come from the *_CRON settings and run in TIMEZONE.

FAILURE ISOLATION
=================
A tick first collects the ids it has to work on, then handles each id in
its own session and transaction. An item that raises is logged and
counted as failed; the rest of the batch continues. A store outage
(OperationalError / InterfaceError) ends the batch early, since every
following item would fail the same way. Whatever was skipped is picked up
by the next run: every handler re-checks state (is_due, status, sent
markers) before acting, so re-running a tick is safe.

Each job runs with max_instances=1 and coalesce=True, so a slow tick is
never overlapped by itself and missed runs collapse into one.
"""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from parking_scheduler.core.clock import Clock, local_zone, system_clock
from parking_scheduler.core.config import get_settings
from parking_scheduler.core.logging import get_logger
from parking_scheduler.core.metrics import record_tick
from parking_scheduler.models.notification import NotificationStatus
from parking_scheduler.models.recurrence import RecurrenceStatus
from parking_scheduler.models.reservation import ReservationStatus
from parking_scheduler.services import (
    notification_service,
    recurrence_service,
    reservation_service,
    waitlist_service,
)
from parking_scheduler.services.cache_service import invalidate_availability_cache
from parking_scheduler.services.interfaces.channel import NotificationChannel

logger = get_logger(__name__)
settings = get_settings()

STORE_UNAVAILABLE = (OperationalError, InterfaceError)


@dataclass
class ItemResult:
    outcome: str
    count: int = 1
    resource_id: Optional[int] = None


@dataclass
class TickReport:
    tick: str
    processed: int = 0
    failed: int = 0
    aborted: bool = False
    stopped: bool = False
    outcomes: Counter = field(default_factory=Counter)
    duration_seconds: float = 0.0

    def merge(self, other: "TickReport") -> None:
        self.processed += other.processed
        self.failed += other.failed
        self.aborted = self.aborted or other.aborted
        self.stopped = self.stopped or other.stopped
        self.outcomes.update(other.outcomes)

    def as_dict(self) -> dict:
        return {
            "tick": self.tick,
            "processed": self.processed,
            "failed": self.failed,
            "aborted": self.aborted,
            "stopped": self.stopped,
            "outcomes": dict(self.outcomes),
            "duration_seconds": round(self.duration_seconds, 4),
        }


Handler = Callable[[AsyncSession, int], Awaitable[ItemResult]]


class Orchestrator:
    """
    Owns the APScheduler instance and the tick implementations.

    Ticks can also be run by hand through the trigger_* methods, which
    return the TickReport of that run.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        channel: NotificationChannel,
        clock: Clock = system_clock,
    ):
        self._session_factory = session_factory
        self._channel = channel
        self._clock = clock
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._stop_requested = False
        self._inflight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _schedule(self) -> list[tuple[str, str, Callable[[], Awaitable[TickReport]]]]:
        return [
            ("recurrence", settings.RECURRENCE_CRON, self.trigger_recurrence_tick),
            ("waitlist", settings.WAITLIST_CRON, self.trigger_waitlist_tick),
            ("reminder", settings.REMINDER_CRON, self.trigger_reminder_tick),
            ("dispatch", settings.DISPATCH_CRON, self.trigger_notification_dispatch),
            ("cleanup", settings.CLEANUP_CRON, self.trigger_cleanup),
        ]

    def start(self) -> None:
        """Register every tick on its cron schedule and start the scheduler. Needs a running loop."""
        if self.running:
            logger.warning("scheduler_already_running")
            return

        zone = local_zone()
        scheduler = AsyncIOScheduler(timezone=zone)
        for name, cron, tick in self._schedule():
            scheduler.add_job(
                self._run_scheduled,
                CronTrigger.from_crontab(cron, timezone=zone),
                args=[tick],
                id=name,
                name=name,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=60,
                replace_existing=True,
            )
        self._stop_requested = False
        scheduler.start()
        self._scheduler = scheduler
        logger.info("scheduler_started", jobs=[name for name, _, _ in self._schedule()])

    async def stop(self) -> None:
        """Stop scheduling new ticks and wait for running ones to reach a safe point."""
        self._stop_requested = True
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        if self._inflight:
            logger.info("scheduler_draining", inflight=len(self._inflight))
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._stop_requested = False
        logger.info("scheduler_stopped")

    async def _run_scheduled(self, tick: Callable[[], Awaitable[TickReport]]) -> None:
        task = asyncio.current_task()
        self._inflight.add(task)
        try:
            await tick()
        finally:
            self._inflight.discard(task)

    async def _ids(self, loader: Callable[[AsyncSession], Awaitable[list[int]]]) -> list[int]:
        async with self._session_factory() as db:
            return await loader(db)

    async def _bulk(self, step: Callable[[AsyncSession], Awaitable[int]]) -> int:
        async with self._session_factory() as db:
            async with db.begin():
                return await step(db)

    async def _run_batch(self, tick: str, ids: list[int], handler: Handler) -> TickReport:
        report = TickReport(tick=tick)
        for position, item_id in enumerate(ids):
            if self._stop_requested:
                report.stopped = True
                logger.info("tick_stop_requested", remaining=len(ids) - position)
                break
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        result = await handler(db, item_id)
            except STORE_UNAVAILABLE as e:
                report.aborted = True
                report.failed += 1
                logger.error("tick_store_unavailable", item_id=item_id, error=str(e))
                break
            except Exception as e:
                report.failed += 1
                logger.error("tick_item_failed", item_id=item_id, error=str(e), exc_info=True)
                continue

            report.processed += 1
            report.outcomes[result.outcome] += result.count
            if result.resource_id is not None:
                await invalidate_availability_cache(result.resource_id)
        return report

    async def _timed(self, tick: str, body: Callable[[TickReport], Awaitable[None]]) -> TickReport:
        report = TickReport(tick=tick)
        started = time.perf_counter()
        with structlog.contextvars.bound_contextvars(tick=tick):
            try:
                await body(report)
            except STORE_UNAVAILABLE as e:
                report.aborted = True
                logger.error("tick_store_unavailable", error=str(e))
            report.duration_seconds = time.perf_counter() - started
            record_tick(tick, "aborted" if report.aborted else "completed", report.duration_seconds)
            logger.info("tick_completed", **report.as_dict())
        return report

    # Recurrence

    async def _materialize_rule(self, db: AsyncSession, rule_id: int) -> ItemResult:
        rule = await recurrence_service.get_rule(db, rule_id)
        today = self._clock.today()
        if rule.status == RecurrenceStatus.ACTIVE.value and recurrence_service.is_completed(rule, today):
            await recurrence_service.complete_rule(db, rule)
            return ItemResult("completed")
        if not recurrence_service.is_due(rule, today):
            return ItemResult("skipped")

        result = await recurrence_service.materialize(db, rule, self._clock)
        if result.created:
            return ItemResult("created", resource_id=rule.resource_id)
        return ItemResult("occurrence_failed")

    async def trigger_recurrence_tick(self) -> TickReport:
        async def body(report: TickReport) -> None:
            today = self._clock.today()
            ids = await self._ids(lambda db: recurrence_service.due_rule_ids(db, today))
            report.merge(await self._run_batch("recurrence", ids, self._materialize_rule))

        return await self._timed("recurrence", body)

    # Waitlist

    async def _promote_lot(self, db: AsyncSession, resource_id: int) -> ItemResult:
        promoted = await waitlist_service.promote_waiting(db, resource_id, self._clock)
        return ItemResult("promoted", count=promoted)

    async def trigger_waitlist_tick(self) -> TickReport:
        async def body(report: TickReport) -> None:
            ids = await self._ids(waitlist_service.lots_with_open_entries)
            report.merge(await self._run_batch("waitlist", ids, self._promote_lot))

        return await self._timed("waitlist", body)

    # Reminders

    async def _remind(self, db: AsyncSession, reservation_id: int) -> ItemResult:
        reservation = await reservation_service.get_reservation(db, reservation_id)
        if reservation.status != ReservationStatus.CONFIRMED.value:
            return ItemResult("skipped")
        sent = await reservation_service.send_reminder(db, reservation, self._clock)
        return ItemResult("reminded" if sent else "skipped")

    async def trigger_reminder_tick(self) -> TickReport:
        async def body(report: TickReport) -> None:
            ids = await self._ids(
                lambda db: reservation_service.reminder_candidate_ids(db, self._clock)
            )
            report.merge(await self._run_batch("reminder", ids, self._remind))

        return await self._timed("reminder", body)

    # Notification dispatch

    async def _send(self, db: AsyncSession, notification_id: int) -> ItemResult:
        job = await notification_service.get_notification(db, notification_id)
        if job.status != NotificationStatus.PENDING.value:
            return ItemResult("skipped")
        await notification_service.send_notification(db, job, self._channel, self._clock)
        return ItemResult(job.status)

    async def trigger_notification_dispatch(self) -> TickReport:
        async def body(report: TickReport) -> None:
            report.outcomes["requeued"] += await self._bulk(
                lambda db: notification_service.retry_due(db, self._clock)
            )
            report.outcomes["expired"] += await self._bulk(
                lambda db: notification_service.expire_stale(db, self._clock)
            )
            ids = await self._ids(
                lambda db: notification_service.due_notification_ids(db, self._clock)
            )
            report.merge(await self._run_batch("dispatch", ids, self._send))

        return await self._timed("dispatch", body)

    # Cleanup

    async def _expire_lot_entries(self, db: AsyncSession, resource_id: int) -> ItemResult:
        expired = await waitlist_service.expire_lapsed(db, resource_id, self._clock)
        return ItemResult("waitlist_expired", count=expired)

    async def _no_show(self, db: AsyncSession, reservation_id: int) -> ItemResult:
        reservation = await reservation_service.get_reservation(db, reservation_id)
        if reservation.status != ReservationStatus.CONFIRMED.value or reservation.check_in_time is not None:
            return ItemResult("skipped")
        await reservation_service.mark_no_show(db, reservation, self._clock)
        return ItemResult("no_show", resource_id=reservation.resource_id)

    async def trigger_cleanup(self) -> TickReport:
        async def body(report: TickReport) -> None:
            lots = await self._ids(waitlist_service.lots_with_open_entries)
            report.merge(await self._run_batch("cleanup", lots, self._expire_lot_entries))
            if report.aborted or report.stopped:
                return

            no_shows = await self._ids(
                lambda db: reservation_service.no_show_candidate_ids(db, self._clock)
            )
            report.merge(await self._run_batch("cleanup", no_shows, self._no_show))
            if report.aborted or report.stopped:
                return

            report.outcomes["notifications_expired"] += await self._bulk(
                lambda db: notification_service.expire_stale(db, self._clock)
            )
            report.outcomes["notifications_purged"] += await self._bulk(
                lambda db: notification_service.purge_old(db, self._clock)
            )

        return await self._timed("cleanup", body)
