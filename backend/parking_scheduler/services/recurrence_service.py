"""
Recurring reservations.

A rule describes a daily time window (start_time + duration_minutes in the
scheduling timezone) repeated on a calendar pattern. The recurrence tick
materializes one occurrence per due rule per run: it books the window on
`next_occurrence`, records the outcome in the rule's history, and moves
`next_occurrence` along the pattern whether or not the booking succeeded.

PATTERNS
========
  DAILY      every `repeat_interval` days
  WEEKLY     every `repeat_interval` weeks
  MONTHLY    every `repeat_interval` months, counted from start_date, so a
             rule starting on the 31st lands on the last day of shorter
             months and returns to the 31st afterwards
  WEEKDAYS   Monday to Friday
  WEEKENDS   Saturday and Sunday
  CUSTOM     the listed `days_of_week` in every `repeat_interval`-th week
             (weeks counted from the week of start_date); without
             days_of_week, every `repeat_interval` days

Weekdays use Python numbering: Monday=0 .. Sunday=6.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Sequence

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from parking_scheduler.core.clock import Clock, local_zone, system_clock
from parking_scheduler.core.errors import InvalidStateTransition, NotFoundError, ValidationError
from parking_scheduler.core.logging import get_logger
from parking_scheduler.models.recurrence import RecurrencePattern, RecurrenceRule, RecurrenceStatus
from parking_scheduler.models.reservation import Reservation
from parking_scheduler.schemas.notification import RecurrenceCreated, RecurrenceFailed
from parking_scheduler.schemas.recurrence import RecurrenceRuleCreate, RecurrenceRuleUpdate
from parking_scheduler.schemas.reservation import ReservationCreate, VehicleInfo
from parking_scheduler.services.availability_service import Conflict, load_parking_lot
from parking_scheduler.services.notification_service import enqueue_notification
from parking_scheduler.services.reservation_service import create_reservation

logger = get_logger(__name__)

WEEKDAYS = frozenset(range(0, 5))
WEEKENDS = frozenset({5, 6})
CLOSED_STATUSES = (RecurrenceStatus.CANCELLED.value, RecurrenceStatus.COMPLETED.value)


@dataclass
class Materialization:
    occurrence_date: date
    reservation: Optional[Reservation] = None
    failure_reason: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.reservation is not None


def _week_index(day: date, anchor: date) -> int:
    anchor_monday = anchor - timedelta(days=anchor.weekday())
    return (day - anchor_monday).days // 7


def matches_pattern(
    pattern: str,
    day: date,
    interval: int = 1,
    days_of_week: Optional[Sequence[int]] = None,
    anchor: Optional[date] = None,
) -> bool:
    """Day filter for the day-stepping patterns. Other patterns match any day."""
    if pattern == RecurrencePattern.WEEKDAYS.value:
        return day.weekday() in WEEKDAYS
    if pattern == RecurrencePattern.WEEKENDS.value:
        return day.weekday() in WEEKENDS
    if pattern == RecurrencePattern.CUSTOM.value and days_of_week:
        if day.weekday() not in days_of_week:
            return False
        return _week_index(day, anchor or day) % interval == 0
    return True


def compute_next_occurrence(
    pattern: str,
    current: date,
    interval: int = 1,
    days_of_week: Optional[Sequence[int]] = None,
    anchor: Optional[date] = None,
) -> date:
    """The occurrence date strictly after `current`."""
    pattern = RecurrencePattern(pattern).value

    if pattern == RecurrencePattern.DAILY.value:
        return current + timedelta(days=interval)
    if pattern == RecurrencePattern.WEEKLY.value:
        return current + timedelta(weeks=interval)
    if pattern == RecurrencePattern.MONTHLY.value:
        if anchor is None:
            return current + relativedelta(months=interval)
        step = 1
        candidate = anchor + relativedelta(months=interval)
        while candidate <= current:
            step += 1
            candidate = anchor + relativedelta(months=interval * step)
        return candidate
    if pattern == RecurrencePattern.CUSTOM.value and not days_of_week:
        return current + timedelta(days=interval)

    # Day-stepping patterns: a match always exists within interval weeks
    candidate = current + timedelta(days=1)
    for _ in range(7 * interval + 7):
        if matches_pattern(pattern, candidate, interval, days_of_week, anchor):
            return candidate
        candidate += timedelta(days=1)
    raise ValidationError(f"Pattern '{pattern}' never matches with days_of_week={days_of_week}")


def first_occurrence(
    pattern: str,
    start_date: date,
    interval: int = 1,
    days_of_week: Optional[Sequence[int]] = None,
) -> date:
    """First date on or after start_date that the pattern accepts."""
    if matches_pattern(pattern, start_date, interval, days_of_week, start_date):
        return start_date
    return compute_next_occurrence(pattern, start_date, interval, days_of_week, start_date)


def next_occurrence(rule: RecurrenceRule) -> date:
    return compute_next_occurrence(
        rule.pattern, rule.next_occurrence, rule.repeat_interval, rule.days_of_week, rule.start_date
    )


def is_completed(rule: RecurrenceRule, today: date) -> bool:
    if rule.status == RecurrenceStatus.COMPLETED.value:
        return True
    if rule.max_occurrences is not None and rule.occurrence_count >= rule.max_occurrences:
        return True
    if rule.end_date is not None and (today > rule.end_date or rule.next_occurrence > rule.end_date):
        return True
    return False


def is_due(rule: RecurrenceRule, today: date) -> bool:
    return (
        rule.status == RecurrenceStatus.ACTIVE.value
        and not is_completed(rule, today)
        and today >= rule.next_occurrence
    )


def occurrence_window(rule: RecurrenceRule, day: date) -> tuple[datetime, datetime]:
    """Concrete UTC interval for the rule's window on `day`."""
    start = datetime.combine(day, rule.start_time, tzinfo=local_zone())
    end = start + timedelta(minutes=rule.duration_minutes)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def _validate_days(pattern: str, days_of_week: Optional[Sequence[int]]) -> Optional[list[int]]:
    if not days_of_week:
        return None
    if pattern != RecurrencePattern.CUSTOM.value:
        raise ValidationError("days_of_week only applies to the custom pattern")
    if any(d < 0 or d > 6 for d in days_of_week):
        raise ValidationError("days_of_week values must be between 0 (Monday) and 6 (Sunday)")
    return sorted(set(days_of_week))


async def create_rule(
    db: AsyncSession,
    rule_data: RecurrenceRuleCreate,
    user_id: int,
    clock: Clock = system_clock,
) -> RecurrenceRule:
    today = clock.today()
    if rule_data.start_date < today:
        raise ValidationError("start_date cannot be in the past")
    if rule_data.end_date is not None and rule_data.end_date <= rule_data.start_date:
        raise ValidationError("end_date must be after start_date")

    pattern = rule_data.pattern.value
    days_of_week = _validate_days(pattern, rule_data.days_of_week)
    lot = await load_parking_lot(db, rule_data.resource_id)
    if not lot.is_active:
        raise ValidationError(f"Parking lot {lot.id} is not accepting reservations")

    first = first_occurrence(pattern, rule_data.start_date, rule_data.interval, days_of_week)
    if rule_data.end_date is not None and first > rule_data.end_date:
        raise ValidationError("The pattern has no occurrence before end_date")

    vehicle_info = rule_data.vehicle_info
    rule = RecurrenceRule(
        user_id=user_id,
        resource_id=lot.id,
        pattern=pattern,
        status=RecurrenceStatus.ACTIVE.value,
        repeat_interval=rule_data.interval,
        days_of_week=days_of_week,
        start_time=rule_data.start_time,
        duration_minutes=rule_data.duration_minutes,
        start_date=rule_data.start_date,
        end_date=rule_data.end_date,
        max_occurrences=rule_data.max_occurrences,
        occurrence_count=0,
        next_occurrence=first,
        vehicle_info=vehicle_info.model_dump() if vehicle_info else None,
        special_requests=rule_data.special_requests,
        occurrence_history=[],
        failure_history=[],
    )
    db.add(rule)
    await db.flush()
    await db.refresh(rule)

    logger.info(
        "recurrence_rule_created",
        recurrence_rule_id=rule.id,
        user_id=user_id,
        resource_id=lot.id,
        pattern=pattern,
        next_occurrence=first.isoformat(),
    )
    return rule


async def get_rule(
    db: AsyncSession,
    rule_id: int,
    user_id: Optional[int] = None,
) -> RecurrenceRule:
    query = (
        select(RecurrenceRule)
        .where(RecurrenceRule.id == rule_id)
        .execution_options(populate_existing=True)
    )
    if user_id is not None:
        query = query.where(RecurrenceRule.user_id == user_id)
    result = await db.execute(query)
    rule = result.scalar_one_or_none()
    if not rule:
        raise NotFoundError("Recurrence rule not found")
    return rule


async def list_user_rules(db: AsyncSession, user_id: int) -> list[RecurrenceRule]:
    result = await db.execute(
        select(RecurrenceRule)
        .where(RecurrenceRule.user_id == user_id)
        .order_by(RecurrenceRule.created_at.desc())
    )
    return list(result.scalars().all())


async def update_rule(
    db: AsyncSession,
    rule: RecurrenceRule,
    rule_data: RecurrenceRuleUpdate,
) -> RecurrenceRule:
    if rule.status in CLOSED_STATUSES:
        raise InvalidStateTransition("recurrence rule", rule.status, "update")

    changes = rule_data.model_dump(exclude_unset=True)
    for field in ("start_time", "duration_minutes"):
        if field in changes and changes[field] is None:
            raise ValidationError(f"{field} cannot be cleared")
    if "end_date" in changes and changes["end_date"] is not None and changes["end_date"] <= rule.start_date:
        raise ValidationError("end_date must be after start_date")
    if "max_occurrences" in changes and changes["max_occurrences"] is not None:
        if changes["max_occurrences"] < rule.occurrence_count:
            raise ValidationError("max_occurrences cannot be below the occurrences already created")

    for field, value in changes.items():
        setattr(rule, field, value)
    await db.flush()

    logger.info("recurrence_rule_updated", recurrence_rule_id=rule.id, fields=sorted(changes))
    return rule


def _advance(rule: RecurrenceRule, today: date) -> None:
    rule.next_occurrence = next_occurrence(rule)
    if is_completed(rule, today):
        rule.status = RecurrenceStatus.COMPLETED.value
        logger.info("recurrence_rule_completed", recurrence_rule_id=rule.id, occurrences=rule.occurrence_count)


async def materialize(
    db: AsyncSession,
    rule: RecurrenceRule,
    clock: Clock = system_clock,
) -> Materialization:
    """Book the rule's next occurrence and move the rule forward."""
    today, now = clock.today(), clock.now()
    if not is_due(rule, today):
        raise InvalidStateTransition("recurrence rule", rule.status, "materialize", reason="not due")

    occurrence_date = rule.next_occurrence
    start, end = occurrence_window(rule, occurrence_date)
    lot = await load_parking_lot(db, rule.resource_id)

    try:
        outcome = await create_reservation(
            db,
            ReservationCreate(
                resource_id=rule.resource_id,
                start_time=start,
                end_time=end,
                vehicle_info=VehicleInfo(**rule.vehicle_info) if rule.vehicle_info else None,
                special_requests=rule.special_requests,
            ),
            rule.user_id,
            clock=clock,
            recurrence_rule_id=rule.id,
        )
    except ValidationError as e:
        outcome = e

    if isinstance(outcome, Reservation):
        rule.occurrence_history = [
            *(rule.occurrence_history or []),
            {
                "date": occurrence_date.isoformat(),
                "reservation_id": outcome.id,
                "status": "created",
                "created_at": now.isoformat(),
            },
        ]
        rule.occurrence_count += 1
        rule.last_occurrence_at = now
        result = Materialization(occurrence_date, reservation=outcome)
        payload = RecurrenceCreated(
            recurrence_rule_id=rule.id,
            reservation_id=outcome.id,
            lot_name=lot.name,
            occurrence_date=occurrence_date,
        )
    else:
        reason = outcome.reason if isinstance(outcome, Conflict) else outcome.detail
        rule.failure_history = [
            *(rule.failure_history or []),
            {"date": occurrence_date.isoformat(), "reason": reason, "recorded_at": now.isoformat()},
        ]
        result = Materialization(occurrence_date, failure_reason=reason)
        payload = RecurrenceFailed(
            recurrence_rule_id=rule.id,
            lot_name=lot.name,
            occurrence_date=occurrence_date,
            reason=reason,
        )

    _advance(rule, today)
    await db.flush()
    await enqueue_notification(db, rule.user_id, payload, clock=clock)

    logger.info(
        "recurrence_materialized",
        recurrence_rule_id=rule.id,
        occurrence_date=occurrence_date.isoformat(),
        created=result.created,
        reason=result.failure_reason,
        next_occurrence=rule.next_occurrence.isoformat(),
    )
    return result


async def pause_rule(
    db: AsyncSession,
    rule: RecurrenceRule,
    reason: Optional[str] = None,
    clock: Clock = system_clock,
) -> RecurrenceRule:
    if rule.status != RecurrenceStatus.ACTIVE.value:
        raise InvalidStateTransition("recurrence rule", rule.status, "pause")
    rule.status = RecurrenceStatus.PAUSED.value
    rule.paused_at = clock.now()
    rule.pause_reason = reason
    await db.flush()
    logger.info("recurrence_rule_paused", recurrence_rule_id=rule.id, reason=reason)
    return rule


async def resume_rule(
    db: AsyncSession,
    rule: RecurrenceRule,
    clock: Clock = system_clock,
) -> RecurrenceRule:
    """
    Reactivate a paused rule. Occurrences missed while paused are dropped:
    next_occurrence becomes max(next_occurrence, today), moved forward to
    the first date the day filter accepts for the day-filtered patterns.
    """
    if rule.status != RecurrenceStatus.PAUSED.value:
        raise InvalidStateTransition("recurrence rule", rule.status, "resume")

    today = clock.today()
    if rule.next_occurrence < today:
        rule.next_occurrence = today
        if not matches_pattern(
            rule.pattern, today, rule.repeat_interval, rule.days_of_week, rule.start_date
        ):
            rule.next_occurrence = next_occurrence(rule)

    rule.status = RecurrenceStatus.ACTIVE.value
    rule.paused_at = None
    rule.pause_reason = None
    if is_completed(rule, today):
        rule.status = RecurrenceStatus.COMPLETED.value
    await db.flush()

    logger.info(
        "recurrence_rule_resumed",
        recurrence_rule_id=rule.id,
        status=rule.status,
        next_occurrence=rule.next_occurrence.isoformat(),
    )
    return rule


async def cancel_rule(db: AsyncSession, rule: RecurrenceRule) -> RecurrenceRule:
    if rule.status in CLOSED_STATUSES:
        raise InvalidStateTransition("recurrence rule", rule.status, "cancel")
    rule.status = RecurrenceStatus.CANCELLED.value
    await db.flush()
    logger.info("recurrence_rule_cancelled", recurrence_rule_id=rule.id)
    return rule


async def complete_rule(db: AsyncSession, rule: RecurrenceRule) -> RecurrenceRule:
    if rule.status in CLOSED_STATUSES:
        raise InvalidStateTransition("recurrence rule", rule.status, "complete")
    rule.status = RecurrenceStatus.COMPLETED.value
    await db.flush()
    logger.info("recurrence_rule_completed", recurrence_rule_id=rule.id, occurrences=rule.occurrence_count)
    return rule


async def due_rule_ids(db: AsyncSession, today: date) -> list[int]:
    result = await db.execute(
        select(RecurrenceRule.id)
        .where(
            RecurrenceRule.status == RecurrenceStatus.ACTIVE.value,
            RecurrenceRule.next_occurrence <= today,
        )
        .order_by(RecurrenceRule.next_occurrence.asc(), RecurrenceRule.id.asc())
    )
    return list(result.scalars().all())
