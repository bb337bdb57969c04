"""
Interval conflict resolution for parking lot capacity.

OVERLAP RULE
============
Reservations occupy half-open intervals [start, end). Two intervals
conflict when `a.start < b.end and b.start < a.end`, so a reservation
ending at 11:00 and one starting at 11:00 never conflict.

Only CONFIRMED and ACTIVE reservations hold a unit:

  available_units = capacity - count(overlapping holding reservations)
  is_available    = available_units >= required_units

The unit handed out is the lowest unit number not held by any overlapping
reservation, so the same request against the same state always gets the
same unit.

CONCURRENCY STRATEGY: Optimistic Locking with Retry
===================================================
Two requests for the last free unit both read "1 available" and would
both insert. `allocate()` guards the read with a compare-and-set on the
lot's `version` column:

  1. Read the lot (fresh) and remember its version
  2. Count overlapping reservations and compute availability
  3. UPDATE parking_lots SET version = version + 1
     WHERE id = :lot_id AND version = :seen_version
  4. rowcount == 0 means another writer changed this lot -> re-read and retry

The UPDATE also holds the row lock until commit, so the second writer
blocks, then fails the version check and re-reads committed state.

Waitlist renumbering uses `lock_parking_lot()` (an unconditional version
bump) to take the same row before reading the queue.

Not being available is a normal outcome: callers get a `Conflict` value
and decide whether to fail, retry or offer the waitlist.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from parking_scheduler.core.config import get_settings
from parking_scheduler.core.errors import NotFoundError, ValidationError
from parking_scheduler.core.logging import get_logger
from parking_scheduler.core.metrics import allocation_retries
from parking_scheduler.models.parking_lot import ParkingLot
from parking_scheduler.models.reservation import HOLDING_STATUSES, Reservation

logger = get_logger(__name__)
settings = get_settings()


@dataclass(frozen=True)
class Availability:
    resource_id: int
    start: datetime
    end: datetime
    capacity: int
    required_units: int
    available_units: int
    occupied_units: frozenset[int]
    free_unit: Optional[int]
    is_available: bool


@dataclass(frozen=True)
class Conflict:
    availability: Availability
    reason: str = "No units available for the requested interval"


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and b_start < a_end


def validate_interval(start: datetime, end: datetime) -> None:
    if start.tzinfo is None or end.tzinfo is None:
        raise ValidationError("Interval bounds must include a timezone offset")
    if start >= end:
        raise ValidationError("Interval start must be before its end")


def compute_availability(
    resource_id: int,
    capacity: int,
    reservations: Iterable,
    start: datetime,
    end: datetime,
    required_units: int = 1,
    exclude_id: Optional[int] = None,
    require_unit: Optional[int] = None,
) -> Availability:
    """
    Pure availability computation over a lot's reservations.

    `reservations` may contain anything with id/status/start_time/end_time/
    unit_number; non-holding and non-overlapping rows are ignored. With
    `require_unit`, the request additionally needs that specific unit free
    (used when extending a reservation in place).
    """
    validate_interval(start, end)
    if required_units <= 0:
        raise ValidationError("required_units must be positive")

    holding = [
        r for r in reservations
        if r.status in HOLDING_STATUSES
        and r.id != exclude_id
        and overlaps(r.start_time, r.end_time, start, end)
    ]
    occupied = frozenset(r.unit_number for r in holding)
    available_units = max(capacity - len(holding), 0)

    if require_unit is not None:
        free_unit = require_unit if require_unit not in occupied else None
    else:
        free_unit = next((n for n in range(1, capacity + 1) if n not in occupied), None)

    is_available = available_units >= required_units and free_unit is not None

    return Availability(
        resource_id=resource_id,
        start=start,
        end=end,
        capacity=capacity,
        required_units=required_units,
        available_units=available_units,
        occupied_units=occupied,
        free_unit=free_unit,
        is_available=is_available,
    )


async def load_parking_lot(db: AsyncSession, resource_id: int, fresh: bool = False) -> ParkingLot:
    query = select(ParkingLot).where(ParkingLot.id == resource_id)
    if fresh:
        # Drop whatever version the identity map holds
        query = query.execution_options(populate_existing=True)
    result = await db.execute(query)
    lot = result.scalar_one_or_none()
    if not lot:
        raise NotFoundError(f"Parking lot {resource_id} not found")
    return lot


async def find_overlapping(
    db: AsyncSession,
    resource_id: int,
    start: datetime,
    end: datetime,
    exclude_id: Optional[int] = None,
) -> list[Reservation]:
    """Holding reservations overlapping [start, end). Uses ix_reservations_resource_start."""
    query = select(Reservation).where(
        Reservation.resource_id == resource_id,
        Reservation.status.in_(HOLDING_STATUSES),
        Reservation.start_time < end,
        Reservation.end_time > start,
    )
    if exclude_id is not None:
        query = query.where(Reservation.id != exclude_id)
    result = await db.execute(query.order_by(Reservation.start_time.asc(), Reservation.id.asc()))
    return list(result.scalars().all())


async def check_availability(
    db: AsyncSession,
    resource_id: int,
    start: datetime,
    end: datetime,
    required_units: int = 1,
    exclude_id: Optional[int] = None,
) -> Availability:
    """Read-only availability for a lot and interval."""
    validate_interval(start, end)
    lot = await load_parking_lot(db, resource_id, fresh=True)
    reservations = await find_overlapping(db, resource_id, start, end, exclude_id)
    return compute_availability(
        lot.id, lot.capacity, reservations, start, end, required_units, exclude_id
    )


async def claim_version(db: AsyncSession, resource_id: int, seen_version: int) -> bool:
    """Compare-and-set the lot version. False means another writer got there first."""
    result = await db.execute(
        update(ParkingLot)
        .where(ParkingLot.id == resource_id, ParkingLot.version == seen_version)
        .values(version=ParkingLot.version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def lock_parking_lot(db: AsyncSession, resource_id: int) -> None:
    """Take the lot row for the rest of the transaction by bumping its version."""
    await db.execute(
        update(ParkingLot)
        .where(ParkingLot.id == resource_id)
        .values(version=ParkingLot.version + 1)
        .execution_options(synchronize_session=False)
    )


async def allocate(
    db: AsyncSession,
    resource_id: int,
    start: datetime,
    end: datetime,
    required_units: int = 1,
    exclude_id: Optional[int] = None,
    require_unit: Optional[int] = None,
) -> Union[Availability, Conflict]:
    """
    Check availability and claim the lot for this transaction.
    Retries up to ALLOCATION_RETRY_ATTEMPTS on version conflicts.
    """
    validate_interval(start, end)
    availability: Optional[Availability] = None

    for attempt in range(1, settings.ALLOCATION_RETRY_ATTEMPTS + 1):
        # Step 1: Read current lot state
        lot = await load_parking_lot(db, resource_id, fresh=True)
        seen_version = lot.version

        # Step 2: Evaluate capacity against fresh reservations
        reservations = await find_overlapping(db, resource_id, start, end, exclude_id)
        availability = compute_availability(
            lot.id, lot.capacity, reservations, start, end,
            required_units, exclude_id, require_unit,
        )
        if not availability.is_available:
            return Conflict(availability)

        # Step 3: Optimistic lock - claim only if nobody changed the lot meanwhile
        if await claim_version(db, resource_id, seen_version):
            return availability

        logger.info(
            "allocation_retry",
            resource_id=resource_id,
            attempt=attempt,
            reason="version_conflict",
        )
        allocation_retries.inc()

    return Conflict(availability, reason="Allocation failed due to high demand. Please try again.")
