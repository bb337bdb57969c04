"""
Reservation endpoints with concurrency-safe unit allocation.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from parking_scheduler.api.deps import conflict_response, get_clock, get_current_user_id
from parking_scheduler.core.clock import Clock
from parking_scheduler.db.session import get_db
from parking_scheduler.schemas.reservation import (
    ConflictResponse,
    PaymentStatusUpdate,
    ReservationCancel,
    ReservationCreate,
    ReservationExtend,
    ReservationResponse,
)
from parking_scheduler.services import reservation_service
from parking_scheduler.services.availability_service import Conflict
from parking_scheduler.services.cache_service import commit_and_invalidate

router = APIRouter(prefix="/reservations", tags=["Reservations"])

CONFLICT_RESPONSES = {status.HTTP_409_CONFLICT: {"model": ConflictResponse}}


@router.post(
    "/",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
    responses=CONFLICT_RESPONSES,
)
async def create_reservation(
    reservation_data: ReservationCreate,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Reserve one unit of a parking lot.

    Uses optimistic locking on the lot to prevent overbooking under
    concurrent load. When no unit is free for the interval the response is
    409 with the current availability; the caller may join the waitlist.
    """
    outcome = await reservation_service.create_reservation(db, reservation_data, user_id, clock)
    if isinstance(outcome, Conflict):
        return conflict_response(outcome)
    await commit_and_invalidate(db, outcome.resource_id)
    return outcome


@router.get("/", response_model=list[ReservationResponse])
async def list_reservations(
    status_filter: Optional[str] = Query(None, alias="status"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Get all reservations of the caller, latest start first."""
    return await reservation_service.list_user_reservations(db, user_id, status_filter)


@router.get("/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(
    reservation_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await reservation_service.get_reservation(db, reservation_id, user_id)


@router.post("/{reservation_id}/cancel", response_model=ReservationResponse)
async def cancel_reservation(
    reservation_id: int,
    cancel_data: ReservationCancel,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Cancel up to the deadline; the refund owed is recorded on the reservation."""
    reservation = await reservation_service.get_reservation(db, reservation_id, user_id)
    reservation = await reservation_service.cancel_reservation(
        db, reservation, cancel_data.reason, cancelled_by="user", clock=clock
    )
    await commit_and_invalidate(db, reservation.resource_id)
    return reservation


@router.post("/{reservation_id}/check-in", response_model=ReservationResponse)
async def check_in(
    reservation_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    reservation = await reservation_service.get_reservation(db, reservation_id, user_id)
    return await reservation_service.check_in(db, reservation, clock)


@router.post("/{reservation_id}/check-out", response_model=ReservationResponse)
async def check_out(
    reservation_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    reservation = await reservation_service.get_reservation(db, reservation_id, user_id)
    reservation = await reservation_service.check_out(db, reservation, clock)
    await commit_and_invalidate(db, reservation.resource_id)
    return reservation


@router.post(
    "/{reservation_id}/extend",
    response_model=ReservationResponse,
    responses=CONFLICT_RESPONSES,
)
async def extend_reservation(
    reservation_id: int,
    extend_data: ReservationExtend,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Extend an active reservation on the same unit."""
    reservation = await reservation_service.get_reservation(db, reservation_id, user_id)
    outcome = await reservation_service.extend_reservation(
        db, reservation, extend_data.new_end_time, clock
    )
    if isinstance(outcome, Conflict):
        return conflict_response(outcome)
    await commit_and_invalidate(db, outcome.resource_id)
    return outcome


@router.patch("/{reservation_id}/payment", response_model=ReservationResponse)
async def record_payment(
    reservation_id: int,
    payment: PaymentStatusUpdate,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    reservation = await reservation_service.get_reservation(db, reservation_id, user_id)
    return await reservation_service.record_payment(db, reservation, payment.payment_status)
