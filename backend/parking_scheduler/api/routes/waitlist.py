"""
Waitlist endpoints.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from parking_scheduler.api.deps import conflict_response, get_clock, get_current_user_id
from parking_scheduler.core.clock import Clock
from parking_scheduler.db.session import get_db
from parking_scheduler.schemas.reservation import ConflictResponse, ReservationResponse
from parking_scheduler.schemas.waitlist import WaitlistEntryResponse, WaitlistJoin
from parking_scheduler.services import waitlist_service
from parking_scheduler.services.availability_service import Conflict
from parking_scheduler.services.cache_service import commit_and_invalidate

router = APIRouter(prefix="/waitlist", tags=["Waitlist"])


@router.post("/", response_model=WaitlistEntryResponse, status_code=status.HTTP_201_CREATED)
async def join_waitlist(
    join_data: WaitlistJoin,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Queue for a lot that is full for the desired interval."""
    return await waitlist_service.join_waitlist(db, join_data, user_id, clock)


@router.get("/", response_model=list[WaitlistEntryResponse])
async def list_entries(
    open_only: bool = False,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await waitlist_service.list_user_entries(db, user_id, open_only)


@router.get("/{entry_id}", response_model=WaitlistEntryResponse)
async def get_entry(
    entry_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await waitlist_service.get_entry(db, entry_id, user_id)


@router.delete("/{entry_id}", response_model=WaitlistEntryResponse)
async def leave_waitlist(
    entry_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    entry = await waitlist_service.get_entry(db, entry_id, user_id)
    return await waitlist_service.leave_waitlist(db, entry, clock)


@router.post(
    "/{entry_id}/convert",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={status.HTTP_409_CONFLICT: {"model": ConflictResponse}},
)
async def convert_entry(
    entry_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Book the space offered to this entry. If it was taken in the meantime
    the entry returns to the queue and the response is 409.
    """
    entry = await waitlist_service.get_entry(db, entry_id, user_id)
    outcome = await waitlist_service.convert_entry(db, entry, clock)
    if isinstance(outcome, Conflict):
        return conflict_response(outcome)
    await commit_and_invalidate(db, outcome.resource_id)
    return outcome
