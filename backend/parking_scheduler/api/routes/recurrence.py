"""
Recurring reservation rule endpoints.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from parking_scheduler.api.deps import get_clock, get_current_user_id
from parking_scheduler.core.clock import Clock
from parking_scheduler.db.session import get_db
from parking_scheduler.schemas.recurrence import (
    RecurrenceRuleCreate,
    RecurrenceRulePause,
    RecurrenceRuleResponse,
    RecurrenceRuleUpdate,
)
from parking_scheduler.services import recurrence_service

router = APIRouter(prefix="/recurrence-rules", tags=["Recurrence"])


@router.post("/", response_model=RecurrenceRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    rule_data: RecurrenceRuleCreate,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Create a recurring reservation. Occurrences are booked by the
    recurrence tick once their date arrives.
    """
    return await recurrence_service.create_rule(db, rule_data, user_id, clock)


@router.get("/", response_model=list[RecurrenceRuleResponse])
async def list_rules(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await recurrence_service.list_user_rules(db, user_id)


@router.get("/{rule_id}", response_model=RecurrenceRuleResponse)
async def get_rule(
    rule_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await recurrence_service.get_rule(db, rule_id, user_id)


@router.patch("/{rule_id}", response_model=RecurrenceRuleResponse)
async def update_rule(
    rule_id: int,
    rule_data: RecurrenceRuleUpdate,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    rule = await recurrence_service.get_rule(db, rule_id, user_id)
    return await recurrence_service.update_rule(db, rule, rule_data)


@router.post("/{rule_id}/pause", response_model=RecurrenceRuleResponse)
async def pause_rule(
    rule_id: int,
    pause_data: RecurrenceRulePause,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    rule = await recurrence_service.get_rule(db, rule_id, user_id)
    return await recurrence_service.pause_rule(db, rule, pause_data.reason, clock)


@router.post("/{rule_id}/resume", response_model=RecurrenceRuleResponse)
async def resume_rule(
    rule_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Reactivate a paused rule; dates missed while paused are skipped."""
    rule = await recurrence_service.get_rule(db, rule_id, user_id)
    return await recurrence_service.resume_rule(db, rule, clock)


@router.post("/{rule_id}/cancel", response_model=RecurrenceRuleResponse)
async def cancel_rule(
    rule_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    rule = await recurrence_service.get_rule(db, rule_id, user_id)
    return await recurrence_service.cancel_rule(db, rule)
