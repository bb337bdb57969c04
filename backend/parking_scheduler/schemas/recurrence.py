"""
Pydantic schemas for recurrence rule request/response validation.
"""

from datetime import date, datetime, time
from typing import Any, Optional
from pydantic import BaseModel, Field

from parking_scheduler.models.recurrence import RecurrencePattern
from parking_scheduler.schemas.reservation import VehicleInfo


class RecurrenceRuleCreate(BaseModel):
    resource_id: int
    pattern: RecurrencePattern = RecurrencePattern.WEEKLY
    start_time: time
    duration_minutes: int = Field(..., gt=0, le=24 * 60)
    start_date: date
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = Field(None, gt=0)
    interval: int = Field(default=1, gt=0, le=52)
    days_of_week: Optional[list[int]] = None  # Monday=0 .. Sunday=6
    vehicle_info: Optional[VehicleInfo] = None
    special_requests: Optional[str] = Field(None, max_length=1000)


class RecurrenceRuleUpdate(BaseModel):
    start_time: Optional[time] = None
    duration_minutes: Optional[int] = Field(None, gt=0, le=24 * 60)
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = Field(None, gt=0)
    vehicle_info: Optional[VehicleInfo] = None
    special_requests: Optional[str] = Field(None, max_length=1000)


class RecurrenceRulePause(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RecurrenceRuleResponse(BaseModel):
    id: int
    user_id: int
    resource_id: int
    pattern: str
    status: str
    repeat_interval: int
    days_of_week: Optional[list[int]]
    start_time: time
    duration_minutes: int
    start_date: date
    end_date: Optional[date]
    max_occurrences: Optional[int]
    occurrence_count: int
    next_occurrence: date
    occurrence_history: list[dict[str, Any]]
    failure_history: list[dict[str, Any]]
    paused_at: Optional[datetime]
    pause_reason: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}
