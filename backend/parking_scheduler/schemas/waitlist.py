"""
Pydantic schemas for waitlist request/response validation.
"""

from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field

from parking_scheduler.schemas.reservation import VehicleInfo


class WaitlistJoin(BaseModel):
    resource_id: int
    desired_start: datetime
    desired_end: datetime
    required_units: int = Field(default=1, gt=0, le=10)
    vehicle_info: Optional[VehicleInfo] = None
    special_requests: Optional[str] = Field(None, max_length=1000)


class WaitlistEntryResponse(BaseModel):
    id: int
    user_id: int
    resource_id: int
    status: str
    position: int
    desired_start: datetime
    desired_end: datetime
    required_units: int
    vehicle_info: Optional[dict[str, Any]]
    joined_at: datetime
    notified_at: Optional[datetime]
    expires_at: Optional[datetime]
    converted_reservation_id: Optional[int]

    model_config = {"from_attributes": True}
