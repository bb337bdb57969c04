"""
Pydantic schemas for reservation request/response validation.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional
from pydantic import BaseModel, Field


class VehicleInfo(BaseModel):
    license_plate: str = Field(..., min_length=1, max_length=20)
    vehicle_type: str = Field("car", max_length=30)
    color: Optional[str] = Field(None, max_length=30)
    make: Optional[str] = Field(None, max_length=50)
    model: Optional[str] = Field(None, max_length=50)


class ReservationCreate(BaseModel):
    resource_id: int
    start_time: datetime
    end_time: datetime
    vehicle_info: Optional[VehicleInfo] = None
    special_requests: Optional[str] = Field(None, max_length=1000)


class ReservationCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ReservationExtend(BaseModel):
    new_end_time: datetime


class PaymentStatusUpdate(BaseModel):
    payment_status: Literal["pending", "paid", "failed"]


class ReservationResponse(BaseModel):
    id: int
    reference: str
    user_id: int
    resource_id: int
    unit_number: int
    start_time: datetime
    end_time: datetime
    status: str
    payment_status: str
    amount: Decimal
    currency: str
    vehicle_info: Optional[dict[str, Any]]
    check_in_time: Optional[datetime]
    check_out_time: Optional[datetime]
    cancellation: Optional[dict[str, Any]]
    extension_history: list[dict[str, Any]]
    created_at: datetime

    model_config = {"from_attributes": True}


class ConflictResponse(BaseModel):
    message: str
    resource_id: int
    capacity: int
    available_units: int
    required_units: int
    waitlist_eligible: bool = True
