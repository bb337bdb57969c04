"""
Pydantic schemas for parking lot and availability request/response validation.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class ParkingLotCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    address: Optional[str] = Field(None, max_length=500)
    capacity: int = Field(..., gt=0, le=10000)
    hourly_rate: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    daily_rate: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    currency: str = Field("ZMW", min_length=3, max_length=3)


class ParkingLotResponse(BaseModel):
    id: int
    name: str
    address: Optional[str]
    capacity: int
    hourly_rate: Decimal
    daily_rate: Decimal
    currency: str
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class AvailabilityResponse(BaseModel):
    resource_id: int
    start_time: datetime
    end_time: datetime
    capacity: int
    available_units: int
    required_units: int
    is_available: bool
    free_unit: Optional[int] = None
    cached: bool = False


class PriceBreakdown(BaseModel):
    type: str
    amount: Decimal
    description: str


class PriceQuoteResponse(BaseModel):
    base_amount: Decimal
    total_amount: Decimal
    duration_hours: int
    currency: str
    breakdown: list[PriceBreakdown]
