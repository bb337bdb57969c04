"""
Parking lot endpoints: registration, lookup, availability and price quotes.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from parking_scheduler.db.session import get_db
from parking_scheduler.schemas.parking_lot import (
    AvailabilityResponse,
    ParkingLotCreate,
    ParkingLotResponse,
    PriceQuoteResponse,
)
from parking_scheduler.services.availability_service import check_availability, validate_interval
from parking_scheduler.services.cache_service import get_cached_availability, set_cached_availability
from parking_scheduler.services.parking_lot_service import (
    create_parking_lot,
    get_parking_lot,
    list_parking_lots,
)
from parking_scheduler.services.pricing import quote

router = APIRouter(prefix="/parking-lots", tags=["Parking Lots"])


@router.post("/", response_model=ParkingLotResponse, status_code=status.HTTP_201_CREATED)
async def create_parking_lot_endpoint(
    lot_data: ParkingLotCreate,
    db: AsyncSession = Depends(get_db),
):
    """Register a parking lot. Capacity is the number of bookable units."""
    return await create_parking_lot(db, lot_data)


@router.get("/", response_model=list[ParkingLotResponse])
async def list_parking_lots_endpoint(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    lots, _ = await list_parking_lots(db, page, page_size)
    return lots


@router.get("/{resource_id}", response_model=ParkingLotResponse)
async def get_parking_lot_endpoint(resource_id: int, db: AsyncSession = Depends(get_db)):
    return await get_parking_lot(db, resource_id)


@router.get("/{resource_id}/availability", response_model=AvailabilityResponse)
async def check_availability_endpoint(
    resource_id: int,
    start_time: datetime,
    end_time: datetime,
    required_units: int = Query(1, ge=1, le=10),
    db: AsyncSession = Depends(get_db),
):
    """
    Read-only availability check.

    Cache-aside: served from Redis when a fresh answer exists, computed from
    the database otherwise. Booking never trusts this answer; it re-checks
    inside its own transaction.
    """
    validate_interval(start_time, end_time)
    cached = await get_cached_availability(resource_id, start_time, end_time, required_units)
    if cached:
        return AvailabilityResponse(**cached, cached=True)

    availability = await check_availability(db, resource_id, start_time, end_time, required_units)
    response = AvailabilityResponse(
        resource_id=availability.resource_id,
        start_time=availability.start,
        end_time=availability.end,
        capacity=availability.capacity,
        available_units=availability.available_units,
        required_units=availability.required_units,
        is_available=availability.is_available,
        free_unit=availability.free_unit,
    )
    await set_cached_availability(
        resource_id, start_time, end_time, required_units,
        response.model_dump(mode="json", exclude={"cached"}),
    )
    return response


@router.get("/{resource_id}/quote", response_model=PriceQuoteResponse)
async def price_quote_endpoint(
    resource_id: int,
    start_time: datetime,
    end_time: datetime,
    db: AsyncSession = Depends(get_db),
):
    validate_interval(start_time, end_time)
    lot = await get_parking_lot(db, resource_id)
    price = quote(lot, start_time, end_time)
    return PriceQuoteResponse(
        base_amount=price.base_amount,
        total_amount=price.total_amount,
        duration_hours=price.duration_hours,
        currency=price.currency,
        breakdown=[vars(line) for line in price.breakdown],
    )
