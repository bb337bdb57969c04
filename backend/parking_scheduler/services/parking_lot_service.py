"""
Parking lot service handling CRUD operations.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from parking_scheduler.core.logging import get_logger
from parking_scheduler.models.parking_lot import ParkingLot
from parking_scheduler.schemas.parking_lot import ParkingLotCreate
from parking_scheduler.services.availability_service import load_parking_lot

logger = get_logger(__name__)


async def create_parking_lot(db: AsyncSession, lot_data: ParkingLotCreate) -> ParkingLot:
    """Register a lot with all units free."""
    lot = ParkingLot(
        name=lot_data.name,
        address=lot_data.address,
        capacity=lot_data.capacity,
        hourly_rate=lot_data.hourly_rate,
        daily_rate=lot_data.daily_rate,
        currency=lot_data.currency,
        is_active=True,
        version=1,
    )
    db.add(lot)
    await db.flush()
    await db.refresh(lot)

    logger.info("parking_lot_created", resource_id=lot.id, name=lot.name, capacity=lot.capacity)
    return lot


async def get_parking_lot(db: AsyncSession, resource_id: int) -> ParkingLot:
    return await load_parking_lot(db, resource_id)


async def list_parking_lots(
    db: AsyncSession,
    page: int = 1,
    page_size: int = 20,
    active_only: bool = True,
) -> tuple[list[ParkingLot], int]:
    query = select(ParkingLot)
    if active_only:
        query = query.where(ParkingLot.is_active.is_(True))

    count_query = select(func.count()).select_from(query.subquery())
    total = (await db.execute(count_query)).scalar()

    result = await db.execute(
        query.order_by(ParkingLot.name.asc()).offset((page - 1) * page_size).limit(page_size)
    )
    return list(result.scalars().all()), total
