"""
Notification inbox endpoints.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from parking_scheduler.api.deps import get_clock, get_current_user_id
from parking_scheduler.core.clock import Clock
from parking_scheduler.db.session import get_db
from parking_scheduler.schemas.notification import NotificationResponse
from parking_scheduler.services import notification_service

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("/", response_model=list[NotificationResponse])
async def list_notifications(
    unread_only: bool = False,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await notification_service.list_user_notifications(db, user_id, unread_only)


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    job = await notification_service.get_notification(db, notification_id, user_id)
    return await notification_service.mark_read(db, job, clock)
