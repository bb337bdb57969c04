"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from parking_scheduler.api.routes import admin, notifications, parking_lots, recurrence, reservations, waitlist

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(parking_lots.router)
api_router.include_router(reservations.router)
api_router.include_router(waitlist.router)
api_router.include_router(recurrence.router)
api_router.include_router(notifications.router)
api_router.include_router(admin.router)
