"""
Operational endpoints: run a scheduler tick on demand.
"""

from typing import Literal

from fastapi import APIRouter, Depends

from parking_scheduler.api.deps import get_orchestrator
from parking_scheduler.services.orchestrator import Orchestrator

router = APIRouter(prefix="/admin", tags=["Admin"])

TickName = Literal["recurrence", "waitlist", "reminder", "dispatch", "cleanup"]


@router.post("/ticks/{tick}")
async def trigger_tick(tick: TickName, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Run one tick now and return its report. Works whether or not the scheduler is running."""
    triggers = {
        "recurrence": orchestrator.trigger_recurrence_tick,
        "waitlist": orchestrator.trigger_waitlist_tick,
        "reminder": orchestrator.trigger_reminder_tick,
        "dispatch": orchestrator.trigger_notification_dispatch,
        "cleanup": orchestrator.trigger_cleanup,
    }
    report = await triggers[tick]()
    return report.as_dict()
