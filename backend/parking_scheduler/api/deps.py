"""
Shared route dependencies.

Authentication happens upstream: the gateway forwards the caller's id in
the X-User-ID header. Clock and orchestrator are dependencies so tests can pin
time and drive ticks by hand.
"""

from fastapi import Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from parking_scheduler.core.clock import Clock, system_clock
from parking_scheduler.schemas.reservation import ConflictResponse
from parking_scheduler.services.availability_service import Conflict
from parking_scheduler.services.orchestrator import Orchestrator


async def get_current_user_id(x_user_id: int | None = Header(default=None)) -> int:
    if x_user_id is None or x_user_id <= 0:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid X-User-ID header",
        )
    return x_user_id


def get_clock() -> Clock:
    return system_clock


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def conflict_response(conflict: Conflict) -> JSONResponse:
    availability = conflict.availability
    body = ConflictResponse(
        message=conflict.reason,
        resource_id=availability.resource_id,
        capacity=availability.capacity,
        available_units=availability.available_units,
        required_units=availability.required_units,
    )
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.model_dump())
