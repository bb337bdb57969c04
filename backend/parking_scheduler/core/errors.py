"""
Domain error taxonomy.

Services raise these instead of HTTPException so the same code paths serve
the REST API and the scheduler. A single handler in main.py maps
`status_code` onto the HTTP response.

Capacity shortfall is deliberately absent: it is returned as a
`Conflict` value by the availability and lifecycle services.
"""


class ParkingSchedulerError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(ParkingSchedulerError):
    """Malformed interval or fields, rejected before any mutation."""

    status_code = 422


class NotFoundError(ParkingSchedulerError):
    status_code = 404


class InvalidStateTransition(ParkingSchedulerError):
    """Illegal lifecycle move. Raised before any field is touched."""

    status_code = 409

    def __init__(self, entity: str, current: str, action: str, reason: str | None = None):
        detail = f"Cannot {action} {entity} in status '{current}'"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail)
        self.entity = entity
        self.current = current
        self.action = action


class ExternalChannelError(ParkingSchedulerError):
    """Notification channel failure. Captured by the delivery engine, never surfaced."""

    status_code = 502
