"""
Domain error taxonomy and FastAPI exception handlers.

Services raise these; routers let them propagate and the handler registered
in ``register_error_handlers`` renders them as JSON with a matching status.
"""
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class SourcingError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    kind = "internal"
    message = "Internal server error"

    def __init__(self, message=None):
        if message:
            self.message = message
        super().__init__(self.message)

    def to_dict(self):
        return {"detail": self.message, "error": self.kind}


class ValidationError(SourcingError):
    """Malformed input or out-of-range value."""
    status_code = status.HTTP_400_BAD_REQUEST
    kind = "validation"
    message = "Invalid input"


class ForbiddenError(SourcingError):
    status_code = status.HTTP_403_FORBIDDEN
    kind = "forbidden"
    message = "Forbidden"


class NotFoundError(SourcingError):
    """Missing entity, or one that belongs to another organization."""
    status_code = status.HTTP_404_NOT_FOUND
    kind = "not_found"
    message = "Resource not found"


class StateConflictError(SourcingError):
    """Operation is illegal for the entity's current state."""
    status_code = status.HTTP_409_CONFLICT
    kind = "conflict"
    message = "Conflict"


class EscalationScanError(SourcingError):
    """A scan cycle failed; details live in the automation run log."""
    kind = "scan_failed"
    message = "Failed to run escalation notifications"


def register_error_handlers(app: FastAPI):
    @app.exception_handler(SourcingError)
    async def handle_sourcing_error(request: Request, exc: SourcingError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
