"""
Domain exceptions raised by the service layer.

Each carries a stable machine-readable code, a human-readable message and the
HTTP status the routers translate it to. Services raise these; routers never
let them escape as unstructured 500s.
"""
from typing import Any, Dict, Optional


class StudyroomError(Exception):
    """Base class for all expected business-rule failures."""

    code = "ERROR"
    status_code = 400
    default_message = "Request failed."

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload.update(self.details)
        return payload


class UnauthenticatedError(StudyroomError):
    code = "UNAUTHENTICATED"
    status_code = 401
    default_message = "Not authenticated."


class PermissionDeniedError(StudyroomError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Not permitted."


class NotFoundError(StudyroomError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found."


class ValidationFailedError(StudyroomError):
    code = "VALIDATION_FAILED"
    status_code = 400
    default_message = "Invalid request."


class InvalidTransitionError(StudyroomError):
    code = "INVALID_TRANSITION"
    status_code = 409
    default_message = "That change is not allowed in the session's current state."


class NotOpenError(StudyroomError):
    code = "NOT_OPEN"
    status_code = 409
    default_message = "This lead is not open anymore."


class AlreadyClaimedError(StudyroomError):
    code = "ALREADY_CLAIMED"
    status_code = 409
    default_message = "This lead has already been claimed."


class AlreadyBilledError(StudyroomError):
    code = "ALREADY_BILLED"
    status_code = 409
    default_message = "This session has already been billed."


class SchedulingConflictError(StudyroomError):
    code = "SESSION_OVERLAP"
    status_code = 409
    default_message = "Overlaps another session."


class InvoiceSinkError(StudyroomError):
    code = "INVOICE_SINK_FAILED"
    status_code = 502
    default_message = "The invoicing service did not accept the invoice."
