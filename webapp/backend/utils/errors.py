"""
Translate service-layer errors into HTTP responses.
"""
from fastapi import HTTPException
from fastapi.responses import JSONResponse

from services.exceptions import StudyroomError


def raise_http(error: StudyroomError) -> None:
    """Re-raise a domain error as HTTPException with a structured detail."""
    raise HTTPException(status_code=error.status_code, detail=error.to_dict())


def envelope_error(error: StudyroomError) -> JSONResponse:
    """`{ok: false, error}` body used by the lead claim endpoint."""
    return JSONResponse(
        status_code=error.status_code,
        content={"ok": False, "error": error.message, "code": error.code},
    )
