"""
Sessions API endpoints.
Booking, rescheduling, status changes and weekly recurrence. Every mutation
answers with the session's new state plus the billing effect it had.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth.dependencies import require_staff
from auth.identity import Identity
from database import get_db
from schemas import (
    InvoiceResponse,
    RecurringExpand,
    SeriesUpdate,
    SessionCancel,
    SessionChangeResponse,
    SessionComplete,
    SessionCreate,
    SessionReschedule,
    SessionResponse,
)
from services import billing, session_lifecycle
from services.exceptions import StudyroomError
from services.session_lifecycle import SessionChange
from services.session_store import ensure_can_act_on, get_session_or_404
from utils.errors import raise_http
from utils.rate_limiter import check_user_rate_limit

router = APIRouter()
logger = logging.getLogger(__name__)


def _change_response(change: SessionChange, invoice=None) -> SessionChangeResponse:
    invoice = invoice or change.invoice
    return SessionChangeResponse(
        session=SessionResponse.model_validate(change.session),
        warning=change.warning,
        invoice_ready=change.invoice_ready,
        invoice_triggered=bool(change.decision and change.decision.invoice_triggered),
        is_late=change.decision.is_late if change.decision else None,
        invoice=InvoiceResponse.model_validate(invoice) if invoice is not None else None,
        sessions=[SessionResponse.model_validate(s) for s in change.created],
    )


@router.post("/sessions", response_model=SessionChangeResponse)
async def create_session(
    payload: SessionCreate,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """Book a session for one of the caller's students."""
    try:
        change = session_lifecycle.create_session(
            db, identity,
            student_id=payload.student_id,
            start_at=payload.start_at,
            duration_minutes=payload.duration_minutes,
            modality=payload.modality,
            notes=payload.notes,
            tutor_id=payload.tutor_id,
        )
    except StudyroomError as e:
        raise_http(e)
    return _change_response(change)


@router.post("/sessions/reschedule", response_model=SessionChangeResponse)
async def reschedule_session(
    payload: SessionReschedule,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """
    Move a session.

    Overlaps within the turnaround buffer are rejected for tutors; admins
    get `warning: OVERLAP_ADMIN_OVERRIDE` instead.
    """
    try:
        change = session_lifecycle.reschedule_session(
            db, identity, payload.session_id, payload.new_start, payload.new_end,
        )
    except StudyroomError as e:
        raise_http(e)
    return _change_response(change)


@router.post("/sessions/cancel", response_model=SessionChangeResponse)
async def cancel_session(
    payload: SessionCancel,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """Cancel a session; late cancellations come back with the drafted invoice."""
    try:
        change = session_lifecycle.cancel_session(
            db, identity, payload.session_id, payload.initiator, reason=payload.reason,
        )
    except StudyroomError as e:
        raise_http(e)
    return _change_response(change)


@router.post("/sessions/recurring/update", response_model=SessionChangeResponse)
async def update_series(
    payload: SeriesUpdate,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """Reschedule one instance, or this and all later instances of its series."""
    check_user_rate_limit(identity.user_id, "series_update")
    try:
        change = session_lifecycle.update_series(
            db, identity, payload.session_id, payload.new_start, payload.new_end,
            edit_future=payload.edit_future,
        )
    except StudyroomError as e:
        raise_http(e)
    return _change_response(change)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """Get one session (tutors only see their own)."""
    try:
        session = get_session_or_404(db, session_id)
        ensure_can_act_on(session, identity)
    except StudyroomError as e:
        raise_http(e)
    return SessionResponse.model_validate(session)


@router.post("/sessions/{session_id}/confirm", response_model=SessionChangeResponse)
async def confirm_session(
    session_id: str,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db)
):
    try:
        change = session_lifecycle.confirm_session(db, identity, session_id)
    except StudyroomError as e:
        raise_http(e)
    return _change_response(change)


@router.post("/sessions/{session_id}/complete", response_model=SessionChangeResponse)
async def complete_session(
    session_id: str,
    payload: Optional[SessionComplete] = None,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """
    Mark a session completed.

    With `invoiceNow` the draft invoice is created straight away when the
    session is ready to invoice. The completion is already committed by then,
    so a draft that cannot be made comes back as a warning, not an error.
    """
    payload = payload or SessionComplete()
    invoice = None
    try:
        change = session_lifecycle.complete_session(db, identity, session_id)
    except StudyroomError as e:
        raise_http(e)

    if payload.invoice_now and change.invoice_ready:
        if billing.is_prepaid_session(db, change.session):
            change.warning = "Client is on a prepaid package; no invoice drafted."
        else:
            try:
                invoice = billing.create_draft_invoice(db, session_id, identity)
            except StudyroomError as e:
                logger.warning("Session %s completed but draft failed: %s", session_id, e.code)
                change.warning = e.message
            db.refresh(change.session)
    return _change_response(change, invoice)


@router.post("/sessions/{session_id}/no-show", response_model=SessionChangeResponse)
async def mark_no_show(
    session_id: str,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db)
):
    try:
        change = session_lifecycle.mark_no_show(db, identity, session_id)
    except StudyroomError as e:
        raise_http(e)
    return _change_response(change)


@router.post("/sessions/{session_id}/recurring", response_model=SessionChangeResponse)
async def expand_recurring(
    session_id: str,
    payload: RecurringExpand,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """Repeat a session weekly for `weeks` weeks (1..12)."""
    check_user_rate_limit(identity.user_id, "session_recurring")
    try:
        change = session_lifecycle.expand_recurring(db, identity, session_id, payload.weeks)
    except StudyroomError as e:
        raise_http(e)
    return _change_response(change)
