"""
Invoices API endpoints.
Draft creation (optionally handed straight to the invoicing sink), voiding
and the admin queue of sessions still waiting for an invoice.
"""
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from auth.dependencies import require_admin, require_staff
from auth.identity import Identity
from constants import InvoiceMode
from database import get_db
from schemas import InvoiceCreate, InvoiceResponse, InvoiceVoid, SessionResponse
from services import billing
from services.exceptions import StudyroomError
from services.invoice_sink import InvoiceSink, get_invoice_sink
from utils.errors import raise_http
from utils.rate_limiter import check_user_rate_limit

router = APIRouter()


@router.post("/invoices", response_model=InvoiceResponse)
async def create_invoice(
    payload: InvoiceCreate,
    identity: Identity = Depends(require_staff),
    sink: InvoiceSink = Depends(get_invoice_sink),
    db: Session = Depends(get_db)
):
    """
    Create the session's DRAFT invoice.

    - **mode**: DRAFT keeps it local; AUTHORISED also sends it through the
      invoicing sink and marks the session INVOICED
    """
    check_user_rate_limit(identity.user_id, "invoice_create")
    try:
        invoice = billing.create_draft_invoice(db, payload.session_id, identity, tutor_note=payload.tutor_note)
        if payload.mode == InvoiceMode.AUTHORISED.value:
            invoice = billing.submit_invoice(db, invoice.id, sink, payload.mode, identity)
    except StudyroomError as e:
        raise_http(e)
    return InvoiceResponse.model_validate(invoice)


@router.post("/invoices/void", response_model=InvoiceResponse)
async def void_invoice(
    payload: InvoiceVoid,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """Void the session's invoice so it can be drafted again."""
    try:
        invoice = billing.void_invoice(db, payload.session_id, identity, payload.reason)
    except StudyroomError as e:
        raise_http(e)
    return InvoiceResponse.model_validate(invoice)


@router.get("/invoices/unbilled", response_model=List[SessionResponse])
async def list_unbilled(
    days: int = Query(30, ge=1, le=365, description="Look-ahead window in days"),
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Upcoming sessions with no invoice yet, excluding prepaid package clients."""
    sessions = billing.list_unbilled_sessions(db, days=days)
    return [SessionResponse.model_validate(s) for s in sessions]
