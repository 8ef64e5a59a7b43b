"""
Billing engine: invoice drafts and the billing status attached to each session.

A session links to at most one non-void invoice. Creating the invoice row and
flipping the session's billing status happen in the same transaction, and the
flip is a compare-and-swap on the session version, so two concurrent draft
requests produce one invoice and one AlreadyBilledError.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from auth.identity import Identity
from constants import (
    ACTIVE_SESSION_STATUSES,
    BILLABLE_BILLING_STATUSES,
    CANCELLED_SESSION_STATUSES,
    CLOSED_INVOICE_STATUSES,
    INVOICE_DUE_LEAD_HOURS,
    PREPAID_PRICING_PLANS,
    BillingStatus,
    InvoiceMode,
    InvoiceStatus,
    InvoiceType,
)
from models import Client, Invoice, SessionLog, new_id
from services.exceptions import (
    AlreadyBilledError,
    InvalidTransitionError,
    NotFoundError,
    StudyroomError,
    ValidationFailedError,
)
from services.invoice_sink import InvoiceSink
from services.pricing import is_prepaid_plan, session_amount_cents
from services.session_store import (
    ensure_can_act_on,
    explain_lost_swap,
    get_session_or_404,
    swap_session,
)
from utils.clock import as_utc, utc_now

logger = logging.getLogger(__name__)


def invoice_due_at(session_start: datetime, now: datetime) -> datetime:
    """Due INVOICE_DUE_LEAD_HOURS before the session, or now if that has passed."""
    due = as_utc(session_start) - timedelta(hours=INVOICE_DUE_LEAD_HOURS)
    return max(as_utc(now), due)


def _session_client(db: Session, session: SessionLog) -> Optional[Client]:
    if not session.client_id:
        return None
    return db.get(Client, session.client_id)


def is_prepaid_session(db: Session, session: SessionLog) -> bool:
    """True when the session's client pays by package rather than per session."""
    client = _session_client(db, session)
    return client is not None and is_prepaid_plan(client.pricing_plan)


def prepare_draft_invoice(
    db: Session,
    session: SessionLog,
    now: datetime,
    tutor_note: Optional[str] = None,
    cancel_reason: Optional[str] = None,
) -> Invoice:
    """
    Validate that `session` can be billed and stage its DRAFT invoice.

    Adds the invoice to the unit of work without committing and without
    touching the session; the caller flips the session's billing status in
    the same transaction.
    """
    if session.normalized_billing_status.value not in BILLABLE_BILLING_STATUSES or session.invoice_id:
        raise AlreadyBilledError(billing_status=session.billing_status)

    client = _session_client(db, session)
    if client is not None and is_prepaid_plan(client.pricing_plan):
        raise ValidationFailedError(
            "Client is on a prepaid package; sessions are not invoiced individually.",
            reason="PREPAID_PACKAGE",
        )

    invoice = Invoice(
        id=new_id(),
        status=InvoiceStatus.DRAFT.value,
        client_id=session.client_id,
        student_id=session.student_id,
        session_id=session.id,
        tutor_id=session.tutor_id,
        tutor_email=session.tutor_email,
        invoice_type=InvoiceType.ONE_OFF.value,
        coverage_start_at=session.start_at,
        coverage_end_at=session.end_at,
        subtotal_cents=session_amount_cents(session, client),
        due_at=invoice_due_at(session.start_at, now),
        tutor_note=tutor_note,
        cancel_reason=cancel_reason,
        created_at=now,
        updated_at=now,
    )
    db.add(invoice)
    return invoice


def create_draft_invoice(
    db: Session,
    session_id: str,
    identity: Optional[Identity] = None,
    now: Optional[datetime] = None,
    tutor_note: Optional[str] = None,
) -> Invoice:
    """
    Create the DRAFT invoice for a session, exactly once.

    Raises AlreadyBilledError if the session already has an invoice (or won
    one concurrently), ValidationFailedError for prepaid package clients and
    for sessions cancelled without a fee.
    """
    now = as_utc(now) if now else utc_now()
    try:
        session = get_session_or_404(db, session_id)
        if identity is not None:
            ensure_can_act_on(session, identity)
        if (
            session.status in CANCELLED_SESSION_STATUSES
            and session.normalized_billing_status == BillingStatus.NOT_BILLED
        ):
            raise ValidationFailedError("Session was cancelled without a fee.")

        invoice = prepare_draft_invoice(db, session, now, tutor_note=tutor_note)
        swapped = swap_session(
            db,
            session,
            {
                "billing_status": BillingStatus.INVOICE_DRAFT.value,
                "invoice_id": invoice.id,
                "updated_at": now,
            },
            expected_billing_statuses=BILLABLE_BILLING_STATUSES,
        )
        if not swapped:
            logger.warning("Session %s was billed concurrently; draft discarded", session_id)
            raise AlreadyBilledError()
        db.commit()
    except StudyroomError:
        db.rollback()
        raise

    db.refresh(invoice)
    logger.info(
        "Draft invoice %s created for session %s (%s cents, due %s)",
        invoice.id, session_id, invoice.subtotal_cents, invoice.due_at,
    )
    return invoice


def void_linked_invoice(db: Session, session: SessionLog, now: datetime, reason: Optional[str] = None) -> Optional[Invoice]:
    """VOID the session's current invoice, if any. Does not commit or touch the session."""
    if not session.invoice_id:
        return None
    invoice = db.get(Invoice, session.invoice_id)
    if invoice is None or invoice.status in CLOSED_INVOICE_STATUSES:
        return invoice
    if invoice.status == InvoiceStatus.PAID.value:
        raise InvalidTransitionError("Paid invoices cannot be voided.", invoice_id=invoice.id)
    invoice.status = InvoiceStatus.VOID.value
    invoice.voided_at = now
    invoice.updated_at = now
    if reason:
        invoice.cancel_reason = reason
    return invoice


def void_invoice(db: Session, session_id: str, identity: Identity, reason: Optional[str] = None) -> Invoice:
    """
    Void a session's invoice and put the session back to READY_TO_INVOICE.

    This is the only path that moves billing status backwards, so the
    reason is kept on the voided invoice.
    """
    now = utc_now()
    try:
        session = get_session_or_404(db, session_id)
        ensure_can_act_on(session, identity)
        if not session.invoice_id:
            raise ValidationFailedError("Session has no invoice to void.")

        invoice = void_linked_invoice(db, session, now, reason)
        if invoice is None:
            raise NotFoundError("Invoice not found.", invoice_id=session.invoice_id)

        swapped = swap_session(
            db,
            session,
            {
                "billing_status": BillingStatus.READY_TO_INVOICE.value,
                "invoice_id": None,
                "updated_at": now,
            },
            expected_billing_statuses=[BillingStatus.INVOICE_DRAFT.value, BillingStatus.INVOICED.value],
        )
        if not swapped:
            db.rollback()
            raise explain_lost_swap(db, session_id, "void the invoice of")
        db.commit()
    except StudyroomError:
        db.rollback()
        raise

    db.refresh(invoice)
    logger.info("Invoice %s voided for session %s by %s", invoice.id, session_id, identity.user_id)
    return invoice


def build_sink_payload(invoice: Invoice, client: Optional[Client]) -> Dict[str, Any]:
    return {
        "invoiceId": invoice.id,
        "sessionId": invoice.session_id,
        "clientId": invoice.client_id,
        "contactName": client.parent_name if client else None,
        "contactEmail": client.parent_email if client else None,
        "invoiceType": invoice.invoice_type,
        "subtotalCents": invoice.subtotal_cents,
        "dueAt": as_utc(invoice.due_at).isoformat(),
        "coverageStartAt": as_utc(invoice.coverage_start_at).isoformat() if invoice.coverage_start_at else None,
        "coverageEndAt": as_utc(invoice.coverage_end_at).isoformat() if invoice.coverage_end_at else None,
        "note": invoice.cancel_reason or invoice.tutor_note,
    }


def submit_invoice(
    db: Session,
    invoice_id: str,
    sink: InvoiceSink,
    mode: str = InvoiceMode.AUTHORISED.value,
    identity: Optional[Identity] = None,
) -> Invoice:
    """
    Hand a draft to the external invoicing sink.

    DRAFT mode keeps the record as a draft. AUTHORISED mode marks the
    invoice SENT with the sink's reference and the session INVOICED.
    """
    try:
        mode = InvoiceMode(mode).value
    except ValueError:
        raise ValidationFailedError("mode must be DRAFT or AUTHORISED.")

    invoice = db.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError("Invoice not found.", invoice_id=invoice_id)
    session = get_session_or_404(db, invoice.session_id)
    if identity is not None:
        ensure_can_act_on(session, identity)
    if mode == InvoiceMode.DRAFT.value:
        return invoice
    if invoice.status != InvoiceStatus.DRAFT.value:
        raise InvalidTransitionError("Only draft invoices can be sent.", invoice_id=invoice_id)

    # The sink call happens outside our transaction; a failure leaves the draft untouched
    external_id = sink.create_invoice(build_sink_payload(invoice, _session_client(db, session)), authorise=True)

    now = utc_now()
    try:
        swapped = swap_session(
            db,
            session,
            {"billing_status": BillingStatus.INVOICED.value, "updated_at": now},
            expected_billing_statuses=[BillingStatus.INVOICE_DRAFT.value],
        )
        if not swapped:
            db.rollback()
            logger.error(
                "Invoice %s accepted by sink as %s but session %s changed meanwhile",
                invoice_id, external_id, session.id,
            )
            raise explain_lost_swap(db, session.id, "send the invoice of")
        invoice.status = InvoiceStatus.SENT.value
        invoice.external_invoice_id = external_id
        invoice.updated_at = now
        db.commit()
    except StudyroomError:
        db.rollback()
        raise

    db.refresh(invoice)
    logger.info("Invoice %s sent as %s", invoice_id, external_id)
    return invoice


def list_unbilled_sessions(db: Session, now: Optional[datetime] = None, days: int = 30) -> List[SessionLog]:
    """
    Upcoming sessions in the next `days` still waiting for an invoice.

    Prepaid package clients are left out; they are billed per package.
    """
    now = as_utc(now) if now else utc_now()
    horizon = now + timedelta(days=days)
    return (
        db.query(SessionLog)
        .outerjoin(Client, SessionLog.client_id == Client.id)
        .filter(
            SessionLog.status.in_(ACTIVE_SESSION_STATUSES),
            SessionLog.billing_status == BillingStatus.NOT_BILLED.value,
            SessionLog.invoice_id.is_(None),
            SessionLog.start_at >= now,
            SessionLog.start_at <= horizon,
            or_(Client.pricing_plan.is_(None), Client.pricing_plan.notin_(PREPAID_PRICING_PLANS)),
        )
        .order_by(SessionLog.start_at)
        .all()
    )
