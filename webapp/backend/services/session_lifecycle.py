"""
Session lifecycle: scheduling, rescheduling, completion, cancellation and
weekly recurrence.

Status transitions follow SESSION_TRANSITIONS in constants. Every write is a
guarded swap on the session version restricted to the allowed source
statuses, so cancelling a session that was completed a moment ago fails with
InvalidTransitionError instead of overwriting the completion.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from auth.identity import Identity
from constants import (
    ACTIVE_SESSION_STATUSES,
    CANCEL_STATUS_BY_INITIATOR,
    SCHEDULING_RULES,
    BillingStatus,
    CancelInitiator,
    Modality,
    SessionStatus,
    can_transition,
)
from models import Client, Invoice, SessionLog, Student, UserProfile, new_id
from services.billing import prepare_draft_invoice, void_linked_invoice
from services.cancellation_policy import CancellationDecision, evaluate_cancellation
from services.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    SchedulingConflictError,
    StudyroomError,
    ValidationFailedError,
)
from services.pricing import is_prepaid_plan
from services.session_store import (
    ensure_can_act_on,
    explain_lost_swap,
    find_conflicting_session,
    get_session_or_404,
    normalize_duration,
    swap_session,
    validate_time_range,
)
from utils.clock import as_utc, utc_now

logger = logging.getLogger(__name__)

OVERLAP_ADMIN_OVERRIDE = "OVERLAP_ADMIN_OVERRIDE"

# Billing statuses a fee-free cancellation closes out as CREDITED
_CREDITABLE_BILLING_STATUSES = [
    BillingStatus.READY_TO_INVOICE.value,
    BillingStatus.INVOICE_DRAFT.value,
    BillingStatus.INVOICED.value,
]

# A series can be started from a live session or one that went ahead
_REPEATABLE_STATUSES = ACTIVE_SESSION_STATUSES + [SessionStatus.COMPLETED.value]


@dataclass
class SessionChange:
    """Outcome of a lifecycle operation, summarised back to the caller."""
    session: SessionLog
    warning: Optional[str] = None
    invoice: Optional[Invoice] = None
    decision: Optional[CancellationDecision] = None
    created: List[SessionLog] = field(default_factory=list)

    @property
    def invoice_ready(self) -> bool:
        return self.session.billing_status == BillingStatus.READY_TO_INVOICE.value


def _check_overlap(
    db: Session,
    identity: Identity,
    tutor_id: str,
    start_at: datetime,
    end_at: datetime,
    exclude_ids: Optional[List[str]] = None,
) -> Optional[str]:
    """
    Raise SchedulingConflictError for tutors; admins get a warning back instead.
    """
    conflict = find_conflicting_session(db, tutor_id, start_at, end_at, exclude_ids)
    if conflict is None:
        return None
    if identity.is_admin:
        logger.warning(
            "Admin %s overrode overlap of tutor %s with session %s",
            identity.user_id, tutor_id, conflict.id,
        )
        return OVERLAP_ADMIN_OVERRIDE
    logger.warning("Tutor %s overlap rejected against session %s", tutor_id, conflict.id)
    raise SchedulingConflictError(
        f"Overlaps another session (includes {SCHEDULING_RULES['buffer_minutes']} min buffer).",
        conflicting_session_id=conflict.id,
    )


def _require_transition(session: SessionLog, target: str, action: str) -> None:
    if not can_transition(session.status, target):
        logger.warning("Rejected %s of session %s in status %s", action, session.id, session.status)
        raise InvalidTransitionError(
            f"Cannot {action} a session that is {session.status.lower()}.",
            status=session.status,
        )


def _finish(db: Session, session: SessionLog) -> SessionLog:
    db.commit()
    db.refresh(session)
    return session


# ============================================
# Create / reschedule
# ============================================

def create_session(
    db: Session,
    identity: Identity,
    student_id: str,
    start_at: datetime,
    duration_minutes: int,
    modality: str,
    notes: Optional[str] = None,
    tutor_id: Optional[str] = None,
) -> SessionChange:
    """
    Book a new SCHEDULED / NOT_BILLED session for a student.

    Tutors book for their own students; admins may book on behalf of the
    student's assigned tutor (or `tutor_id`).
    """
    if not identity.is_staff:
        raise PermissionDeniedError("Tutor or admin access required.")
    try:
        modality = Modality(modality).value
    except ValueError:
        raise ValidationFailedError("Unknown modality.", modality=modality)
    if duration_minutes is None or duration_minutes <= 0:
        raise ValidationFailedError("Duration must be positive.", rule="INVALID_TIME_RANGE")

    student = db.get(Student, student_id)
    if student is None:
        raise NotFoundError("Student not found.", student_id=student_id)

    if identity.is_admin:
        tutor_id = tutor_id or student.assigned_tutor_id or identity.user_id
        profile = db.get(UserProfile, tutor_id)
        tutor_email = profile.email if profile else None
        if tutor_id == student.assigned_tutor_id:
            tutor_email = student.assigned_tutor_email or tutor_email
    else:
        if student.assigned_tutor_id != identity.user_id:
            raise PermissionDeniedError("Student is assigned to another tutor.")
        tutor_id, tutor_email = identity.user_id, identity.email

    start_at = as_utc(start_at)
    end_at = start_at + timedelta(minutes=duration_minutes)
    validate_time_range(start_at, end_at)
    warning = _check_overlap(db, identity, tutor_id, start_at, end_at)

    now = utc_now()
    session = SessionLog(
        id=new_id(),
        tutor_id=tutor_id,
        tutor_email=tutor_email,
        student_id=student.id,
        client_id=student.client_id,
        start_at=start_at,
        end_at=end_at,
        duration_minutes=normalize_duration(start_at, end_at),
        modality=modality,
        status=SessionStatus.SCHEDULED.value,
        billing_status=BillingStatus.NOT_BILLED.value,
        notes=notes,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(session)
    _finish(db, session)
    logger.info("Session %s created for student %s by %s", session.id, student.id, identity.user_id)
    return SessionChange(session=session, warning=warning)


def reschedule_session(
    db: Session,
    identity: Identity,
    session_id: str,
    new_start: datetime,
    new_end: datetime,
) -> SessionChange:
    """
    Move a non-terminal session to [new_start, new_end].

    Duration is recomputed with the 15 minute floor. Overlaps are rejected for
    tutors and reported as OVERLAP_ADMIN_OVERRIDE for admins.
    """
    try:
        session = get_session_or_404(db, session_id)
        ensure_can_act_on(session, identity)
        if session.status not in ACTIVE_SESSION_STATUSES:
            logger.warning("Rejected reschedule of session %s in status %s", session_id, session.status)
            raise InvalidTransitionError(
                f"Cannot reschedule a session that is {session.status.lower()}.",
                status=session.status,
            )

        new_start, new_end = as_utc(new_start), as_utc(new_end)
        validate_time_range(new_start, new_end)
        warning = _check_overlap(db, identity, session.tutor_id, new_start, new_end, [session.id])

        swapped = swap_session(
            db,
            session,
            {
                "start_at": new_start,
                "end_at": new_end,
                "duration_minutes": normalize_duration(new_start, new_end),
            },
            allowed_statuses=ACTIVE_SESSION_STATUSES,
        )
        if not swapped:
            db.rollback()
            raise explain_lost_swap(db, session_id, "reschedule")
        _finish(db, session)
    except StudyroomError:
        db.rollback()
        raise

    logger.info("Session %s rescheduled to %s by %s", session_id, new_start, identity.user_id)
    return SessionChange(session=session, warning=warning)


# ============================================
# Status transitions
# ============================================

def _transition(
    db: Session,
    identity: Identity,
    session_id: str,
    target: str,
    action: str,
    extra: Optional[dict] = None,
    ready_to_invoice: bool = False,
) -> SessionLog:
    """Move an active session to `target`, advancing NOT_BILLED to READY_TO_INVOICE if asked."""
    try:
        session = get_session_or_404(db, session_id)
        ensure_can_act_on(session, identity)
        _require_transition(session, target, action)

        values = {"status": target}
        if extra:
            values.update(extra)
        if ready_to_invoice and session.normalized_billing_status == BillingStatus.NOT_BILLED:
            values["billing_status"] = BillingStatus.READY_TO_INVOICE.value

        if not swap_session(db, session, values, allowed_statuses=ACTIVE_SESSION_STATUSES):
            db.rollback()
            raise explain_lost_swap(db, session_id, action)
        _finish(db, session)
    except StudyroomError:
        db.rollback()
        raise

    logger.info("Session %s %s by %s", session_id, target.lower(), identity.user_id)
    return session


def confirm_session(db: Session, identity: Identity, session_id: str) -> SessionChange:
    session = _transition(db, identity, session_id, SessionStatus.CONFIRMED.value, "confirm")
    return SessionChange(session=session)


def complete_session(db: Session, identity: Identity, session_id: str) -> SessionChange:
    """
    Mark a session COMPLETED.

    NOT_BILLED sessions become READY_TO_INVOICE; `invoice_ready` on the result
    tells the caller it can draft the invoice now.
    """
    now = utc_now()
    session = _transition(
        db, identity, session_id, SessionStatus.COMPLETED.value, "complete",
        {"completed_at": now}, ready_to_invoice=True,
    )
    return SessionChange(session=session)


def mark_no_show(db: Session, identity: Identity, session_id: str) -> SessionChange:
    """A no-show is billed like a completed session."""
    session = _transition(
        db, identity, session_id, SessionStatus.NO_SHOW.value, "mark as no-show",
        ready_to_invoice=True,
    )
    return SessionChange(session=session)


def cancel_session(
    db: Session,
    identity: Identity,
    session_id: str,
    initiator: str,
    now: Optional[datetime] = None,
    reason: Optional[str] = None,
) -> SessionChange:
    """
    Cancel an active session on behalf of the parent or Studyroom.

    The cancellation policy decides the fee. A late, billable cancellation
    drafts the session's invoice in the same transaction as the status
    change (prepaid package clients forfeit the session instead). A fee-free
    cancellation credits any billing already started and voids a pending
    draft.
    """
    try:
        initiator = CancelInitiator((initiator or "").upper()).value
    except ValueError:
        raise ValidationFailedError("initiator must be PARENT or STUDYROOM.")
    now = as_utc(now) if now else utc_now()
    target = CANCEL_STATUS_BY_INITIATOR[initiator]

    try:
        session = get_session_or_404(db, session_id)
        ensure_can_act_on(session, identity)
        _require_transition(session, target, "cancel")

        decision = evaluate_cancellation(session.start_at, now, initiator)
        billing = session.normalized_billing_status
        values = {
            "status": target,
            "cancelled_at": now,
            "cancelled_by": identity.user_id,
            "cancel_reason": reason or decision.reason,
        }
        invoice = None

        if decision.invoice_triggered:
            if billing.value in (BillingStatus.NOT_BILLED.value, BillingStatus.READY_TO_INVOICE.value) and not session.invoice_id:
                client = db.get(Client, session.client_id) if session.client_id else None
                if client is not None and is_prepaid_plan(client.pricing_plan):
                    values["billing_status"] = BillingStatus.FORFEITED.value
                else:
                    invoice = prepare_draft_invoice(db, session, now, cancel_reason=decision.reason)
                    values["billing_status"] = BillingStatus.INVOICE_DRAFT.value
                    values["invoice_id"] = invoice.id
        elif billing.value in _CREDITABLE_BILLING_STATUSES:
            if billing == BillingStatus.INVOICE_DRAFT:
                void_linked_invoice(db, session, now, decision.reason)
                values["invoice_id"] = None
            values["billing_status"] = BillingStatus.CREDITED.value

        swapped = swap_session(
            db,
            session,
            values,
            allowed_statuses=ACTIVE_SESSION_STATUSES,
            expected_billing_statuses=[session.billing_status],
        )
        if not swapped:
            db.rollback()
            raise explain_lost_swap(db, session_id, "cancel")
        _finish(db, session)
    except StudyroomError:
        db.rollback()
        raise

    if invoice is not None:
        db.refresh(invoice)
    logger.info(
        "Session %s cancelled by %s (%s, %.1fh notice, invoice=%s, billing=%s)",
        session_id, initiator, identity.user_id, decision.hours_notice,
        invoice.id if invoice else None, session.billing_status,
    )
    return SessionChange(session=session, invoice=invoice, decision=decision)


# ============================================
# Recurrence
# ============================================

def clamp_weeks(weeks: int) -> int:
    return max(SCHEDULING_RULES["recurring_min_weeks"], min(SCHEDULING_RULES["recurring_max_weeks"], int(weeks)))


def expand_recurring(db: Session, identity: Identity, base_session_id: str, weeks: int) -> SessionChange:
    """
    Create `weeks` weekly copies of a session (clamped to 1..12).

    Copies start exactly 7, 14, ... days after the base and share its series
    key; a base without one gets `series-{base id}`. All copies are written in
    one transaction.
    """
    weeks = clamp_weeks(weeks)
    try:
        base = get_session_or_404(db, base_session_id)
        ensure_can_act_on(base, identity)
        if base.status not in _REPEATABLE_STATUSES:
            raise InvalidTransitionError(
                f"Cannot repeat a session that is {base.status.lower()}.",
                status=base.status,
            )

        series_key = base.series_key or f"series-{base.id}"
        if base.series_key != series_key:
            if not swap_session(db, base, {"series_key": series_key}):
                db.rollback()
                raise explain_lost_swap(db, base_session_id, "repeat")

        base_start, base_end = as_utc(base.start_at), as_utc(base.end_at)
        duration = normalize_duration(base_start, base_end)
        now = utc_now()
        warnings = []
        created = []
        for i in range(1, weeks + 1):
            offset = timedelta(days=7 * i)
            start_at, end_at = base_start + offset, base_end + offset
            warning = _check_overlap(db, identity, base.tutor_id, start_at, end_at)
            if warning:
                warnings.append(warning)
            instance = SessionLog(
                id=new_id(),
                tutor_id=base.tutor_id,
                tutor_email=base.tutor_email,
                student_id=base.student_id,
                client_id=base.client_id,
                start_at=start_at,
                end_at=end_at,
                duration_minutes=duration,
                modality=base.modality,
                status=SessionStatus.SCHEDULED.value,
                billing_status=BillingStatus.NOT_BILLED.value,
                series_key=series_key,
                notes=base.notes,
                version=1,
                created_at=now,
                updated_at=now,
            )
            db.add(instance)
            created.append(instance)
        _finish(db, base)
    except StudyroomError:
        db.rollback()
        raise

    for instance in created:
        db.refresh(instance)
    logger.info(
        "Session %s expanded into %d weekly sessions (series %s) by %s",
        base_session_id, len(created), series_key, identity.user_id,
    )
    return SessionChange(session=base, warning=warnings[0] if warnings else None, created=created)


def update_series(
    db: Session,
    identity: Identity,
    session_id: str,
    new_start: datetime,
    new_end: datetime,
    edit_future: bool = False,
) -> SessionChange:
    """
    Reschedule one instance, or with `edit_future` shift it and every active
    later instance of its series by the same offset.

    Later instances keep their weekly spacing and take the new length.
    """
    session = get_session_or_404(db, session_id)
    if not edit_future or not session.series_key:
        return reschedule_session(db, identity, session_id, new_start, new_end)

    new_start, new_end = as_utc(new_start), as_utc(new_end)
    try:
        ensure_can_act_on(session, identity)
        if session.status not in ACTIVE_SESSION_STATUSES:
            raise InvalidTransitionError(
                f"Cannot reschedule a session that is {session.status.lower()}.",
                status=session.status,
            )
        validate_time_range(new_start, new_end)

        offset = new_start - as_utc(session.start_at)
        length = new_end - new_start
        members = (
            db.query(SessionLog)
            .filter(
                SessionLog.series_key == session.series_key,
                SessionLog.start_at >= session.start_at,
                SessionLog.status.in_(ACTIVE_SESSION_STATUSES),
            )
            .order_by(SessionLog.start_at)
            .all()
        )
        member_ids = [member.id for member in members]

        warning = None
        for member in members:
            ensure_can_act_on(member, identity)
            start_at = as_utc(member.start_at) + offset
            end_at = start_at + length
            validate_time_range(start_at, end_at)
            warning = _check_overlap(db, identity, member.tutor_id, start_at, end_at, member_ids) or warning
            swapped = swap_session(
                db,
                member,
                {
                    "start_at": start_at,
                    "end_at": end_at,
                    "duration_minutes": normalize_duration(start_at, end_at),
                },
                allowed_statuses=ACTIVE_SESSION_STATUSES,
            )
            if not swapped:
                db.rollback()
                raise explain_lost_swap(db, member.id, "reschedule")
        _finish(db, session)
    except StudyroomError:
        db.rollback()
        raise

    for member in members:
        db.refresh(member)
    logger.info(
        "Series %s shifted by %s from session %s (%d sessions) by %s",
        session.series_key, offset, session_id, len(members), identity.user_id,
    )
    return SessionChange(session=session, warning=warning, created=members)
