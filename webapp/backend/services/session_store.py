"""
Session row access shared by the lifecycle manager and the billing engine.

All state changes to a session go through `swap_session`, a compare-and-swap
on the session's version (and optionally its status/billing status). A zero
row count means somebody else changed the session after we read it; the
caller rolls back and `explain_lost_swap` turns the fresh state into the
right domain error.
"""
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from auth.identity import Identity
from constants import (
    BILLABLE_BILLING_STATUSES,
    CANCELLED_SESSION_STATUSES,
    SCHEDULING_RULES,
    SCHEDULING_TIMEZONE,
    TERMINAL_SESSION_STATUSES,
)
from models import SessionLog
from services.exceptions import (
    AlreadyBilledError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StudyroomError,
    ValidationFailedError,
)
from utils.clock import as_utc, utc_now

def get_session_or_404(db: Session, session_id: str) -> SessionLog:
    if not session_id:
        raise ValidationFailedError("Missing sessionId.")
    session = db.get(SessionLog, session_id)
    if session is None:
        raise NotFoundError("Session not found.", session_id=session_id)
    return session


def ensure_can_act_on(session: SessionLog, identity: Identity) -> None:
    """Tutors may only act on their own sessions; admins on any."""
    if identity.is_admin:
        return
    if not identity.is_staff or session.tutor_id != identity.user_id:
        raise PermissionDeniedError("You can only modify your own sessions.")


def swap_session(
    db: Session,
    session: SessionLog,
    values: dict,
    allowed_statuses: Optional[Iterable[str]] = None,
    expected_billing_statuses: Optional[Iterable[str]] = None,
) -> bool:
    """
    Guarded UPDATE of one session row.

    Matches the version we read, plus the status/billing preconditions when
    given, and bumps the version. Returns False if nothing matched.
    Does not commit.
    """
    query = db.query(SessionLog).filter(
        SessionLog.id == session.id,
        SessionLog.version == session.version,
    )
    if allowed_statuses is not None:
        query = query.filter(SessionLog.status.in_(list(allowed_statuses)))
    if expected_billing_statuses is not None:
        query = query.filter(SessionLog.billing_status.in_(list(expected_billing_statuses)))

    payload = dict(values)
    payload["version"] = session.version + 1
    payload.setdefault("updated_at", utc_now())
    updated = query.update(payload, synchronize_session=False)
    return updated == 1


def explain_lost_swap(db: Session, session_id: str, action: str) -> StudyroomError:
    """
    Build the error for a failed swap, after the caller rolled back.

    Reads the current row: a terminal status means the transition is no
    longer valid, a billing status outside the billable ones means it was
    billed meanwhile.
    """
    current = db.get(SessionLog, session_id)
    if current is None:
        return NotFoundError("Session not found.", session_id=session_id)
    db.refresh(current)
    if current.status in TERMINAL_SESSION_STATUSES:
        return InvalidTransitionError(
            f"Cannot {action} a session that is {current.status.lower()}.",
            status=current.status,
        )
    if current.normalized_billing_status.value not in BILLABLE_BILLING_STATUSES or current.invoice_id:
        return AlreadyBilledError()
    return InvalidTransitionError(
        f"Session was changed by someone else; reload and try again before you {action} it.",
        status=current.status,
    )


# ============================================
# Scheduling rules
# ============================================

def _scheduling_zone():
    if SCHEDULING_TIMEZONE.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(SCHEDULING_TIMEZONE)


def normalize_duration(start_at: datetime, end_at: datetime) -> int:
    """Whole minutes between start and end, never below the 15 minute floor."""
    minutes = round((as_utc(end_at) - as_utc(start_at)).total_seconds() / 60)
    return max(SCHEDULING_RULES["min_duration_minutes"], minutes)


def validate_time_range(start_at: datetime, end_at: datetime) -> None:
    """
    Static scheduling rules: ordered range, maximum length, and the tutoring
    window (single day, 07:00-20:00 in the scheduling timezone).
    """
    start_at, end_at = as_utc(start_at), as_utc(end_at)
    if end_at <= start_at:
        raise ValidationFailedError("End must be after start.", rule="INVALID_TIME_RANGE")

    max_minutes = SCHEDULING_RULES["max_duration_minutes"]
    if (end_at - start_at) > timedelta(minutes=max_minutes):
        raise ValidationFailedError(
            f"Session cannot exceed {max_minutes} minutes.",
            rule="MAX_DURATION_EXCEEDED",
        )

    zone = _scheduling_zone()
    local_start, local_end = start_at.astimezone(zone), end_at.astimezone(zone)
    start_minute = local_start.hour * 60 + local_start.minute
    end_minute = local_end.hour * 60 + local_end.minute
    earliest = SCHEDULING_RULES["allowed_start_hour"] * 60
    latest = SCHEDULING_RULES["allowed_end_hour"] * 60
    if local_start.date() != local_end.date() or start_minute < earliest or end_minute > latest:
        raise ValidationFailedError(
            f"Sessions must be between {SCHEDULING_RULES['allowed_start_hour']:02d}:00 "
            f"and {SCHEDULING_RULES['allowed_end_hour']:02d}:00.",
            rule="OUTSIDE_TUTORING_WINDOW",
        )


def find_conflicting_session(
    db: Session,
    tutor_id: str,
    start_at: datetime,
    end_at: datetime,
    exclude_ids: Optional[List[str]] = None,
) -> Optional[SessionLog]:
    """
    First non-cancelled session of the tutor overlapping [start, end] widened
    by the turnaround buffer on both sides.
    """
    buffer = timedelta(minutes=SCHEDULING_RULES["buffer_minutes"])
    query = db.query(SessionLog).filter(
        SessionLog.tutor_id == tutor_id,
        SessionLog.start_at < as_utc(end_at) + buffer,
        SessionLog.end_at > as_utc(start_at) - buffer,
        SessionLog.status.notin_(CANCELLED_SESSION_STATUSES),
    )
    if exclude_ids:
        query = query.filter(SessionLog.id.notin_(exclude_ids))
    return query.order_by(SessionLog.start_at).first()
