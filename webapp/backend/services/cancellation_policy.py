"""
Late-cancellation policy.

Decides whether cancelling a session at a given moment is "late" (inside the
notice window before the start) and therefore still invoiced.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from constants import CANCELLATION_NOTICE_HOURS, LATE_CANCELLATION_BILLABLE_INITIATORS
from utils.clock import as_utc


@dataclass(frozen=True)
class CancellationDecision:
    invoice_triggered: bool
    is_late: bool
    hours_notice: float
    reason: str


def hours_until(session_start: datetime, at: datetime) -> float:
    """Hours between `at` and the session start (negative once started)."""
    return (as_utc(session_start) - as_utc(at)).total_seconds() / 3600


def evaluate_cancellation(
    session_start: datetime,
    cancelled_at: datetime,
    initiator: str,
    notice_hours: int = CANCELLATION_NOTICE_HOURS,
    billable_initiators: Optional[Iterable[str]] = None,
) -> CancellationDecision:
    """
    Evaluate a cancellation against the notice window.

    Late means strictly less than `notice_hours` of notice, including
    cancelling after the session has started. Late cancellations by an
    initiator listed in `billable_initiators` trigger invoicing.
    """
    if billable_initiators is None:
        billable_initiators = LATE_CANCELLATION_BILLABLE_INITIATORS
    billable = {value.upper() for value in billable_initiators}

    notice = hours_until(session_start, cancelled_at)
    is_late = as_utc(cancelled_at) > as_utc(session_start) - timedelta(hours=notice_hours)
    invoice_triggered = is_late and initiator.upper() in billable

    if is_late:
        reason = f"Session fee: late cancellation within {notice_hours} hours (as per policy)"
        if not invoice_triggered:
            reason = f"Late cancellation within {notice_hours} hours: fee waived for {initiator.lower()} cancellation"
    else:
        reason = f"Cancelled with {notice_hours}+ hours notice: no fee"

    return CancellationDecision(
        invoice_triggered=invoice_triggered,
        is_late=is_late,
        hours_notice=round(notice, 2),
        reason=reason,
    )
