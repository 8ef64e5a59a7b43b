"""
Shared constants for the backend.

Centralizes lead/session/billing status vocabularies, the allowed session
transitions and the business-policy knobs (rates, notice windows) so every
router and service reads them from one place.
"""
import os
from enum import Enum
from typing import Optional


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class LeadStatus(str, Enum):
    """
    Lead lifecycle statuses.

    Using str + Enum allows direct comparison with string values and JSON serialization.
    """
    NEW = 'new'
    CONTACTED = 'contacted'
    ASSIGNED = 'assigned'
    CONVERTED = 'converted'


# Older documents used these before the assigned/contacted split
LEGACY_LEAD_STATUSES = {
    'claimed': LeadStatus.ASSIGNED,
    'closed': LeadStatus.CONTACTED,
}

# Statuses at which a lead must carry a claimed tutor
CLAIMED_LEAD_STATUSES = [
    LeadStatus.ASSIGNED.value,
    LeadStatus.CONVERTED.value,
]

# Statuses an admin may still assign from
ASSIGNABLE_LEAD_STATUSES = [
    LeadStatus.NEW.value,
    LeadStatus.CONTACTED.value,
]


def normalize_lead_status(raw: Optional[str]) -> LeadStatus:
    """
    Map a stored lead status (including legacy values) onto LeadStatus.

    Missing or unrecognised values read as NEW, matching how intake rows
    without a status were treated.
    """
    if not raw:
        return LeadStatus.NEW
    value = raw.strip().lower()
    if value in LEGACY_LEAD_STATUSES:
        return LEGACY_LEAD_STATUSES[value]
    try:
        return LeadStatus(value)
    except ValueError:
        return LeadStatus.NEW


class LeadMode(str, Enum):
    ONLINE = 'online'
    IN_HOME = 'in-home'


class LeadSource(str, Enum):
    DIRECT_ENROL = 'direct-enrol'
    CONTACT = 'contact'


class PricingPlan(str, Enum):
    CASUAL = 'CASUAL'
    PACKAGE_5 = 'PACKAGE_5'
    PACKAGE_12 = 'PACKAGE_12'
    ONLINE = 'ONLINE'


# Prepaid plans are billed up front, never per session
PREPAID_PRICING_PLANS = [
    PricingPlan.PACKAGE_5.value,
    PricingPlan.PACKAGE_12.value,
]


class OnboardingStatus(str, Enum):
    INCOMPLETE = 'INCOMPLETE'
    COMPLETE = 'COMPLETE'


class Role(str, Enum):
    STUDENT = 'student'
    TUTOR = 'tutor'
    ADMIN = 'admin'


STAFF_ROLES = [Role.TUTOR.value, Role.ADMIN.value]


class Modality(str, Enum):
    IN_HOME = 'IN_HOME'
    ONLINE = 'ONLINE'
    GROUP = 'GROUP'


class SessionStatus(str, Enum):
    """All valid session statuses."""
    SCHEDULED = 'SCHEDULED'
    CONFIRMED = 'CONFIRMED'
    COMPLETED = 'COMPLETED'
    CANCELLED_PARENT = 'CANCELLED_PARENT'
    CANCELLED_STUDYROOM = 'CANCELLED_STUDYROOM'
    NO_SHOW = 'NO_SHOW'


# Allowed session status transitions; anything missing is terminal
SESSION_TRANSITIONS = {
    SessionStatus.SCHEDULED.value: {
        SessionStatus.CONFIRMED.value,
        SessionStatus.COMPLETED.value,
        SessionStatus.CANCELLED_PARENT.value,
        SessionStatus.CANCELLED_STUDYROOM.value,
        SessionStatus.NO_SHOW.value,
    },
    SessionStatus.CONFIRMED.value: {
        SessionStatus.COMPLETED.value,
        SessionStatus.CANCELLED_PARENT.value,
        SessionStatus.CANCELLED_STUDYROOM.value,
        SessionStatus.NO_SHOW.value,
    },
}

# Session statuses that can still be moved, confirmed or cancelled
ACTIVE_SESSION_STATUSES = [
    SessionStatus.SCHEDULED.value,
    SessionStatus.CONFIRMED.value,
]

TERMINAL_SESSION_STATUSES = [
    SessionStatus.COMPLETED.value,
    SessionStatus.CANCELLED_PARENT.value,
    SessionStatus.CANCELLED_STUDYROOM.value,
    SessionStatus.NO_SHOW.value,
]

CANCELLED_SESSION_STATUSES = [
    SessionStatus.CANCELLED_PARENT.value,
    SessionStatus.CANCELLED_STUDYROOM.value,
]


def can_transition(current: str, target: str) -> bool:
    return target in SESSION_TRANSITIONS.get(current, set())


class CancelInitiator(str, Enum):
    PARENT = 'PARENT'
    STUDYROOM = 'STUDYROOM'


CANCEL_STATUS_BY_INITIATOR = {
    CancelInitiator.PARENT.value: SessionStatus.CANCELLED_PARENT.value,
    CancelInitiator.STUDYROOM.value: SessionStatus.CANCELLED_STUDYROOM.value,
}


class BillingStatus(str, Enum):
    """Invoicing state of a session, independent of its scheduling status."""
    NOT_BILLED = 'NOT_BILLED'
    READY_TO_INVOICE = 'READY_TO_INVOICE'
    INVOICE_DRAFT = 'INVOICE_DRAFT'
    INVOICED = 'INVOICED'
    CREDITED = 'CREDITED'
    FORFEITED = 'FORFEITED'


LEGACY_BILLING_STATUSES = {
    'BILLED': BillingStatus.INVOICED,
}

# A draft invoice may only be created from these billing statuses
BILLABLE_BILLING_STATUSES = [
    BillingStatus.NOT_BILLED.value,
    BillingStatus.READY_TO_INVOICE.value,
]


def normalize_billing_status(raw: Optional[str]) -> BillingStatus:
    if not raw:
        return BillingStatus.NOT_BILLED
    value = raw.strip().upper()
    if value in LEGACY_BILLING_STATUSES:
        return LEGACY_BILLING_STATUSES[value]
    return BillingStatus(value)


class InvoiceStatus(str, Enum):
    DRAFT = 'DRAFT'
    SENT = 'SENT'
    PAID = 'PAID'
    VOID = 'VOID'
    CANCELLED_BY_TUTOR = 'CANCELLED_BY_TUTOR'


# Invoices in these statuses no longer count against a session
CLOSED_INVOICE_STATUSES = [
    InvoiceStatus.VOID.value,
    InvoiceStatus.CANCELLED_BY_TUTOR.value,
]


class InvoiceType(str, Enum):
    ONE_OFF = 'ONE_OFF'
    PACKAGE = 'PACKAGE'


class InvoiceMode(str, Enum):
    DRAFT = 'DRAFT'
    AUTHORISED = 'AUTHORISED'


# ============================================
# Pricing and billing policy
# ============================================

DEFAULT_RATE_IN_HOME_CENTS = _env_int("DEFAULT_RATE_IN_HOME_CENTS", 7500)
DEFAULT_RATE_ONLINE_CENTS = _env_int("DEFAULT_RATE_ONLINE_CENTS", 6000)
DEFAULT_RATE_GROUP_CENTS = _env_int("DEFAULT_RATE_GROUP_CENTS", DEFAULT_RATE_IN_HOME_CENTS)

DEFAULT_RATE_CENTS_BY_MODALITY = {
    Modality.IN_HOME.value: DEFAULT_RATE_IN_HOME_CENTS,
    Modality.ONLINE.value: DEFAULT_RATE_ONLINE_CENTS,
    Modality.GROUP.value: DEFAULT_RATE_GROUP_CENTS,
}

# Cancelling inside this window before the start is a late cancellation.
# Confirm with the business before changing: it decides who gets invoiced.
CANCELLATION_NOTICE_HOURS = _env_int("CANCELLATION_NOTICE_HOURS", 48)

# Invoices fall due this long before the session (or immediately if past)
INVOICE_DUE_LEAD_HOURS = _env_int("INVOICE_DUE_LEAD_HOURS", 48)

# Initiators whose late cancellations are invoiced; both by default
LATE_CANCELLATION_BILLABLE_INITIATORS = frozenset(
    value.strip().upper()
    for value in os.getenv("LATE_CANCELLATION_BILLABLE_INITIATORS", "PARENT,STUDYROOM").split(",")
    if value.strip()
)


# ============================================
# Scheduling rules
# ============================================

SCHEDULING_RULES = {
    "buffer_minutes": 10,
    "allowed_start_hour": 7,
    "allowed_end_hour": 20,
    "min_duration_minutes": 15,
    "max_duration_minutes": 120,
    "recurring_min_weeks": 1,
    "recurring_max_weeks": 12,
}

# Wall-clock zone the tutoring window is checked in
SCHEDULING_TIMEZONE = os.getenv("SCHEDULING_TIMEZONE", "UTC")
