"""
Lead intake, claiming and assignment.

Claiming turns an open Lead into one Client (the family) and one Student, both
addressed by the lead id so a retried claim lands on the same records. The
precondition check and the lead write happen in one transaction, and the lead
write is a compare-and-swap on `Lead.version`: if another tutor committed a
claim after our read, zero rows match and the claim fails as already claimed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth.identity import Identity
from constants import (
    ASSIGNABLE_LEAD_STATUSES,
    CLAIMED_LEAD_STATUSES,
    LeadMode,
    LeadStatus,
    OnboardingStatus,
    PricingPlan,
    STAFF_ROLES,
)
from models import Client, Lead, Student, UserProfile, UserRole
from services.exceptions import (
    AlreadyClaimedError,
    InvalidTransitionError,
    NotFoundError,
    NotOpenError,
    PermissionDeniedError,
    StudyroomError,
    ValidationFailedError,
)
from utils.clock import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimResult:
    lead_id: str
    client_id: str
    student_id: str
    tutor_id: str


# ============================================
# Intake
# ============================================

def create_lead(db: Session, payload) -> Lead:
    """
    Store a public enrolment submission as a new Lead.

    `payload` is a validated LeadCreate; the cross-field rules (consent,
    suburb for in-home tutoring) are enforced here.
    """
    if not payload.consent:
        raise ValidationFailedError("Consent is required to submit enrolment.")
    if payload.mode == LeadMode.IN_HOME.value and not (payload.suburb or "").strip():
        raise ValidationFailedError("Suburb is required for in-home tutoring.")

    lead = Lead(
        parent_name=payload.parent_name,
        parent_email=payload.parent_email,
        parent_phone=payload.parent_phone,
        student_name=payload.student_name,
        year_level=payload.year_level,
        school=payload.school,
        subjects=list(payload.subjects),
        mode=payload.mode,
        suburb=payload.suburb,
        address_line1=payload.address_line1,
        postcode=payload.postcode,
        availability_blocks=list(payload.availability_blocks),
        goals=payload.goals,
        challenges=payload.challenges,
        package=payload.package,
        source=payload.source,
        consent=True,
        status=LeadStatus.NEW.value,
    )
    db.add(lead)
    db.commit()
    db.refresh(lead)
    logger.info("Lead %s created from %s intake", lead.id, lead.source)
    return lead


# ============================================
# Claim / assignment
# ============================================

def _tutor_snapshot(db: Session, tutor_id: str, fallback_email: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """(display name, email) for a tutor, read inside the caller's transaction."""
    profile = db.get(UserProfile, tutor_id)
    if profile is None:
        return None, fallback_email
    return profile.name, fallback_email or profile.email


def _load_lead(db: Session, lead_id: str) -> Optional[Lead]:
    return db.query(Lead).filter(Lead.id == lead_id).with_for_update().first()


def _check_claimable(lead: Optional[Lead], lead_id: str) -> Lead:
    if lead is None:
        raise NotFoundError("Lead not found.", lead_id=lead_id)
    if lead.claimed_tutor_id:
        raise AlreadyClaimedError()
    if lead.normalized_status != LeadStatus.NEW:
        raise NotOpenError()
    return lead


def _package_plan(raw: Optional[str]) -> str:
    try:
        return PricingPlan((raw or "").upper()).value
    except ValueError:
        return PricingPlan.CASUAL.value


def _swap_lead_assignment(
    db: Session,
    lead: Lead,
    tutor_id: str,
    tutor_name: Optional[str],
    tutor_email: Optional[str],
    now: datetime,
) -> bool:
    """
    Compare-and-swap the claim onto the lead row.

    Matches only the version we read and an empty claim; returns False when a
    concurrent writer got there first.
    """
    updated = db.query(Lead).filter(
        Lead.id == lead.id,
        Lead.version == lead.version,
        Lead.claimed_tutor_id.is_(None),
    ).update(
        {
            Lead.status: LeadStatus.ASSIGNED.value,
            Lead.claimed_tutor_id: tutor_id,
            Lead.claimed_tutor_name: tutor_name,
            Lead.claimed_tutor_email: tutor_email,
            Lead.claimed_at: now,
            Lead.client_id: lead.id,
            Lead.student_id: lead.id,
            Lead.version: lead.version + 1,
            Lead.updated_at: now,
        },
        synchronize_session=False,
    )
    return updated == 1


def _materialize_records(
    db: Session,
    lead: Lead,
    tutor_id: str,
    tutor_name: Optional[str],
    tutor_email: Optional[str],
    now: datetime,
) -> Tuple[Client, Student]:
    """Merge-upsert the Client and Student for a lead, both keyed by lead id."""
    client = db.get(Client, lead.id)
    if client is None:
        client = Client(id=lead.id, created_at=now)
        db.add(client)
    client.parent_name = lead.parent_name
    client.parent_email = lead.parent_email
    client.parent_phone = lead.parent_phone
    client.mode = lead.mode
    client.suburb = lead.suburb
    client.address_line1 = lead.address_line1
    client.postcode = lead.postcode
    client.pricing_plan = _package_plan(lead.package)
    client.status = "active"
    client.updated_at = now

    student = db.get(Student, lead.id)
    if student is None:
        student = Student(id=lead.id, created_at=now)
        db.add(student)
    student.client_id = client.id
    student.student_name = lead.student_name
    student.year_level = lead.year_level
    student.school = lead.school
    student.subjects = list(lead.subjects or [])
    student.mode = lead.mode
    student.suburb = lead.suburb
    student.address_line1 = lead.address_line1
    student.postcode = lead.postcode
    student.availability_blocks = list(lead.availability_blocks or [])
    student.package = lead.package
    student.goals = lead.goals
    student.challenges = lead.challenges
    student.assigned_tutor_id = tutor_id
    student.assigned_tutor_name = tutor_name
    student.assigned_tutor_email = tutor_email
    # A new assignment needs a fresh confirmation from the tutor
    student.tutor_confirmed_at = None
    student.tutor_confirmed_by = None
    student.updated_at = now

    db.flush()
    sync_client_assignment(db, client.id)
    return client, student


def _commit_assignment(db: Session, lead: Lead, tutor_id: str, tutor_email: Optional[str]) -> ClaimResult:
    """Shared tail of claim and admin assignment; caller handles rollback."""
    now = utc_now()
    tutor_name, tutor_email = _tutor_snapshot(db, tutor_id, tutor_email)

    if not _swap_lead_assignment(db, lead, tutor_id, tutor_name, tutor_email, now):
        logger.warning("Lead %s claim lost a concurrent update (tutor %s)", lead.id, tutor_id)
        raise AlreadyClaimedError()

    client, student = _materialize_records(db, lead, tutor_id, tutor_name, tutor_email, now)
    db.commit()
    return ClaimResult(lead_id=lead.id, client_id=client.id, student_id=student.id, tutor_id=tutor_id)


def claim_lead(db: Session, lead_id: str, identity: Identity) -> ClaimResult:
    """
    Assign an open lead to the calling tutor, exactly once.

    Raises NotFoundError, AlreadyClaimedError or NotOpenError; on any failure
    the transaction is rolled back and nothing is written.
    """
    if not lead_id:
        raise ValidationFailedError("Missing leadId.")

    try:
        lead = _check_claimable(_load_lead(db, lead_id), lead_id)
        result = _commit_assignment(db, lead, identity.user_id, identity.email)
    except StudyroomError:
        db.rollback()
        raise
    except IntegrityError:
        # Client/student rows appeared under us: another claim committed
        db.rollback()
        logger.warning("Lead %s claim hit a uniqueness conflict", lead_id)
        raise AlreadyClaimedError()

    logger.info("Lead %s claimed by tutor %s", lead_id, identity.user_id)
    return result


def assign_lead(db: Session, lead_id: str, tutor_id: str, admin: Identity) -> ClaimResult:
    """
    Admin assignment of an unclaimed lead to a tutor.

    Same transactional discipline as claim_lead; also allowed from
    `contacted`, since admins follow up with families before assigning.
    """
    if not admin.is_admin:
        raise PermissionDeniedError("Admin access required.")

    tutor_role = db.get(UserRole, tutor_id)
    if tutor_role is None or tutor_role.role not in STAFF_ROLES:
        raise ValidationFailedError("Assignee is not a tutor.", tutor_id=tutor_id)

    try:
        lead = _load_lead(db, lead_id)
        if lead is None:
            raise NotFoundError("Lead not found.", lead_id=lead_id)
        if lead.claimed_tutor_id:
            raise AlreadyClaimedError()
        if lead.normalized_status.value not in ASSIGNABLE_LEAD_STATUSES:
            raise NotOpenError()
        profile = db.get(UserProfile, tutor_id)
        result = _commit_assignment(db, lead, tutor_id, profile.email if profile else None)
    except StudyroomError:
        db.rollback()
        raise
    except IntegrityError:
        db.rollback()
        raise AlreadyClaimedError()

    logger.info("Lead %s assigned to tutor %s by admin %s", lead_id, tutor_id, admin.user_id)
    return result


# ============================================
# Admin status updates
# ============================================

def update_lead_status(db: Session, lead_id: str, status: str, admin: Identity) -> Lead:
    """
    Admin follow-up on a lead: mark it contacted, or converted once claimed.

    A claim is never set or cleared here; `assigned` is reached only through
    claim_lead/assign_lead, and a claimed lead cannot return to new or
    contacted. The write is a compare-and-swap on `Lead.version`.
    """
    if not admin.is_admin:
        raise PermissionDeniedError("Admin access required.")
    try:
        target = LeadStatus((status or "").strip().lower())
    except ValueError:
        raise ValidationFailedError("Unknown lead status.", status=status)

    try:
        lead = _load_lead(db, lead_id)
        if lead is None:
            raise NotFoundError("Lead not found.", lead_id=lead_id)
        current = lead.normalized_status
        claimed = bool(lead.claimed_tutor_id)

        if target.value in CLAIMED_LEAD_STATUSES and not claimed:
            raise InvalidTransitionError(
                "Lead must be claimed or assigned first.",
                current=current.value, target=target.value,
            )
        if target.value not in CLAIMED_LEAD_STATUSES and claimed:
            raise InvalidTransitionError(
                "A claimed lead cannot be reopened.",
                current=current.value, target=target.value,
            )

        now = utc_now()
        updated = db.query(Lead).filter(
            Lead.id == lead.id,
            Lead.version == lead.version,
        ).update(
            {
                Lead.status: target.value,
                Lead.version: lead.version + 1,
                Lead.updated_at: now,
            },
            synchronize_session=False,
        )
        if updated != 1:
            logger.warning("Lead %s status update lost a concurrent write", lead_id)
            raise InvalidTransitionError(
                "Lead changed while updating; reload and retry.",
                current=current.value, target=target.value,
            )
        db.commit()
    except StudyroomError:
        db.rollback()
        raise

    db.refresh(lead)
    logger.info("Lead %s moved %s -> %s by admin %s", lead_id, current.value, target.value, admin.user_id)
    return lead


# ============================================
# Assignment snapshot reconciliation
# ============================================

def sync_client_assignment(db: Session, client_id: str) -> Optional[Client]:
    """
    Recompute a Client's assigned-tutor snapshot from its students.

    Student assignment is authoritative; the client copies the most recently
    updated assigned student, or clears the snapshot when none is assigned.
    Does not commit.
    """
    client = db.get(Client, client_id)
    if client is None:
        return None

    source = db.query(Student).filter(
        Student.client_id == client_id,
        Student.assigned_tutor_id.isnot(None),
    ).order_by(Student.updated_at.desc(), Student.id).first()

    client.assigned_tutor_id = source.assigned_tutor_id if source else None
    client.assigned_tutor_name = source.assigned_tutor_name if source else None
    client.assigned_tutor_email = source.assigned_tutor_email if source else None
    return client


# ============================================
# Post-claim confirmations
# ============================================

def confirm_student(db: Session, student_id: str, identity: Identity) -> Student:
    """The assigned tutor (or an admin) confirms they have taken the student on."""
    student = db.get(Student, student_id)
    if student is None:
        raise NotFoundError("Student not found.", student_id=student_id)
    if not identity.is_admin and student.assigned_tutor_id != identity.user_id:
        raise PermissionDeniedError("Student is assigned to another tutor.")

    student.tutor_confirmed_at = utc_now()
    student.tutor_confirmed_by = identity.user_id
    db.commit()
    db.refresh(student)
    logger.info("Student %s confirmed by %s", student_id, identity.user_id)
    return student


def complete_onboarding(
    db: Session,
    client_id: str,
    identity: Identity,
    pricing_plan: Optional[str] = None,
    rate_per_hour_cents: Optional[int] = None,
) -> Client:
    """
    Mark a client's onboarding COMPLETE, optionally locking plan and rate.

    The assigned tutor may complete onboarding; plan and rate drive billing
    and are admin-only.
    """
    client = db.get(Client, client_id)
    if client is None:
        raise NotFoundError("Client not found.", client_id=client_id)
    if not identity.is_admin and client.assigned_tutor_id != identity.user_id:
        raise PermissionDeniedError("Client is assigned to another tutor.")
    if not identity.is_admin and (pricing_plan is not None or rate_per_hour_cents is not None):
        raise PermissionDeniedError("Only admins can set a client's plan or rate.")
    if rate_per_hour_cents is not None and rate_per_hour_cents < 0:
        raise ValidationFailedError("Rate must not be negative.")

    if pricing_plan is not None:
        client.pricing_plan = _package_plan(pricing_plan)
    if rate_per_hour_cents is not None:
        client.rate_per_hour_cents = rate_per_hour_cents or None
    client.onboarding_status = OnboardingStatus.COMPLETE.value
    client.onboarding_completed_at = utc_now()
    client.onboarding_completed_by = identity.user_id
    db.commit()
    db.refresh(client)
    logger.info("Client %s onboarding completed by %s", client_id, identity.user_id)
    return client
