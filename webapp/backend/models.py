"""
SQLAlchemy models for the Studyroom backend.

Leads come in from the public intake form, are claimed by (or assigned to) a
tutor, and materialize one Client (the family) and one Student. Sessions are
booked against a Student and billed through Invoices.
"""
from uuid import uuid4

from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Boolean, JSON
from sqlalchemy.orm import relationship

from constants import (
    BillingStatus,
    InvoiceStatus,
    InvoiceType,
    LeadStatus,
    OnboardingStatus,
    PricingPlan,
    Role,
    SessionStatus,
    normalize_billing_status,
    normalize_lead_status,
)
from database import Base
from utils.clock import utc_now


def new_id() -> str:
    return uuid4().hex


class UserProfile(Base):
    """
    Staff profile (display name/email) keyed by the identity provider's user id.
    Used to snapshot a tutor's name onto the records they are assigned to.
    """
    __tablename__ = "user_profiles"

    user_id = Column(String(128), primary_key=True)
    name = Column(String(255))
    email = Column(String(255))


class UserRole(Base):
    """Authorization role per user id; a missing row means student."""
    __tablename__ = "roles"

    user_id = Column(String(128), primary_key=True)
    role = Column(String(20), nullable=False, default=Role.STUDENT.value)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class Lead(Base):
    """
    Enrolment intake submitted by a family.
    Claimed exactly once, by a tutor or through admin assignment.
    """
    __tablename__ = "leads"

    id = Column(String(64), primary_key=True, default=new_id)

    # Parent contact
    parent_name = Column(String(255), nullable=False)
    parent_email = Column(String(255), nullable=False)
    parent_phone = Column(String(100))

    # Student basics
    student_name = Column(String(255), nullable=False)
    year_level = Column(String(50))
    school = Column(String(255))
    subjects = Column(JSON, default=list)

    # Mode and location
    mode = Column(String(20), comment='online or in-home')
    suburb = Column(String(255))
    address_line1 = Column(String(255))
    postcode = Column(String(20))

    availability_blocks = Column(JSON, default=list, comment='day x timeslot tokens')
    goals = Column(Text)
    challenges = Column(Text)
    package = Column(String(20), default=PricingPlan.CASUAL.value)
    source = Column(String(20), default='direct-enrol')
    consent = Column(Boolean, default=False)

    # Status tracking
    status = Column(String(20), nullable=False, default=LeadStatus.NEW.value, index=True)

    # Claim (append-only)
    claimed_tutor_id = Column(String(128), index=True)
    claimed_tutor_name = Column(String(255))
    claimed_tutor_email = Column(String(255))
    claimed_at = Column(DateTime(timezone=True))

    # Linkage to materialized records
    client_id = Column(String(64))
    student_id = Column(String(64))

    # Optimistic concurrency token, bumped on every guarded write
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    @property
    def normalized_status(self) -> LeadStatus:
        return normalize_lead_status(self.status)


class Client(Base):
    """
    Parent/guardian billing entity, one per family.
    The assigned-tutor fields are a cache of the students' assignment.
    """
    __tablename__ = "clients"

    id = Column(String(64), primary_key=True, default=new_id)

    parent_name = Column(String(255))
    parent_email = Column(String(255))
    parent_phone = Column(String(100))

    mode = Column(String(20))
    suburb = Column(String(255))
    address_line1 = Column(String(255))
    postcode = Column(String(20))

    # Billing
    pricing_plan = Column(String(20), default=PricingPlan.CASUAL.value)
    rate_per_hour_cents = Column(Integer, comment='Locked hourly rate; NULL uses modality default')

    # Assigned tutor snapshot (recomputed from students)
    assigned_tutor_id = Column(String(128), index=True)
    assigned_tutor_name = Column(String(255))
    assigned_tutor_email = Column(String(255))

    status = Column(String(20), default='active')

    # Onboarding
    onboarding_status = Column(String(20), nullable=False, default=OnboardingStatus.INCOMPLETE.value)
    onboarding_completed_at = Column(DateTime(timezone=True))
    onboarding_completed_by = Column(String(128))

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    # Relationships
    students = relationship("Student", back_populates="client")


class Student(Base):
    """
    A child linked to exactly one Client.
    The student's tutor assignment is the authoritative one.
    """
    __tablename__ = "students"

    id = Column(String(64), primary_key=True, default=new_id)
    client_id = Column(String(64), ForeignKey("clients.id"), nullable=False, index=True)

    student_name = Column(String(255))
    year_level = Column(String(50))
    school = Column(String(255))
    subjects = Column(JSON, default=list)

    mode = Column(String(20))
    suburb = Column(String(255))
    address_line1 = Column(String(255))
    postcode = Column(String(20))
    availability_blocks = Column(JSON, default=list)

    goals = Column(Text)
    challenges = Column(Text)
    package = Column(String(20))

    # Assigned tutor
    assigned_tutor_id = Column(String(128), index=True)
    assigned_tutor_name = Column(String(255))
    assigned_tutor_email = Column(String(255))
    tutor_confirmed_at = Column(DateTime(timezone=True))
    tutor_confirmed_by = Column(String(128))

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    # Relationships
    client = relationship("Client", back_populates="students")
    sessions = relationship("SessionLog", back_populates="student")


class SessionLog(Base):
    """
    One scheduled (or past) tutoring appointment.
    Scheduling status and billing status move independently; see constants.
    """
    __tablename__ = "sessions"

    id = Column(String(64), primary_key=True, default=new_id)
    tutor_id = Column(String(128), nullable=False, index=True)
    tutor_email = Column(String(255))
    student_id = Column(String(64), ForeignKey("students.id"), nullable=False, index=True)
    client_id = Column(String(64), ForeignKey("clients.id"), index=True)

    # Timing
    start_at = Column(DateTime(timezone=True), nullable=False, index=True)
    end_at = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    modality = Column(String(20), nullable=False)

    # Status tracking
    status = Column(String(30), nullable=False, default=SessionStatus.SCHEDULED.value)
    billing_status = Column(String(30), nullable=False, default=BillingStatus.NOT_BILLED.value)
    invoice_id = Column(String(64), comment='Current non-void invoice, if any')

    # Recurring instances share this key
    series_key = Column(String(100), index=True)

    notes = Column(Text)
    cancel_reason = Column(String(500))
    cancelled_by = Column(String(128))

    version = Column(Integer, nullable=False, default=1)

    # Metadata
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    completed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))

    # Relationships
    student = relationship("Student", back_populates="sessions")
    client = relationship("Client")
    invoices = relationship("Invoice", back_populates="session")

    @property
    def normalized_billing_status(self) -> BillingStatus:
        return normalize_billing_status(self.billing_status)


class Invoice(Base):
    """
    Billable unit tied 1:1 to a session.
    Created as DRAFT here; sending/collecting happens in the external sink.
    """
    __tablename__ = "invoices"

    id = Column(String(64), primary_key=True, default=new_id)
    status = Column(String(30), nullable=False, default=InvoiceStatus.DRAFT.value)

    client_id = Column(String(64), ForeignKey("clients.id"), index=True)
    student_id = Column(String(64), ForeignKey("students.id"), index=True)
    session_id = Column(String(64), ForeignKey("sessions.id"), nullable=False, index=True)

    tutor_id = Column(String(128))
    tutor_email = Column(String(255))

    invoice_type = Column(String(20), nullable=False, default=InvoiceType.ONE_OFF.value)
    coverage_start_at = Column(DateTime(timezone=True))
    coverage_end_at = Column(DateTime(timezone=True))

    subtotal_cents = Column(Integer, nullable=False)
    due_at = Column(DateTime(timezone=True), nullable=False)

    tutor_note = Column(Text)
    cancel_reason = Column(String(500))
    external_invoice_id = Column(String(128), comment='Reference returned by the invoicing sink')

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    voided_at = Column(DateTime(timezone=True))

    # Relationships
    session = relationship("SessionLog", back_populates="invoices")
