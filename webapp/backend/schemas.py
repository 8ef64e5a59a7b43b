"""
Pydantic schemas for API request/response validation.
These define the structure of data sent to and from the API.

Field names are snake_case in Python and camelCase on the wire (sessionId,
studentId, ...); requests accept either.
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List
from datetime import datetime

from constants import (
    CancelInitiator,
    InvoiceMode,
    LeadMode,
    LeadSource,
    Modality,
    PricingPlan,
    normalize_billing_status,
    normalize_lead_status,
)


class ApiModel(BaseModel):
    """Base for every API schema: camelCase aliases, ORM reads."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ============================================
# Lead Schemas
# ============================================

class LeadCreate(ApiModel):
    """Public enrolment intake"""
    parent_name: str = Field(..., min_length=1, max_length=255)
    parent_email: str = Field(..., min_length=3, max_length=255)
    parent_phone: Optional[str] = Field(None, max_length=100)
    student_name: str = Field(..., min_length=1, max_length=255)
    year_level: Optional[str] = Field(None, max_length=50)
    school: Optional[str] = Field(None, max_length=255)
    subjects: List[str] = []
    mode: LeadMode = LeadMode.ONLINE
    suburb: Optional[str] = Field(None, max_length=255)
    address_line1: Optional[str] = Field(None, max_length=255)
    postcode: Optional[str] = Field(None, max_length=20)
    availability_blocks: List[str] = []
    goals: Optional[str] = Field(None, max_length=5000)
    challenges: Optional[str] = Field(None, max_length=5000)
    package: PricingPlan = PricingPlan.CASUAL
    source: LeadSource = LeadSource.DIRECT_ENROL
    consent: bool = False

    model_config = ConfigDict(use_enum_values=True)

    @field_validator('parent_email')
    @classmethod
    def email_has_at(cls, v: str) -> str:
        v = v.strip().lower()
        if '@' not in v:
            raise ValueError('Invalid email address')
        return v

    @field_validator('subjects', 'availability_blocks')
    @classmethod
    def dedupe(cls, v: List[str]) -> List[str]:
        # Sets of tokens; keep first-seen order
        seen = []
        for item in v:
            item = item.strip()
            if item and item not in seen:
                seen.append(item)
        return seen


class LeadCreateResponse(ApiModel):
    ok: bool = True
    lead_id: str


class LeadResponse(ApiModel):
    """Lead as shown to tutors; legacy statuses are normalized"""
    id: str
    parent_name: str
    parent_email: str
    parent_phone: Optional[str] = None
    student_name: str
    year_level: Optional[str] = None
    school: Optional[str] = None
    subjects: List[str] = []
    mode: Optional[str] = None
    suburb: Optional[str] = None
    postcode: Optional[str] = None
    availability_blocks: List[str] = []
    goals: Optional[str] = None
    challenges: Optional[str] = None
    package: Optional[str] = None
    source: Optional[str] = None
    status: str
    claimed_tutor_id: Optional[str] = None
    claimed_tutor_name: Optional[str] = None
    claimed_at: Optional[datetime] = None
    client_id: Optional[str] = None
    student_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator('status', mode='before')
    @classmethod
    def normalize_status(cls, v: Optional[str]) -> str:
        return normalize_lead_status(v).value

    @field_validator('subjects', 'availability_blocks', mode='before')
    @classmethod
    def none_as_empty(cls, v):
        return v or []


class ClaimResponse(ApiModel):
    ok: bool = True
    student_id: str
    client_id: Optional[str] = None


class LeadAssignRequest(ApiModel):
    tutor_id: str = Field(..., min_length=1, max_length=128)


class LeadStatusUpdate(ApiModel):
    """Admin follow-up status: contacted, converted (claimed leads only)"""
    status: str = Field(..., min_length=1, max_length=20)


# ============================================
# Student / Client Schemas
# ============================================

class StudentResponse(ApiModel):
    id: str
    client_id: str
    student_name: Optional[str] = None
    year_level: Optional[str] = None
    assigned_tutor_id: Optional[str] = None
    assigned_tutor_name: Optional[str] = None
    tutor_confirmed_at: Optional[datetime] = None
    tutor_confirmed_by: Optional[str] = None


class OnboardingComplete(ApiModel):
    """Optional plan/rate to lock in when onboarding completes"""
    pricing_plan: Optional[PricingPlan] = None
    rate_per_hour_cents: Optional[int] = Field(None, ge=0)

    model_config = ConfigDict(use_enum_values=True)


class ClientResponse(ApiModel):
    id: str
    parent_name: Optional[str] = None
    parent_email: Optional[str] = None
    pricing_plan: Optional[str] = None
    rate_per_hour_cents: Optional[int] = None
    assigned_tutor_id: Optional[str] = None
    assigned_tutor_name: Optional[str] = None
    onboarding_status: str
    onboarding_completed_at: Optional[datetime] = None
    onboarding_completed_by: Optional[str] = None


# ============================================
# Session Schemas
# ============================================

class SessionCreate(ApiModel):
    student_id: str = Field(..., min_length=1)
    start_at: datetime
    duration_minutes: int = Field(..., gt=0, le=24 * 60)
    modality: Modality
    notes: Optional[str] = Field(None, max_length=5000)
    tutor_id: Optional[str] = Field(None, description="Admins only: book for this tutor")

    model_config = ConfigDict(use_enum_values=True)


class SessionReschedule(ApiModel):
    session_id: str = Field(..., min_length=1)
    new_start: datetime
    new_end: datetime


class SessionCancel(ApiModel):
    session_id: str = Field(..., min_length=1)
    initiator: CancelInitiator
    reason: Optional[str] = Field(None, max_length=500)

    model_config = ConfigDict(use_enum_values=True)


class RecurringExpand(ApiModel):
    weeks: int = Field(4, description="Clamped to 1..12")


class SeriesUpdate(ApiModel):
    session_id: str = Field(..., min_length=1)
    new_start: datetime
    new_end: datetime
    edit_future: bool = False


class SessionComplete(ApiModel):
    invoice_now: bool = False


class SessionResponse(ApiModel):
    id: str
    tutor_id: str
    tutor_email: Optional[str] = None
    student_id: str
    client_id: Optional[str] = None
    start_at: datetime
    end_at: datetime
    duration_minutes: int
    modality: str
    status: str
    billing_status: str
    invoice_id: Optional[str] = None
    series_key: Optional[str] = None
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    version: int
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @field_validator('billing_status', mode='before')
    @classmethod
    def normalize_billing(cls, v: Optional[str]) -> str:
        return normalize_billing_status(v).value


class InvoiceResponse(ApiModel):
    id: str
    status: str
    session_id: str
    client_id: Optional[str] = None
    student_id: Optional[str] = None
    tutor_id: Optional[str] = None
    invoice_type: str
    subtotal_cents: int
    due_at: datetime
    coverage_start_at: Optional[datetime] = None
    coverage_end_at: Optional[datetime] = None
    tutor_note: Optional[str] = None
    cancel_reason: Optional[str] = None
    external_invoice_id: Optional[str] = None


class SessionChangeResponse(ApiModel):
    """Effect summary returned by every session mutation"""
    ok: bool = True
    session: SessionResponse
    warning: Optional[str] = None
    invoice_ready: bool = False
    invoice_triggered: bool = False
    is_late: Optional[bool] = None
    invoice: Optional[InvoiceResponse] = None
    sessions: List[SessionResponse] = []


# ============================================
# Invoice Schemas
# ============================================

class InvoiceCreate(ApiModel):
    session_id: str = Field(..., min_length=1)
    mode: InvoiceMode = InvoiceMode.DRAFT
    tutor_note: Optional[str] = Field(None, max_length=2000)

    model_config = ConfigDict(use_enum_values=True)


class InvoiceVoid(ApiModel):
    session_id: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=500)
