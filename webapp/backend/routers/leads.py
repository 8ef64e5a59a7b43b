"""
Leads API endpoints.
Public intake, tutor claiming, admin assignment and the post-claim
confirmations on students and clients.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth.dependencies import lookup_role, require_admin, require_staff, resolve_identity
from auth.identity import Identity
from constants import LEGACY_LEAD_STATUSES, LeadStatus
from database import get_db
from models import Lead
from schemas import (
    ClaimResponse,
    ClientResponse,
    LeadAssignRequest,
    LeadCreate,
    LeadCreateResponse,
    LeadResponse,
    LeadStatusUpdate,
    OnboardingComplete,
    StudentResponse,
)
from services import claims
from services.exceptions import PermissionDeniedError, StudyroomError
from utils.errors import envelope_error, raise_http
from utils.rate_limiter import check_ip_rate_limit, check_user_rate_limit

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/leads", response_model=LeadCreateResponse)
async def create_lead(
    payload: LeadCreate,
    request: Request,
    db: Session = Depends(get_db)
):
    """Public enrolment form submission. No authentication."""
    check_ip_rate_limit(request, "lead_intake")
    try:
        lead = claims.create_lead(db, payload)
    except StudyroomError as e:
        raise_http(e)
    return LeadCreateResponse(lead_id=lead.id)


@router.get("/leads", response_model=List[LeadResponse])
async def list_leads(
    status: Optional[str] = Query(None, description="Filter by status (legacy values accepted)"),
    limit: int = Query(100, ge=1, le=500, description="Maximum number of results"),
    offset: int = Query(0, ge=0, description="Number of results to skip"),
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """
    List leads, newest first.

    - **status**: new, contacted, assigned or converted; rows stored with the
      legacy `claimed`/`closed` values match their normalized status
    """
    query = db.query(Lead)
    if status:
        wanted = status.strip().lower()
        stored = [wanted] + [legacy for legacy, current in LEGACY_LEAD_STATUSES.items() if current.value == wanted]
        if wanted == LeadStatus.NEW.value:
            query = query.filter((Lead.status.in_(stored)) | (Lead.status.is_(None)))
        else:
            query = query.filter(Lead.status.in_(stored))
    leads = query.order_by(Lead.created_at.desc()).offset(offset).limit(limit).all()
    return [LeadResponse.model_validate(lead) for lead in leads]


@router.post("/leads/{lead_id}/claim", response_model=ClaimResponse)
async def claim_lead(
    lead_id: str,
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db)
):
    """
    Claim an open lead for the calling tutor.

    Responds `{ok: true, studentId}` or `{ok: false, error}` with a 4xx status.
    """
    try:
        identity = resolve_identity(authorization)
        identity = Identity(user_id=identity.user_id, email=identity.email, role=lookup_role(db, identity.user_id))
        if not identity.is_staff:
            logger.warning("Non-staff user %s attempted to claim lead %s", identity.user_id, lead_id)
            raise PermissionDeniedError("Only tutors can claim leads.")
        check_user_rate_limit(identity.user_id, "lead_claim")
        result = claims.claim_lead(db, lead_id, identity)
    except StudyroomError as e:
        return envelope_error(e)
    except HTTPException as e:
        # Rate limited
        return JSONResponse(status_code=e.status_code, content={"ok": False, "error": e.detail}, headers=e.headers)

    return ClaimResponse(student_id=result.student_id, client_id=result.client_id)


@router.post("/leads/{lead_id}/assign", response_model=ClaimResponse)
async def assign_lead(
    lead_id: str,
    payload: LeadAssignRequest,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Admin assignment of an unclaimed lead to a tutor."""
    try:
        result = claims.assign_lead(db, lead_id, payload.tutor_id, admin)
    except StudyroomError as e:
        raise_http(e)
    return ClaimResponse(student_id=result.student_id, client_id=result.client_id)


@router.post("/leads/{lead_id}/status", response_model=LeadResponse)
async def update_lead_status(
    lead_id: str,
    payload: LeadStatusUpdate,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Admin follow-up: mark a lead contacted, or converted once it is claimed."""
    try:
        lead = claims.update_lead_status(db, lead_id, payload.status, admin)
    except StudyroomError as e:
        raise_http(e)
    return LeadResponse.model_validate(lead)


@router.post("/students/{student_id}/confirm", response_model=StudentResponse)
async def confirm_student(
    student_id: str,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """The assigned tutor confirms they have taken the student on."""
    try:
        student = claims.confirm_student(db, student_id, identity)
    except StudyroomError as e:
        raise_http(e)
    return StudentResponse.model_validate(student)


@router.post("/clients/{client_id}/onboarding/complete", response_model=ClientResponse)
async def complete_onboarding(
    client_id: str,
    payload: Optional[OnboardingComplete] = None,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """Mark a client's onboarding COMPLETE, optionally locking plan and rate."""
    payload = payload or OnboardingComplete()
    try:
        client = claims.complete_onboarding(
            db, client_id, identity,
            pricing_plan=payload.pricing_plan,
            rate_per_hour_cents=payload.rate_per_hour_cents,
        )
    except StudyroomError as e:
        raise_http(e)
    return ClientResponse.model_validate(client)
