"""
FastAPI dependencies for authentication and authorization.

Identity comes from a verified bearer token; the role is looked up once per
request in the roles table, never inferred from an email address.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from constants import Role, STAFF_ROLES
from database import get_db
from models import UserRole
from services.exceptions import PermissionDeniedError, UnauthenticatedError
from .identity import Identity
from .jwt_handler import get_bearer_token, verify_token


def resolve_identity(authorization: Optional[str]) -> Identity:
    """
    Verify the bearer token and return the caller's (user_id, email).

    Raises UnauthenticatedError when the header is missing or the token is
    invalid/expired. The role is not resolved here.
    """
    token = get_bearer_token(authorization)
    if not token:
        raise UnauthenticatedError("Missing Authorization token.")

    payload = verify_token(token)
    if not payload:
        raise UnauthenticatedError("Invalid or expired token.")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthenticatedError("Invalid token payload.")

    return Identity(user_id=str(user_id), email=payload.get("email"))


def lookup_role(db: Session, user_id: str) -> str:
    """Role for a user id; users without a roles row are students."""
    row = db.get(UserRole, user_id)
    return row.role if row and row.role else Role.STUDENT.value


def resolve_staff_identity(db: Session, authorization: Optional[str]) -> Identity:
    """
    Verified identity with its role, required to be tutor or admin.

    Raises UnauthenticatedError or PermissionDeniedError.
    """
    identity = resolve_identity(authorization)
    role = lookup_role(db, identity.user_id)
    if role not in STAFF_ROLES:
        raise PermissionDeniedError("Not permitted.")
    return Identity(user_id=identity.user_id, email=identity.email, role=role)


def get_current_identity(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Identity:
    """
    Get the authenticated caller, with role, from the Authorization header.

    Raises HTTPException 401 if not authenticated.

    Usage:
        @router.get("/protected")
        def protected_route(identity: Identity = Depends(get_current_identity)):
            ...
    """
    try:
        identity = resolve_identity(authorization)
    except UnauthenticatedError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.to_dict(),
        )
    return Identity(
        user_id=identity.user_id,
        email=identity.email,
        role=lookup_role(db, identity.user_id),
    )


def require_staff(
    identity: Identity = Depends(get_current_identity),
) -> Identity:
    """
    Require the caller to be a tutor or an admin.

    Raises HTTPException 403 otherwise.
    """
    if not identity.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=PermissionDeniedError("Tutor or admin access required.").to_dict(),
        )
    return identity


def require_admin(
    identity: Identity = Depends(get_current_identity),
) -> Identity:
    """
    Require the caller to be an admin.

    Raises HTTPException 403 if not an admin.
    """
    if not identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=PermissionDeniedError("Admin access required.").to_dict(),
        )
    return identity
