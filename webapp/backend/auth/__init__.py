"""
Authentication module for the Studyroom backend.

Provides:
- JWT bearer token validation
- The verified Identity passed into services
- FastAPI dependencies for route protection
"""

from .jwt_handler import create_access_token, verify_token
from .identity import Identity
from .dependencies import get_current_identity, require_staff, require_admin

__all__ = [
    "create_access_token",
    "verify_token",
    "Identity",
    "get_current_identity",
    "require_staff",
    "require_admin",
]
