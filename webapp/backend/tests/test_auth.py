"""
Tests for bearer-token authentication and role lookup.

Tests cover:
- JWT token creation, verification, and expiry
- Authorization header parsing
- Role lookup from the roles table
- Access control on protected endpoints
"""
import pytest
from datetime import timedelta

from auth.dependencies import lookup_role, resolve_identity, resolve_staff_identity
from auth.jwt_handler import (
    create_access_token,
    get_bearer_token,
    verify_token,
)
from conftest import ADMIN, PARENT_USER, TUTOR_A, bearer
from models import UserRole
from services.exceptions import PermissionDeniedError, UnauthenticatedError


# ============================================================================
# JWT Token Unit Tests
# ============================================================================

class TestCreateAccessToken:
    """Tests for JWT token creation."""

    def test_creates_valid_token(self):
        """Token should be decodable and contain payload."""
        token = create_access_token({"sub": "tutor-a", "email": "alice@studyroom.test"})

        decoded = verify_token(token)
        assert decoded is not None
        assert decoded["sub"] == "tutor-a"
        assert decoded["email"] == "alice@studyroom.test"

    def test_token_has_expiry(self):
        decoded = verify_token(create_access_token({"sub": "tutor-a"}))
        assert "exp" in decoded
        assert "iat" in decoded


class TestVerifyToken:
    """Tests for JWT token verification."""

    def test_expired_token_returns_none(self):
        """Expired token should return None."""
        token = create_access_token({"sub": "tutor-a"}, expires_delta=timedelta(hours=-1))
        assert verify_token(token) is None

    def test_invalid_token_returns_none(self):
        assert verify_token("invalid.token.here") is None

    def test_malformed_token_returns_none(self):
        assert verify_token("not-even-close") is None


class TestGetBearerToken:
    @pytest.mark.parametrize("header,expected", [
        ("Bearer abc.def.ghi", "abc.def.ghi"),
        ("bearer   abc  ", "abc"),
        ("Basic abc", None),
        ("Bearer ", None),
        ("", None),
        (None, None),
    ])
    def test_parses_header(self, header, expected):
        assert get_bearer_token(header) == expected


# ============================================================================
# Identity resolution
# ============================================================================

class TestResolveIdentity:
    def test_valid_token(self):
        identity = resolve_identity(bearer(TUTOR_A)["Authorization"])
        assert identity.user_id == TUTOR_A.user_id
        assert identity.email == TUTOR_A.email
        # Role is resolved separately
        assert not identity.is_staff

    def test_missing_header(self):
        with pytest.raises(UnauthenticatedError, match="Missing"):
            resolve_identity(None)

    def test_expired_token(self):
        token = create_access_token({"sub": "tutor-a"}, expires_delta=timedelta(minutes=-5))
        with pytest.raises(UnauthenticatedError, match="expired"):
            resolve_identity(f"Bearer {token}")

    def test_token_without_subject(self):
        token = create_access_token({"email": "nobody@example.com"})
        with pytest.raises(UnauthenticatedError):
            resolve_identity(f"Bearer {token}")


class TestLookupRole:
    """The roles table is the only source of a caller's role."""

    def test_missing_row_is_student(self, db_session):
        assert lookup_role(db_session, "someone") == "student"

    def test_blank_role_is_student(self, mock_db):
        mock_db.get.return_value = UserRole(user_id="someone", role="")
        assert lookup_role(mock_db, "someone") == "student"
        mock_db.get.assert_called_once_with(UserRole, "someone")

    def test_reads_role_row(self, db_session):
        db_session.add(UserRole(user_id="tutor-a", role="tutor"))
        db_session.commit()
        assert lookup_role(db_session, "tutor-a") == "tutor"

    def test_staff_identity(self, db_session, staff):
        identity = resolve_staff_identity(db_session, bearer(ADMIN)["Authorization"])
        assert identity.is_admin

    def test_student_is_not_staff(self, db_session, staff):
        with pytest.raises(PermissionDeniedError):
            resolve_staff_identity(db_session, bearer(PARENT_USER)["Authorization"])


# ============================================================================
# Endpoint access
# ============================================================================

class TestProtectedEndpointsRequireAuth:
    """Tests that protected endpoints require authentication."""

    @pytest.mark.parametrize("method,path", [
        ("get", "/api/leads"),
        ("post", "/api/sessions/cancel"),
        ("post", "/api/invoices"),
        ("get", "/api/invoices/unbilled"),
    ])
    def test_returns_401_without_token(self, client, method, path):
        response = getattr(client, method)(path)
        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "UNAUTHENTICATED"

    def test_returns_401_with_expired_token(self, client, staff):
        token = create_access_token({"sub": TUTOR_A.user_id}, expires_delta=timedelta(hours=-1))
        response = client.get("/api/leads", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401


class TestRoleBasedAccess:
    """Tests for role-based access control."""

    def test_student_rejected_from_staff_endpoint(self, client, staff):
        response = client.get("/api/leads", headers=bearer(PARENT_USER))
        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "FORBIDDEN"

    def test_tutor_rejected_from_admin_endpoint(self, client, staff):
        response = client.get("/api/invoices/unbilled", headers=bearer(TUTOR_A))
        assert response.status_code == 403

    def test_admin_endpoint_accepts_admin(self, client, staff):
        response = client.get("/api/invoices/unbilled", headers=bearer(ADMIN))
        assert response.status_code == 200
        assert response.json() == []

    def test_email_does_not_grant_a_role(self, client, staff):
        """A token for an admin-looking email without a roles row is still a student."""
        token = create_access_token({"sub": "intruder", "email": ADMIN.email})
        response = client.get("/api/leads", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 403
