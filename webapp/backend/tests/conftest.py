"""
Pytest fixtures for backend tests.

Usage:
    pytest tests/ --cov=. --cov-report=html
"""
import os
import pytest
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator
from unittest.mock import MagicMock

# Set test environment before importing app modules
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-testing-only")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULING_TIMEZONE", "UTC")
os.environ.pop("INVOICE_SINK_URL", None)

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from auth.identity import Identity
from auth.jwt_handler import create_access_token
from constants import BillingStatus, Modality, SessionStatus
from database import Base, get_db
from main import app
from models import Client, Lead, SessionLog, Student, UserProfile, UserRole, new_id
from utils.rate_limiter import clear_rate_limits


# In-memory SQLite for fast tests (no external DB dependency)
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    SQLALCHEMY_TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

# A weekday well in the future, inside the 07:00-20:00 tutoring window
BASE_START = datetime(2030, 3, 4, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    clear_rate_limits()
    yield
    clear_rate_limits()


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """
    Create a fresh database session for each test.
    Tables are created before and dropped after each test.
    """
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """
    FastAPI test client with overridden database dependency.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def file_sessions(tmp_path) -> Generator[sessionmaker, None, None]:
    """
    Session factory on a file-backed SQLite database.

    Each session gets its own connection, so tests can interleave two
    transactions the way two concurrent requests would.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def mock_db() -> MagicMock:
    """
    Mock database session for unit tests that don't need real DB.
    """
    return MagicMock(spec=Session)


# ============================================================================
# Identities
# ============================================================================

TUTOR_A = Identity(user_id="tutor-a", email="alice@studyroom.test", role="tutor")
TUTOR_B = Identity(user_id="tutor-b", email="ben@studyroom.test", role="tutor")
ADMIN = Identity(user_id="admin-1", email="owner@studyroom.test", role="admin")
PARENT_USER = Identity(user_id="parent-1", email="parent@example.com", role="student")


def add_staff(db: Session) -> None:
    """Roles and profiles for the test tutors and admin."""
    for identity, name in ((TUTOR_A, "Alice Tutor"), (TUTOR_B, "Ben Tutor"), (ADMIN, "Owner")):
        db.add(UserRole(user_id=identity.user_id, role=identity.role))
        db.add(UserProfile(user_id=identity.user_id, name=name, email=identity.email))
    db.commit()


def bearer(identity: Identity) -> dict:
    token = create_access_token({"sub": identity.user_id, "email": identity.email})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def staff(db_session: Session) -> dict:
    add_staff(db_session)
    return {"tutor_a": TUTOR_A, "tutor_b": TUTOR_B, "admin": ADMIN}


# ============================================================================
# Sample Data Fixtures
# ============================================================================

def sample_lead_data(**overrides) -> dict:
    data = {
        "parent_name": "Pat Parent",
        "parent_email": "pat@example.com",
        "parent_phone": "0400 000 000",
        "student_name": "Sam Student",
        "year_level": "Year 9",
        "school": "Northside High",
        "subjects": ["Maths", "Physics"],
        "mode": "in-home",
        "suburb": "Newtown",
        "address_line1": "1 King St",
        "postcode": "2042",
        "availability_blocks": ["mon-afternoon", "wed-evening"],
        "goals": "Build confidence for exams",
        "challenges": "Algebra",
        "package": "CASUAL",
        "source": "direct-enrol",
        "consent": True,
        "status": "new",
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_lead(db_session: Session) -> Callable[..., Lead]:
    def _make(**overrides) -> Lead:
        lead = Lead(id=overrides.pop("id", new_id()), **sample_lead_data(**overrides))
        db_session.add(lead)
        db_session.commit()
        return lead
    return _make


@pytest.fixture
def assigned_student(db_session: Session, staff) -> Student:
    """A casual-plan family with one student assigned to tutor A."""
    client = Client(
        id="client-1",
        parent_name="Pat Parent",
        parent_email="pat@example.com",
        pricing_plan="CASUAL",
        assigned_tutor_id=TUTOR_A.user_id,
        assigned_tutor_email=TUTOR_A.email,
    )
    student = Student(
        id="student-1",
        client_id=client.id,
        student_name="Sam Student",
        assigned_tutor_id=TUTOR_A.user_id,
        assigned_tutor_name="Alice Tutor",
        assigned_tutor_email=TUTOR_A.email,
    )
    db_session.add_all([client, student])
    db_session.commit()
    return student


@pytest.fixture
def make_session(db_session: Session, assigned_student: Student) -> Callable[..., SessionLog]:
    """Insert a session for tutor A's student directly, bypassing the lifecycle rules."""
    def _make(start_at: datetime = BASE_START, duration_minutes: int = 60, **overrides) -> SessionLog:
        values = {
            "id": new_id(),
            "tutor_id": TUTOR_A.user_id,
            "tutor_email": TUTOR_A.email,
            "student_id": assigned_student.id,
            "client_id": assigned_student.client_id,
            "start_at": start_at,
            "end_at": start_at + timedelta(minutes=duration_minutes),
            "duration_minutes": duration_minutes,
            "modality": Modality.ONLINE.value,
            "status": SessionStatus.SCHEDULED.value,
            "billing_status": BillingStatus.NOT_BILLED.value,
            "version": 1,
        }
        values.update(overrides)
        session = SessionLog(**values)
        db_session.add(session)
        db_session.commit()
        return session
    return _make
