"""
Database connection for the Studyroom backend.

Uses DATABASE_URL when set, otherwise builds a direct TCP MySQL URL from the
individual DB_* variables (IP must be whitelisted on the Cloud SQL side).
"""
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Database configuration
DB_USER = os.getenv("DB_USER")
DB_PASSWORD = os.getenv("DB_PASSWORD")
DB_NAME = os.getenv("DB_NAME")
DB_HOST = os.getenv("DB_HOST", "127.0.0.1")
DB_PORT = int(os.getenv("DB_PORT", "3306"))

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"mysql+pymysql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)


def _engine_options(url: str) -> dict:
    """Pool and driver options; the timeouts only make sense for MySQL."""
    if not url.startswith("mysql"):
        return {"echo": False}
    return {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 3600,
        "pool_pre_ping": False,
        "echo": False,  # Set to True for SQL debugging
        "connect_args": {
            "connect_timeout": 10,
            "read_timeout": 60,
            "write_timeout": 30,
        },
    }


# Create database engine with connection pooling
engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

# Create SessionLocal class for database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def get_db():
    """
    Dependency function to get database session.
    Use this in FastAPI endpoints with Depends(get_db).

    Example:
        @router.get("/sessions/{session_id}")
        def get_session(session_id: str, db: Session = Depends(get_db)):
            return db.get(SessionLog, session_id)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
