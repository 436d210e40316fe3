from sqlalchemy import create_engine
from sqlalchemy.exc import ProgrammingError, OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Generator
import os

# Import centralized configuration
from vibewell.config import settings

DATABASE_URL = settings.DATABASE_URL
DEBUG_SQL = os.getenv("DEBUG_SQL", "false").lower() == "true"

if DATABASE_URL and DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)


def build_engine(url: str = DATABASE_URL, echo: bool = DEBUG_SQL):
    """Create an engine; pool settings only apply to server databases."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    # Production-ready connection pool configuration
    return create_engine(
        url,
        echo=echo,
        pool_size=20,  # Normal connections (adjust based on load)
        max_overflow=40,  # Burst capacity (total = 60 connections max)
        pool_timeout=30,  # Wait 30s for connection before failing
        pool_recycle=1800,  # Recycle connections every 30 minutes
        pool_pre_ping=True,  # Verify connections before use (prevents stale connections)
    )


engine = build_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Request-scoped database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Create tables
def init_db(bind=None):
    # Import all models here so that Base knows about them
    from .models import reservation, payment_transaction, idempotency  # noqa: F401

    # Catch duplicate index/table errors (common when migrations have already run)
    # SQLite raises OperationalError, PostgreSQL raises ProgrammingError
    try:
        Base.metadata.create_all(bind=bind or engine)
    except (ProgrammingError, OperationalError) as e:
        error_msg = str(e.orig) if hasattr(e, 'orig') else str(e)
        if "already exists" not in error_msg.lower() and "duplicate" not in error_msg.lower():
            raise
        from vibewell.obs.logging import get_logger
        get_logger(__name__).warning(
            f"Some indexes/tables already exist (expected if migrations ran): {error_msg[:100]}"
        )
