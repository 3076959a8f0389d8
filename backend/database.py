"""
Database configuration and session management.
"""

import os
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Database URL from environment
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite:///./billing_engine.db"
)


def build_engine(database_url: str = DATABASE_URL, echo: bool = None) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across sessions."""
    if echo is None:
        echo = os.getenv("DB_ECHO", "false").lower() == "true"

    if database_url == "sqlite://" or (database_url.startswith("sqlite") and ":memory:" in database_url):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo
        )

    return create_engine(database_url, pool_pre_ping=True, echo=echo)


def build_session_factory(bind: Engine) -> sessionmaker:
    """Session factory whose objects stay readable after the unit of work closes."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


# Create engine
engine = build_engine()

# Session factory
SessionLocal = build_session_factory(engine)


def get_db() -> Iterator[Session]:
    """Get database session dependency for FastAPI."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """
    Run a unit of work: commit on success, roll back on any error.

    Args:
        session_factory: Factory to open the session with (defaults to SessionLocal)
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_tables(bind: Engine = None):
    """Create all database tables."""
    from .models import Base
    Base.metadata.create_all(bind=bind or engine)


def drop_tables(bind: Engine = None):
    """Drop all database tables."""
    from .models import Base
    Base.metadata.drop_all(bind=bind or engine)
