"""Database connection and session management."""

import os
from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./automation_engine.db"

# Global engine instance
_engine: Optional[Engine] = None

# Base class for all database models
Base = declarative_base()


def get_database_engine(database_url: Optional[str] = None,
                       echo: bool = False,
                       connect_args: Optional[dict] = None) -> Engine:
    """Get or create database engine with configuration."""
    global _engine

    if _engine is None:
        # Use provided URL or fall back to environment variable
        if database_url is None:
            database_url = os.getenv("AUTOMATION_ENGINE_DATABASE_URL", DEFAULT_DATABASE_URL)

        # Default connect args for SQLite
        if connect_args is None:
            if database_url.startswith("sqlite"):
                connect_args = {"check_same_thread": False, "timeout": 30}
            else:
                connect_args = {}

        # An in-memory SQLite database only exists on a single shared connection
        if database_url.startswith("sqlite") and ":memory:" in database_url:
            _engine = create_engine(
                database_url,
                connect_args=connect_args,
                poolclass=StaticPool,
                echo=echo
            )
        else:
            _engine = create_engine(
                database_url,
                echo=echo,
                connect_args=connect_args,
                pool_pre_ping=not database_url.startswith("sqlite")
            )

    return _engine


def reset_database_engine():
    """Reset the global database engine (mainly for testing)."""
    global _engine
    if _engine:
        _engine.dispose()
    _engine = None


def init_database(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """Bind the module-level engine and session factory to ``database_url``."""
    global engine, SessionLocal
    reset_database_engine()
    engine = get_database_engine(database_url, echo=echo)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return engine


engine = get_database_engine()

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all database tables."""
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=engine)


def drop_tables():
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=engine)
