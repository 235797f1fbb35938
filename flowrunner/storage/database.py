"""Database connection and session management."""

import os
from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./flowrunner.db"

# Global engine instance
_engine: Optional[Engine] = None

# Base class for all database models
Base = declarative_base()

# Session factory, bound to the engine on first use
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None) -> Engine:
    """Get or create database engine with configuration."""
    global _engine

    if _engine is None:
        # Use provided URL or fall back to environment variable
        if database_url is None:
            database_url = os.getenv("FLOWRUNNER_DATABASE_URL", DEFAULT_DATABASE_URL)

        # Default connect args for SQLite
        if connect_args is None:
            if database_url.startswith("sqlite"):
                connect_args = {"check_same_thread": False}
            else:
                connect_args = {}

        if database_url.startswith("sqlite"):
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
                pool_pre_ping=True
            )

        SessionLocal.configure(bind=_engine)

    return _engine


def reset_database_engine():
    """Reset the global database engine (mainly for testing)."""
    global _engine
    if _engine:
        _engine.dispose()
    _engine = None


def get_session_factory() -> sessionmaker:
    """Session factory bound to the global engine."""
    get_database_engine()
    return SessionLocal


def create_tables():
    """Create all database tables."""
    # Import models so they register with Base.metadata
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=get_database_engine())
