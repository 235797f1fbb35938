"""Database models and storage layer."""

from .database import Base, get_database_engine, get_session_factory, create_tables
from .models import ExecutionRecordModel

__all__ = [
    "Base",
    "get_database_engine",
    "get_session_factory",
    "create_tables",
    "ExecutionRecordModel",
]
