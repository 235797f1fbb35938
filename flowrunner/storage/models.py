"""SQLAlchemy database models for persisted executions."""

from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, Index
from .database import Base


class ExecutionRecordModel(Base):
    """Database model for a finished test-run execution."""
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False, index=True)
    workflow_version = Column(Integer, nullable=False, default=1)
    workflow_name = Column(String, nullable=False, default="")
    status = Column(String, nullable=False)  # running, completed, failed, cancelled
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    duration_ms = Column(Integer)
    steps = Column(JSON, nullable=False, default=list)
    context = Column(JSON, nullable=False, default=dict)
    error = Column(Text)
    # ISO timestamp kept as text so ordering does not depend on driver timezone handling
    started_at_key = Column(String, nullable=False)

    __table_args__ = (
        Index("idx_workflow_executions_workflow_started", "workflow_id", "started_at_key"),
    )
