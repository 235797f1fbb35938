"""Durable storage of execution records with per-workflow retention."""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.execution import ExecutionListItem, ExecutionRecord, ExecutionStep
from ..storage.database import get_session_factory
from ..storage.models import ExecutionRecordModel
from .error_recovery import RetryConfig, with_retry
from .exceptions import NotFoundError, StorageError
from .logging import get_logger


logger = get_logger(__name__)

DEFAULT_MAX_EXECUTIONS_PER_WORKFLOW = 50

_storage_retry = RetryConfig(max_attempts=3, base_delay=0.05, max_delay=1.0)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _ordering_key(value: datetime) -> str:
    return _as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f")


class ExecutionStore:
    """Stores execution records, keeping only the newest N per workflow."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        max_executions_per_workflow: int = DEFAULT_MAX_EXECUTIONS_PER_WORKFLOW
    ):
        """Initialize the store.

        Args:
            session_factory: SQLAlchemy session factory; defaults to the global one
            max_executions_per_workflow: Retention limit applied after every save
        """
        self._session_factory = session_factory
        self.max_executions_per_workflow = max_executions_per_workflow

    def _session(self) -> Session:
        factory = self._session_factory or get_session_factory()
        return factory()

    @with_retry(_storage_retry)
    def save_execution(self, workflow_id: str, record: ExecutionRecord) -> ExecutionRecord:
        """Insert or replace ``record``, then prune the oldest records beyond the limit."""
        if record.workflow_id != workflow_id:
            record = record.model_copy(update={"workflow_id": workflow_id})

        db = self._session()
        try:
            model = db.get(ExecutionRecordModel, record.id)
            if model is None:
                model = ExecutionRecordModel(id=record.id)
                db.add(model)
            self._apply(model, record)
            db.flush()

            pruned = self._prune(db, workflow_id)
            db.commit()

            if pruned:
                logger.info(f"Pruned {pruned} old executions for workflow {workflow_id}")
            logger.debug(f"Saved execution {record.id} for workflow {workflow_id}")
            return record
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(
                f"Failed to save execution {record.id}: {e}",
                operation="save_execution",
                table=ExecutionRecordModel.__tablename__,
            )
        finally:
            db.close()

    def _prune(self, db: Session, workflow_id: str) -> int:
        stale = (
            db.query(ExecutionRecordModel)
            .filter(ExecutionRecordModel.workflow_id == workflow_id)
            .order_by(ExecutionRecordModel.started_at_key.desc(), ExecutionRecordModel.id.desc())
            .offset(self.max_executions_per_workflow)
            .all()
        )
        for model in stale:
            db.delete(model)
        return len(stale)

    @with_retry(_storage_retry)
    def get_execution(self, workflow_id: str, execution_id: str) -> ExecutionRecord:
        """Return one record; raises NotFoundError when it does not exist."""
        db = self._session()
        try:
            model = (
                db.query(ExecutionRecordModel)
                .filter(
                    ExecutionRecordModel.workflow_id == workflow_id,
                    ExecutionRecordModel.id == execution_id,
                )
                .first()
            )
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to load execution {execution_id}: {e}",
                operation="get_execution",
                table=ExecutionRecordModel.__tablename__,
            )
        finally:
            db.close()

        if model is None:
            raise NotFoundError(
                f"Execution {execution_id} not found for workflow {workflow_id}",
                operation="get_execution",
            )
        return self._to_record(model)

    @with_retry(_storage_retry)
    def list_executions(self, workflow_id: str) -> List[ExecutionListItem]:
        """Summaries of a workflow's executions, newest first."""
        db = self._session()
        try:
            models = (
                db.query(ExecutionRecordModel)
                .filter(ExecutionRecordModel.workflow_id == workflow_id)
                .order_by(ExecutionRecordModel.started_at_key.desc(), ExecutionRecordModel.id.desc())
                .all()
            )
            return [ExecutionListItem.from_record(self._to_record(model)) for model in models]
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to list executions for workflow {workflow_id}: {e}",
                operation="list_executions",
                table=ExecutionRecordModel.__tablename__,
            )
        finally:
            db.close()

    @with_retry(_storage_retry)
    def delete_execution(self, workflow_id: str, execution_id: str) -> bool:
        """Delete one record; returns False if it did not exist."""
        db = self._session()
        try:
            deleted = (
                db.query(ExecutionRecordModel)
                .filter(
                    ExecutionRecordModel.workflow_id == workflow_id,
                    ExecutionRecordModel.id == execution_id,
                )
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted > 0
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(
                f"Failed to delete execution {execution_id}: {e}",
                operation="delete_execution",
                table=ExecutionRecordModel.__tablename__,
            )
        finally:
            db.close()

    @staticmethod
    def _apply(model: ExecutionRecordModel, record: ExecutionRecord):
        model.workflow_id = record.workflow_id
        model.workflow_version = record.workflow_version
        model.workflow_name = record.workflow_name
        model.status = record.status.value
        model.started_at = _as_utc(record.started_at)
        model.started_at_key = _ordering_key(record.started_at)
        model.completed_at = _as_utc(record.completed_at)
        model.duration_ms = record.duration_ms
        model.steps = [step.model_dump(mode="json") for step in record.steps]
        model.context = record.context
        model.error = record.error

    @staticmethod
    def _to_record(model: ExecutionRecordModel) -> ExecutionRecord:
        return ExecutionRecord(
            id=model.id,
            workflow_id=model.workflow_id,
            workflow_version=model.workflow_version,
            workflow_name=model.workflow_name or "",
            started_at=_as_utc(model.started_at),
            completed_at=_as_utc(model.completed_at),
            duration_ms=model.duration_ms,
            status=model.status,
            steps=[ExecutionStep.model_validate(step) for step in (model.steps or [])],
            context=model.context or {},
            error=model.error,
        )
