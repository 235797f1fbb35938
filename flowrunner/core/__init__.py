"""Core workflow runner components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    NodeExecutionError,
    ExecutionEngineError,
    SessionNotFoundError,
    ExpressionError,
    StorageError,
    NotFoundError,
    TransientError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .resolver import resolve_variables, resolve_api_config
from .evaluator import evaluate_condition
from .validation import GraphValidator, validate_graph
from .runner import WorkflowRunner
from .execution_store import ExecutionStore
from .session_manager import SessionManager

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "NodeExecutionError",
    "ExecutionEngineError",
    "SessionNotFoundError",
    "ExpressionError",
    "StorageError",
    "NotFoundError",
    "TransientError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "resolve_variables",
    "resolve_api_config",
    "evaluate_condition",
    "GraphValidator",
    "validate_graph",
    "WorkflowRunner",
    "ExecutionStore",
    "SessionManager",
]
