"""Data models for the workflow runner."""

from .graph import (
    NodeKind,
    HttpMethod,
    KeyValuePair,
    ApiConfig,
    FormField,
    FormFieldOption,
    FormSchema,
    WorkflowNode,
    WorkflowEdge,
    WorkflowGraph,
    ValidationResult,
)
from .execution import (
    RunPhase,
    StepStatus,
    ExecutionStatus,
    ExecutionStepStatus,
    MessageType,
    NodeOutput,
    ExecutionContext,
    SelectableOption,
    PendingInput,
    ApiResponse,
    RunnerMessage,
    StepTelemetry,
    TelemetrySummary,
    WorkflowTelemetry,
    ContextDiff,
    StateSnapshot,
    ExecutionStep,
    ExecutionRecord,
    ExecutionListItem,
    RunnerState,
    utc_now,
    new_execution_id,
)

__all__ = [
    "NodeKind",
    "HttpMethod",
    "KeyValuePair",
    "ApiConfig",
    "FormField",
    "FormFieldOption",
    "FormSchema",
    "WorkflowNode",
    "WorkflowEdge",
    "WorkflowGraph",
    "ValidationResult",
    "RunPhase",
    "StepStatus",
    "ExecutionStatus",
    "ExecutionStepStatus",
    "MessageType",
    "NodeOutput",
    "ExecutionContext",
    "SelectableOption",
    "PendingInput",
    "ApiResponse",
    "RunnerMessage",
    "StepTelemetry",
    "TelemetrySummary",
    "WorkflowTelemetry",
    "ContextDiff",
    "StateSnapshot",
    "ExecutionStep",
    "ExecutionRecord",
    "ExecutionListItem",
    "RunnerState",
    "utc_now",
    "new_execution_id",
]
