"""Pydantic models for run state, telemetry, snapshots and execution records."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from .graph import FormSchema


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_execution_id() -> str:
    """Execution identifier of the form ``exec-<epoch ms>-<8 hex chars>``."""
    return f"exec-{int(utc_now().timestamp() * 1000)}-{uuid.uuid4().hex[:8]}"


class RunPhase(str, Enum):
    """Lifecycle phase of a runner."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunPhase.COMPLETED, RunPhase.FAILED, RunPhase.CANCELLED)


class StepStatus(str, Enum):
    """Outcome of one telemetry step."""
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    """Status of a persisted execution record."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionStepStatus(str, Enum):
    """Outcome of one persisted execution step."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class MessageType(str, Enum):
    """Kinds of entries in the runner's message log."""
    SYSTEM = "system"
    NODE = "node"
    DECISION = "decision"
    USER = "user"
    SUCCESS = "success"
    ERROR = "error"
    LOOP = "loop"
    PARALLEL = "parallel"
    FORM = "form"
    API = "api"
    API_RESPONSE = "api_response"
    TELEMETRY = "telemetry"


class NodeOutput(BaseModel):
    """Output recorded for a node, keyed by node label in the execution context."""
    response: Any = Field(None, description="Node response payload")
    status: Optional[int] = Field(None, description="HTTP status for API actions")
    status_text: Optional[str] = Field(None, description="HTTP status text for API actions")
    node_kind: str = Field(..., description="Kind of the node that produced the output")
    recorded_at: datetime = Field(default_factory=utc_now, description="When the output was stored")

    def as_lookup(self) -> Dict[str, Any]:
        """Dictionary view used for {{Label.path}} resolution."""
        return {
            "response": self.response,
            "status": self.status,
            "statusText": self.status_text,
            "status_text": self.status_text,
            "nodeKind": self.node_kind,
            "nodeType": self.node_kind,
            "timestamp": self.recorded_at.isoformat(),
        }


# Ordered mapping from node label to that node's last recorded output.
ExecutionContext = Dict[str, NodeOutput]


class SelectableOption(BaseModel):
    """An option offered to the user at a pause point."""
    id: str
    label: str


class PendingInput(BaseModel):
    """What a paused run is waiting for."""
    node_id: str
    node_label: str
    node_kind: str
    options: List[SelectableOption] = Field(default_factory=list)
    form_schema: Optional[FormSchema] = None


class ApiResponse(BaseModel):
    """Normalised result of an outbound action call."""
    status: int = Field(..., description="HTTP status, 0 on transport failure")
    status_text: str = Field(..., description="HTTP reason phrase or 'Error'")
    data: Any = Field(None, description="Parsed JSON or response text")
    error: Optional[str] = Field(None, description="Transport or parse error message")

    @property
    def is_success(self) -> bool:
        return self.error is None and 200 <= self.status < 400


class RunnerMessage(BaseModel):
    """An entry in the human-readable message log of a run."""
    id: str
    type: MessageType
    content: str
    node_id: Optional[str] = None
    node_kind: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    options: Optional[List[SelectableOption]] = None
    api_response: Optional[ApiResponse] = None


class StepTelemetry(BaseModel):
    """Timing and outcome of one processed node."""
    node_id: str
    node_label: str
    node_kind: str
    started_at: datetime
    ended_at: datetime
    duration_ms: int
    status: StepStatus
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TelemetrySummary(BaseModel):
    """Running aggregates over recorded steps."""
    total_nodes: int = 0
    success_count: int = 0
    error_count: int = 0
    avg_step_duration_ms: int = 0


class WorkflowTelemetry(BaseModel):
    """Telemetry envelope for one run."""
    workflow_id: str
    workflow_name: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    total_duration_ms: Optional[int] = None
    steps: List[StepTelemetry] = Field(default_factory=list)
    summary: TelemetrySummary = Field(default_factory=TelemetrySummary)


class ContextDiff(BaseModel):
    """Labels added, modified or removed between two contexts."""
    model_config = ConfigDict(frozen=True)

    added: List[str] = Field(default_factory=list)
    modified: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)


class StateSnapshot(BaseModel):
    """Immutable point-in-time copy of run state."""
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    action: str = Field(..., description="Free-text cause, e.g. 'ENTER_NODE: Fetch user'")
    node_id: Optional[str] = None
    node_label: Optional[str] = None
    node_kind: Optional[str] = None
    context: Dict[str, NodeOutput] = Field(default_factory=dict)
    current_node_id: Optional[str] = None
    visited_node_ids: List[str] = Field(default_factory=list)
    is_running: bool = False
    is_paused: bool = False
    phase: RunPhase = RunPhase.IDLE
    diff: Optional[ContextDiff] = None


class ExecutionStep(BaseModel):
    """A persisted step of an execution record."""
    node_id: str
    node_label: str
    node_kind: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    status: ExecutionStepStatus
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExecutionRecord(BaseModel):
    """Durable, replayable summary of one run."""
    id: str = Field(..., description="Execution identifier")
    workflow_id: str = Field(..., description="ID of the executed workflow")
    workflow_version: int = Field(1, description="Executed workflow version")
    workflow_name: str = Field("", description="Workflow name at execution time")
    started_at: datetime = Field(..., description="Run start")
    completed_at: Optional[datetime] = Field(None, description="Run end")
    duration_ms: Optional[int] = Field(None, description="Total run duration")
    status: ExecutionStatus = Field(..., description="Final status")
    steps: List[ExecutionStep] = Field(default_factory=list, description="Processed steps")
    context: Dict[str, Any] = Field(default_factory=dict, description="Final execution context")
    error: Optional[str] = Field(None, description="Failure or cancellation reason")


class ExecutionListItem(BaseModel):
    """Summary projection of an execution record."""
    id: str
    workflow_version: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    status: ExecutionStatus
    step_count: int
    error: Optional[str] = None

    @classmethod
    def from_record(cls, record: ExecutionRecord) -> "ExecutionListItem":
        return cls(
            id=record.id,
            workflow_version=record.workflow_version,
            started_at=record.started_at,
            completed_at=record.completed_at,
            duration_ms=record.duration_ms,
            status=record.status,
            step_count=len(record.steps),
            error=record.error,
        )


class RunnerState(BaseModel):
    """Complete mutable state of one runner, emitted to observers as a deep copy."""
    phase: RunPhase = RunPhase.IDLE
    current_node_id: Optional[str] = None
    visited_node_ids: List[str] = Field(default_factory=list)
    loop_counters: Dict[str, int] = Field(default_factory=dict)
    context: Dict[str, NodeOutput] = Field(default_factory=dict)
    telemetry: Optional[WorkflowTelemetry] = None
    snapshots: List[StateSnapshot] = Field(default_factory=list)
    messages: List[RunnerMessage] = Field(default_factory=list)
    pending_input: Optional[PendingInput] = None
    execution_steps: List[ExecutionStep] = Field(default_factory=list)
    execution_started_at: Optional[datetime] = None
    current_step_started_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.phase in (RunPhase.RUNNING, RunPhase.PAUSED)

    @property
    def is_paused(self) -> bool:
        return self.phase == RunPhase.PAUSED
