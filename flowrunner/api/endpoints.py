"""FastAPI REST endpoints for interactive test runs and execution history."""

from datetime import datetime
from typing import Dict, List, Any, Optional
from fastapi import APIRouter, HTTPException, Depends, Response, status
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.execution_store import ExecutionStore
from ..core.exceptions import (
    GraphValidationError,
    NotFoundError,
    SessionNotFoundError,
    StorageError,
    WorkflowEngineError,
    create_error_response
)
from ..core.logging import get_logger
from ..core.session_manager import SessionManager, TestSession
from ..core.validation import validate_graph
from ..models.execution import (
    ExecutionListItem,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionStep,
    NodeOutput,
    PendingInput,
    RunnerMessage,
    RunPhase,
    StateSnapshot,
    WorkflowTelemetry,
    new_execution_id,
    utc_now,
)
from ..models.graph import ValidationResult, WorkflowGraph

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["flowrunner"])

# Global instances (initialized by the application factory)
_session_manager: Optional[SessionManager] = None
_execution_store: Optional[ExecutionStore] = None


def init_dependencies(session_manager: SessionManager, execution_store: ExecutionStore):
    """Initialize the global dependencies."""
    global _session_manager, _execution_store
    _session_manager = session_manager
    _execution_store = execution_store


def get_session_manager() -> SessionManager:
    """Dependency to get the session manager."""
    if _session_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Session manager not initialized"
        )
    return _session_manager


def get_execution_store() -> ExecutionStore:
    """Dependency to get the execution store."""
    if _execution_store is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution store not initialized"
        )
    return _execution_store


# Request/Response models
class GraphRequest(BaseModel):
    """A workflow graph, either canonical or in the canvas editor's export format."""
    graph: Dict[str, Any] = Field(..., description="Workflow graph payload")
    canvas_format: bool = Field(False, description="Payload uses the canvas editor's node/edge shape")


class CreateSessionRequest(GraphRequest):
    """Request model for creating a test session."""
    start: bool = Field(True, description="Start the run immediately")


class SessionStateResponse(BaseModel):
    """Runner state of one test session."""
    session_id: str = Field(..., description="Test session identifier")
    workflow_id: str = Field(..., description="ID of the workflow under test")
    workflow_name: str = Field(..., description="Name of the workflow under test")
    phase: RunPhase = Field(..., description="Runner phase")
    is_running: bool
    is_paused: bool
    current_node_id: Optional[str] = None
    visited_node_ids: List[str] = Field(default_factory=list)
    loop_counters: Dict[str, int] = Field(default_factory=dict)
    context: Dict[str, NodeOutput] = Field(default_factory=dict)
    pending_input: Optional[PendingInput] = None
    messages: List[RunnerMessage] = Field(default_factory=list)
    telemetry: Optional[WorkflowTelemetry] = None
    error: Optional[str] = None
    validation_warnings: List[str] = Field(default_factory=list)

    @classmethod
    def from_session(cls, session: TestSession, warnings: Optional[List[str]] = None) -> "SessionStateResponse":
        state = session.state()
        graph = session.runner.graph
        return cls(
            session_id=session.id,
            workflow_id=graph.id,
            workflow_name=graph.name,
            phase=state.phase,
            is_running=state.is_running,
            is_paused=state.is_paused,
            current_node_id=state.current_node_id,
            visited_node_ids=state.visited_node_ids,
            loop_counters=state.loop_counters,
            context=state.context,
            pending_input=state.pending_input,
            messages=state.messages,
            telemetry=state.telemetry,
            error=state.error,
            validation_warnings=warnings or [],
        )


class SessionSummary(BaseModel):
    """Summary of a test session."""
    session_id: str
    workflow_id: str
    workflow_name: str
    phase: RunPhase
    created_at: datetime
    updated_at: datetime


class ActionResponse(BaseModel):
    """Result of a resume or lifecycle call."""
    accepted: bool = Field(..., description="False when the call was a no-op in the current phase")
    state: SessionStateResponse


class DecisionRequest(BaseModel):
    option_id: str = Field(..., description="Selected option id, handle, edge id or label")


class ParallelRequest(BaseModel):
    branch_id: str = Field(..., description="Selected branch id, handle, edge id or label")


class LoopRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    should_continue: bool = Field(..., alias="continue", description="Continue the loop or exit it")


class FormRequest(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict, description="Submitted form values")


class SaveExecutionRequest(BaseModel):
    """Request model for storing an execution record."""
    id: Optional[str] = Field(None, description="Execution id; generated when omitted")
    workflow_version: int = Field(1, description="Executed workflow version")
    workflow_name: str = Field("", description="Workflow name at execution time")
    started_at: datetime = Field(..., description="Run start")
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    status: ExecutionStatus
    steps: List[ExecutionStep] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class SaveExecutionResponse(BaseModel):
    id: str = Field(..., description="Stored execution id")
    message: str = Field(..., description="Success message")


def _http_error(error: WorkflowEngineError) -> HTTPException:
    """Map an engine error to an HTTP error with the structured error body."""
    if isinstance(error, (SessionNotFoundError, NotFoundError)):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, GraphValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, StorageError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=status_code, detail=create_error_response(error))


def _parse_graph(request: GraphRequest) -> WorkflowGraph:
    try:
        if request.canvas_format:
            return WorkflowGraph.from_canvas(request.graph)
        return WorkflowGraph.model_validate(request.graph)
    except (ValidationError, KeyError) as e:
        logger.warning(f"Rejected malformed graph payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "error": "InvalidGraph",
                "message": "Graph payload could not be parsed",
                "details": {"original_error": str(e)}
            }
        )


def _session_call(session_manager: SessionManager, session_id: str, operation) -> ActionResponse:
    try:
        session = session_manager.get_session(session_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    accepted = bool(session.call(operation))
    return ActionResponse(accepted=accepted, state=SessionStateResponse.from_session(session))


# Validation

@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a workflow graph",
    description="Check a workflow graph for structural errors and warnings without running it"
)
async def validate_workflow(request: GraphRequest) -> ValidationResult:
    graph = _parse_graph(request)
    return validate_graph(graph)


# Test sessions

@router.post(
    "/sessions",
    response_model=SessionStateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a test session",
    description="Validate a workflow graph, create a runner for it and start the test run"
)
def create_session(
    request: CreateSessionRequest,
    session_manager: SessionManager = Depends(get_session_manager)
) -> SessionStateResponse:
    """
    Create and start an interactive test run.

    The run proceeds until it first needs user input or finishes, so the
    response already reflects the first pause point.

    Raises:
        HTTPException: 400 if the graph has validation errors
    """
    graph = _parse_graph(request)
    try:
        session = session_manager.create_session(graph, start=request.start)
    except WorkflowEngineError as e:
        logger.warning(f"Could not create test session for '{graph.name}': {e.message}")
        raise _http_error(e)

    warnings = validate_graph(graph).warnings
    return SessionStateResponse.from_session(session, warnings)


@router.get(
    "/sessions",
    response_model=List[SessionSummary],
    summary="List test sessions"
)
async def list_sessions(
    session_manager: SessionManager = Depends(get_session_manager)
) -> List[SessionSummary]:
    return [
        SessionSummary(
            session_id=session.id,
            workflow_id=session.runner.graph.id,
            workflow_name=session.runner.graph.name,
            phase=session.runner.phase,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )
        for session in session_manager.list_sessions()
    ]


@router.get(
    "/sessions/{session_id}",
    response_model=SessionStateResponse,
    summary="Get test session state"
)
def get_session_state(
    session_id: str,
    session_manager: SessionManager = Depends(get_session_manager)
) -> SessionStateResponse:
    try:
        session = session_manager.get_session(session_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return SessionStateResponse.from_session(session)


@router.get(
    "/sessions/{session_id}/context",
    response_model=Dict[str, NodeOutput],
    summary="Get the execution context of a test session"
)
def get_session_context(
    session_id: str,
    session_manager: SessionManager = Depends(get_session_manager)
) -> Dict[str, NodeOutput]:
    try:
        session = session_manager.get_session(session_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return session.call(lambda runner: runner.get_context())


@router.get(
    "/sessions/{session_id}/snapshots",
    response_model=List[StateSnapshot],
    summary="Get the state snapshots of a test session"
)
def get_session_snapshots(
    session_id: str,
    session_manager: SessionManager = Depends(get_session_manager)
) -> List[StateSnapshot]:
    try:
        session = session_manager.get_session(session_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return session.call(lambda runner: runner.get_state_snapshots())


@router.post("/sessions/{session_id}/decision", response_model=ActionResponse, summary="Resolve a paused decision")
def select_decision_option(
    session_id: str,
    request: DecisionRequest,
    session_manager: SessionManager = Depends(get_session_manager)
) -> ActionResponse:
    return _session_call(session_manager, session_id, lambda r: r.select_decision_option(request.option_id))


@router.post("/sessions/{session_id}/parallel", response_model=ActionResponse, summary="Choose a parallel branch")
def select_parallel_branch(
    session_id: str,
    request: ParallelRequest,
    session_manager: SessionManager = Depends(get_session_manager)
) -> ActionResponse:
    return _session_call(session_manager, session_id, lambda r: r.select_parallel_branch(request.branch_id))


@router.post("/sessions/{session_id}/loop", response_model=ActionResponse, summary="Continue or exit a paused loop")
def continue_loop(
    session_id: str,
    request: LoopRequest,
    session_manager: SessionManager = Depends(get_session_manager)
) -> ActionResponse:
    return _session_call(session_manager, session_id, lambda r: r.continue_loop(request.should_continue))


@router.post("/sessions/{session_id}/form", response_model=ActionResponse, summary="Submit a paused form")
def submit_form(
    session_id: str,
    request: FormRequest,
    session_manager: SessionManager = Depends(get_session_manager)
) -> ActionResponse:
    return _session_call(session_manager, session_id, lambda r: r.submit_form(request.values))


@router.post("/sessions/{session_id}/stop", response_model=ActionResponse, summary="Stop a test run")
def stop_session(
    session_id: str,
    session_manager: SessionManager = Depends(get_session_manager)
) -> ActionResponse:
    return _session_call(session_manager, session_id, lambda r: r.stop())


@router.post("/sessions/{session_id}/reset", response_model=ActionResponse, summary="Reset a test session")
def reset_session(
    session_id: str,
    session_manager: SessionManager = Depends(get_session_manager)
) -> ActionResponse:
    def reset(runner):
        runner.reset()
        return True
    return _session_call(session_manager, session_id, reset)


@router.post("/sessions/{session_id}/start", response_model=ActionResponse, summary="Start or restart a test run")
def start_session(
    session_id: str,
    session_manager: SessionManager = Depends(get_session_manager)
) -> ActionResponse:
    return _session_call(session_manager, session_id, lambda r: r.start())


@router.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a test session"
)
def delete_session(
    session_id: str,
    session_manager: SessionManager = Depends(get_session_manager)
) -> Response:
    if not session_manager.delete_session(session_id):
        raise _http_error(SessionNotFoundError(session_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Execution history

@router.get(
    "/workflows/{workflow_id}/executions",
    response_model=List[ExecutionListItem],
    summary="List executions of a workflow",
    description="Execution summaries of a workflow, newest first"
)
def list_executions(
    workflow_id: str,
    execution_store: ExecutionStore = Depends(get_execution_store)
) -> List[ExecutionListItem]:
    try:
        return execution_store.list_executions(workflow_id)
    except WorkflowEngineError as e:
        logger.error(f"Failed to list executions for workflow {workflow_id}: {e.message}")
        raise _http_error(e)


@router.get(
    "/workflows/{workflow_id}/executions/{execution_id}",
    response_model=ExecutionRecord,
    summary="Get one execution record"
)
def get_execution(
    workflow_id: str,
    execution_id: str,
    execution_store: ExecutionStore = Depends(get_execution_store)
) -> ExecutionRecord:
    try:
        return execution_store.get_execution(workflow_id, execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/workflows/{workflow_id}/executions",
    response_model=SaveExecutionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store an execution record"
)
def save_execution(
    workflow_id: str,
    request: SaveExecutionRequest,
    execution_store: ExecutionStore = Depends(get_execution_store)
) -> SaveExecutionResponse:
    record = ExecutionRecord(
        id=request.id or new_execution_id(),
        workflow_id=workflow_id,
        workflow_version=request.workflow_version,
        workflow_name=request.workflow_name,
        started_at=request.started_at,
        completed_at=request.completed_at or utc_now(),
        duration_ms=request.duration_ms,
        status=request.status,
        steps=request.steps,
        context=request.context,
        error=request.error,
    )
    try:
        execution_store.save_execution(workflow_id, record)
    except WorkflowEngineError as e:
        logger.error(f"Failed to save execution for workflow {workflow_id}: {e.message}")
        raise _http_error(e)
    return SaveExecutionResponse(id=record.id, message="Execution saved")


@router.delete(
    "/workflows/{workflow_id}/executions/{execution_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an execution record"
)
def delete_execution(
    workflow_id: str,
    execution_id: str,
    execution_store: ExecutionStore = Depends(get_execution_store)
) -> Response:
    try:
        deleted = execution_store.delete_execution(workflow_id, execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    if not deleted:
        raise _http_error(NotFoundError(
            f"Execution {execution_id} not found for workflow {workflow_id}",
            operation="delete_execution",
        ))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
