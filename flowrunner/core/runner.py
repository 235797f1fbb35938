"""Interactive, resumable test-run engine for workflow graphs."""

import copy
import json
import logging
import re
import uuid
from typing import Any, Callable, Dict, List, Optional

from ..models.execution import (
    ApiResponse, ExecutionRecord, ExecutionStatus, ExecutionStep, ExecutionStepStatus,
    MessageType, NodeOutput, PendingInput, RunnerMessage, RunnerState, RunPhase,
    SelectableOption, StateSnapshot, StepStatus, new_execution_id, utc_now
)
from ..models.graph import NodeKind, WorkflowEdge, WorkflowGraph, WorkflowNode
from .evaluator import evaluate_condition
from .exceptions import NodeExecutionError
from .http_client import ActionHttpClient
from .logging import get_logger, log_with_context, logging_context, set_logging_context
from .resolver import resolve_api_config, resolve_variables
from .snapshots import SnapshotRecorder
from .telemetry import TelemetryRecorder


logger = get_logger(__name__)

DEFAULT_MAX_STEPS_PER_RUN = 10000
STOPPED_BY_USER = "Execution stopped by user"

StateCallback = Callable[[RunnerState], None]


def _capitalize(text: str) -> str:
    return text[:1].upper() + text[1:]


def _elapsed_ms(start, end) -> int:
    return max(0, int(round((end - start).total_seconds() * 1000)))


class WorkflowRunner:
    """Walks a workflow graph node by node, pausing where user input is needed.

    The runner is synchronous: ``start()`` and each resume call drive the
    graph until the next pause point or a terminal phase, then return.
    Observers registered with ``subscribe`` receive a deep copy of the
    runner state after every mutation.
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        on_state_change: Optional[StateCallback] = None,
        http_client: Optional[ActionHttpClient] = None,
        persister=None,
        workflow_version: Optional[int] = None,
        max_steps_per_run: int = DEFAULT_MAX_STEPS_PER_RUN,
    ):
        """Initialize the runner.

        Args:
            graph: Workflow graph to run; never mutated
            on_state_change: Optional callback, registered as the first subscriber
            http_client: Client used by api_call actions
            persister: Object with ``save_execution(workflow_id, record)``
            workflow_version: Version stamped on execution records
            max_steps_per_run: Node entries allowed per drive before the run fails
        """
        self.graph = graph
        self.http_client = http_client or ActionHttpClient()
        self.persister = persister
        self.workflow_version = workflow_version or graph.version
        self.max_steps_per_run = max_steps_per_run

        self.state = RunnerState()
        self._telemetry = TelemetryRecorder()
        self._snapshots = SnapshotRecorder()
        self._subscribers: List[StateCallback] = []

        self._handlers = {
            NodeKind.START.value: self._handle_start,
            NodeKind.END.value: self._handle_end,
            NodeKind.ACTION.value: self._handle_action,
            NodeKind.DECISION.value: self._handle_decision,
            NodeKind.PARALLEL.value: self._handle_parallel,
            NodeKind.LOOP.value: self._handle_loop,
            NodeKind.FORM.value: self._handle_form,
        }

        if on_state_change is not None:
            self.subscribe(on_state_change)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """Register an observer; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self):
        if not self._subscribers:
            return
        state_copy = self.state.model_copy(deep=True)
        for callback in list(self._subscribers):
            try:
                callback(state_copy)
            except Exception as e:
                logger.error(f"State change callback failed: {e}", exc_info=True)

    @property
    def phase(self) -> RunPhase:
        return self.state.phase

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    @property
    def is_paused(self) -> bool:
        return self.state.is_paused

    def get_context(self) -> Dict[str, NodeOutput]:
        return {label: output.model_copy(deep=True) for label, output in self.state.context.items()}

    def get_state_snapshots(self) -> List[StateSnapshot]:
        return [snapshot.model_copy(deep=True) for snapshot in self._snapshots.snapshots]

    def get_current_state(self) -> RunnerState:
        return self.state.model_copy(deep=True)

    def get_pending_input(self) -> Optional[PendingInput]:
        if self.state.pending_input is None:
            return None
        return self.state.pending_input.model_copy(deep=True)

    def get_messages(self) -> List[RunnerMessage]:
        return [message.model_copy(deep=True) for message in self.state.messages]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Begin a run at the start node.

        Returns False if a run is already in progress or the graph has no
        start node; in the latter case an error message is emitted and the
        runner stays idle.
        """
        if self.state.phase in (RunPhase.RUNNING, RunPhase.PAUSED):
            logger.warning(f"Workflow '{self.graph.name}' is already running")
            return False

        if self.state.phase.is_terminal:
            self.reset()

        start_node = self.graph.start_node()
        if start_node is None:
            self._add_message(MessageType.ERROR, "No Start node found in workflow. Please add a Start node.")
            return False

        self.state = RunnerState(execution_started_at=utc_now())
        self._snapshots.clear()
        self.state.telemetry = self._telemetry.begin(self.graph.id, self.graph.name)
        self.state.snapshots = self._snapshots.snapshots

        self._set_phase(RunPhase.RUNNING)
        self._add_message(MessageType.SYSTEM, f'Starting workflow: "{self.graph.name}"')
        self._snapshot("WORKFLOW_START")

        self._run(lambda: start_node.id)
        return True

    def stop(self) -> bool:
        """Cancel a running or paused run."""
        if self.state.phase not in (RunPhase.RUNNING, RunPhase.PAUSED):
            return False

        self._add_message(MessageType.SYSTEM, "Workflow execution stopped.")
        self.state.pending_input = None
        self.state.current_node_id = None
        self._telemetry.finalize()
        self._set_phase(RunPhase.CANCELLED)
        self.state.error = STOPPED_BY_USER
        self._snapshot("WORKFLOW_STOPPED")
        self._persist(ExecutionStatus.CANCELLED, STOPPED_BY_USER)
        return True

    def reset(self):
        """Return to the initial idle state; the graph is kept."""
        self.state = RunnerState()
        self._telemetry = TelemetryRecorder()
        self._snapshots = SnapshotRecorder()
        self._notify()

    # ------------------------------------------------------------------
    # Resume calls
    # ------------------------------------------------------------------

    def select_decision_option(self, option_id: str) -> bool:
        return self._resume(NodeKind.DECISION, self._resume_decision, option_id)

    def select_parallel_branch(self, branch_id: str) -> bool:
        return self._resume(NodeKind.PARALLEL, self._resume_parallel, branch_id)

    def continue_loop(self, should_continue: bool) -> bool:
        return self._resume(NodeKind.LOOP, self._resume_loop, should_continue)

    def submit_form(self, values: Dict[str, Any]) -> bool:
        return self._resume(NodeKind.FORM, self._resume_form, values)

    def _resume(self, kind: NodeKind, handler, argument) -> bool:
        if self.state.phase != RunPhase.PAUSED or not self.state.current_node_id:
            logger.debug(f"Ignoring {kind.value} resume: runner is {self.state.phase.value}")
            return False

        node = self.graph.get_node(self.state.current_node_id)
        if node is None or node.kind != kind.value:
            logger.debug(f"Ignoring {kind.value} resume: paused at a different node kind")
            return False

        self.state.pending_input = None
        self._set_phase(RunPhase.RUNNING)
        self._run(lambda: handler(node, argument))
        return True

    def _resume_decision(self, node: WorkflowNode, option_id: str) -> str:
        edges = self.graph.outgoing_edges(node.id)
        positional = 1 if option_id == "no" else 0
        edge = self._match_edge(edges, option_id, positional)
        if edge is None:
            raise NodeExecutionError(f"No path found for option: {option_id}", node_id=node.id, node_label=node.label)

        self._store_node_output(node, {"selectedOption": option_id})
        self._finish_step(
            node, StepStatus.SUCCESS,
            metadata={"condition": node.condition, "condition_result": option_id == "yes"},
            output={"selectedOption": option_id},
        )
        self._add_message(MessageType.USER, _capitalize(option_id))
        return edge.target

    def _resume_parallel(self, node: WorkflowNode, branch_id: str) -> str:
        edges = self.graph.outgoing_edges(node.id)
        edge = self._match_edge(edges, branch_id, self._branch_index(branch_id))
        if edge is None:
            raise NodeExecutionError(f"No path found for branch: {branch_id}", node_id=node.id, node_label=node.label)

        self._store_node_output(node, {"selectedBranch": branch_id})
        self._finish_step(node, StepStatus.SUCCESS, output={"selectedBranch": branch_id})
        self._add_message(MessageType.USER, f"Selected: {edge.label or branch_id}")
        return edge.target

    def _resume_loop(self, node: WorkflowNode, should_continue: bool) -> str:
        edges = self.graph.outgoing_edges(node.id)
        counter = self.state.loop_counters.get(node.id, 0)

        if should_continue:
            edge = self._handle_edge(edges, "loop") or edges[0]
            counter += 1
            self.state.loop_counters[node.id] = counter
            response = {"iteration": counter, "continued": True}
            message = f"Continue loop (iteration {counter})"
        else:
            edge = self._exit_edge(edges)
            response = {"iteration": counter, "continued": False, "exited": True}
            message = "Exit loop"

        self._store_node_output(node, response)
        self._finish_step(node, StepStatus.SUCCESS, metadata={"loop_iteration": counter}, output=response)
        self._add_message(MessageType.USER, message)
        return edge.target

    def _resume_form(self, node: WorkflowNode, values: Dict[str, Any]) -> str:
        values = copy.deepcopy(values or {})
        self._store_node_output(node, values)

        edges = self.graph.outgoing_edges(node.id)
        if not edges:
            raise NodeExecutionError(
                f'Form "{node.label}" has no outgoing connections.',
                node_id=node.id, node_label=node.label
            )

        self._finish_step(node, StepStatus.SUCCESS, output=values)
        self._add_message(MessageType.USER, f"Submitted form: {node.label}")
        return edges[0].target

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def _run(self, first_step: Callable[[], Optional[str]]):
        """Drive the graph until a pause point or a terminal phase.

        Fatal node problems surface as NodeExecutionError and are turned
        into the Failed transition here and nowhere else.
        """
        with logging_context(workflow_id=self.graph.id or None, node_id=self.state.current_node_id):
            try:
                next_node_id = first_step()
                entries = 0
                while next_node_id is not None and self.state.phase == RunPhase.RUNNING:
                    entries += 1
                    if entries > self.max_steps_per_run:
                        raise NodeExecutionError(
                            f"Exceeded {self.max_steps_per_run} node entries without pausing",
                            node_id=self.state.current_node_id
                        )
                    next_node_id = self._enter_node(next_node_id)
            except NodeExecutionError as e:
                self._fail(e)
            except Exception as e:
                logger.error(f"Unexpected error while running '{self.graph.name}': {e}", exc_info=True)
                self._fail(NodeExecutionError(str(e), node_id=self.state.current_node_id))

    def _enter_node(self, node_id: str) -> Optional[str]:
        node = self.graph.get_node(node_id)
        if node is None:
            raise NodeExecutionError(f"Node not found: {node_id}", node_id=node_id)

        self.state.current_step_started_at = self._telemetry.start_step()
        self.state.current_node_id = node.id
        self.state.visited_node_ids.append(node.id)
        set_logging_context(node_id=node.id)
        logger.debug(f"Entering node {node.id} ({node.kind}: {node.label})")
        self._snapshot(f"ENTER_NODE: {node.label}", node=node)

        handler = self._handlers.get(node.kind)
        if handler is None:
            raise NodeExecutionError(f"Unknown node type: {node.kind}", node_id=node.id, node_label=node.label)
        return handler(node)

    def _handle_start(self, node: WorkflowNode) -> Optional[str]:
        self._add_message(MessageType.NODE, node.label, node=node)
        self._store_node_output(node, {"started": True, "timestamp": utc_now().isoformat()})

        edges = self.graph.outgoing_edges(node.id)
        if not edges:
            raise NodeExecutionError("Start node has no outgoing connections", node_id=node.id, node_label=node.label)

        self._finish_step(node, StepStatus.SUCCESS, output={"started": True})
        return edges[0].target

    def _handle_end(self, node: WorkflowNode) -> Optional[str]:
        self._store_node_output(node, {"completed": True, "timestamp": utc_now().isoformat()})
        self._finish_step(node, StepStatus.SUCCESS, output={"completed": True})
        self._telemetry.finalize()

        self._add_message(MessageType.SUCCESS, f"Workflow completed at: {node.label}", node=node)
        self._add_message(MessageType.TELEMETRY, "Execution summary")
        for line in self._telemetry.format_summary():
            self._add_message(MessageType.SYSTEM, line)

        self._set_phase(RunPhase.COMPLETED)
        self._snapshot("WORKFLOW_COMPLETE", node=node)
        self._persist(ExecutionStatus.COMPLETED)
        return None

    def _handle_action(self, node: WorkflowNode) -> Optional[str]:
        if node.action_type == "api_call" and node.api_config is not None and node.api_config.url:
            status, metadata, step_data = self._perform_api_call(node)
        else:
            status, metadata, step_data = self._perform_plain_action(node)

        edges = self.graph.outgoing_edges(node.id)
        if not edges:
            raise NodeExecutionError(
                f'Action "{node.label}" has no outgoing connections. Workflow cannot continue.',
                node_id=node.id, node_label=node.label
            )

        self._finish_step(node, status, metadata=metadata, **step_data)
        return edges[0].target

    def _perform_api_call(self, node: WorkflowNode):
        resolved = resolve_api_config(node.api_config, self.state.context)
        method = resolved.method.value

        self._add_message(MessageType.API, f"API Call: {node.label}", node=node)
        self._add_message(MessageType.SYSTEM, f"{method} {resolved.url}")
        if resolved.url != node.api_config.url:
            self._add_message(MessageType.SYSTEM, f"(from: {node.api_config.url})")

        response: ApiResponse = self.http_client.execute(resolved)
        self._store_node_output(
            node, response.data, status=response.status, status_text=response.status_text
        )

        if response.error:
            content = f"Error: {response.error}"
        else:
            content = f"Response: {response.status} {response.status_text}"
        self._add_message(MessageType.API_RESPONSE, content, node=node, api_response=response)

        if response.data is not None:
            preview = response.data if isinstance(response.data, str) else json.dumps(response.data, indent=2, default=str)
            self._add_message(MessageType.SYSTEM, preview[:200] + ("..." if len(preview) > 200 else ""))
        self._add_message(MessageType.SYSTEM, f"Use {{{{{node.label}.response}}}} in subsequent nodes")

        succeeded = response.is_success
        if not succeeded:
            log_with_context(
                logger, logging.WARNING, f"API call failed for node {node.label}",
                node_id=node.id, status=response.status, error=response.error
            )

        metadata = {"api_url": resolved.url, "api_method": method, "api_status": response.status}
        step_data = {
            "input": {"apiConfig": resolved.model_dump(mode="json", by_alias=True)},
            "output": {"status": response.status, "statusText": response.status_text, "data": response.data},
            "error": response.error,
            "step_metadata": {"apiUrl": resolved.url, "apiMethod": method, "statusCode": response.status},
        }
        return (StepStatus.SUCCESS if succeeded else StepStatus.ERROR), metadata, step_data

    def _perform_plain_action(self, node: WorkflowNode):
        self._add_message(MessageType.NODE, f"Executing: {node.label}", node=node)
        if node.action_type:
            self._add_message(MessageType.SYSTEM, f"Action type: {node.action_type}")

        description = node.description
        if description:
            description = resolve_variables(description, self.state.context)
            self._add_message(MessageType.SYSTEM, description)

        self._store_node_output(node, {
            "executed": True,
            "actionType": node.action_type,
            "description": description,
        })
        step_data = {
            "input": {"actionType": node.action_type, "description": description},
            "output": {"executed": True},
        }
        return StepStatus.SUCCESS, {}, step_data

    def _handle_decision(self, node: WorkflowNode) -> Optional[str]:
        self._add_message(MessageType.DECISION, f"Decision: {node.label}", node=node)

        edges = self.graph.outgoing_edges(node.id)
        if not edges:
            raise NodeExecutionError(
                f'Decision "{node.label}" has no outgoing connections.',
                node_id=node.id, node_label=node.label
            )

        yes_edge = self._handle_edge(edges, "yes") or edges[0]
        no_edge = self._handle_edge(edges, "no") or (edges[1] if len(edges) > 1 else None)

        if node.condition:
            outcome = evaluate_condition(node.condition, self.state.context)
            self._add_message(MessageType.SYSTEM, f"Condition: {outcome.resolved}")
            if outcome.resolved != node.condition:
                self._add_message(MessageType.SYSTEM, f"(from: {node.condition})")

            if outcome.ok:
                result = bool(outcome.result)
                selected = "yes" if result else "no"
                self._add_message(MessageType.SYSTEM, f"Evaluated: {'TRUE' if result else 'FALSE'}")
                self._store_node_output(node, {
                    "condition": node.condition,
                    "resolvedCondition": outcome.resolved,
                    "evaluated": True,
                    "result": result,
                    "selectedPath": selected,
                })

                edge = yes_edge if result else no_edge
                if edge is not None:
                    self._add_message(MessageType.SYSTEM, f'Taking "{_capitalize(selected)}" path')
                    self._finish_step(
                        node, StepStatus.SUCCESS,
                        metadata={"condition": node.condition, "condition_result": result},
                        input={"condition": node.condition, "resolvedCondition": outcome.resolved},
                        output={"result": result, "selectedPath": selected},
                    )
                    return edge.target

                self._add_message(MessageType.SYSTEM, "Could not find matching path, prompting for selection")
            else:
                self._add_message(MessageType.SYSTEM, f"Could not auto-evaluate: {outcome.error}")

        options = []
        for index, edge in enumerate(edges, start=1):
            label = edge.label or edge.source_handle or f"Option {index}"
            options.append(SelectableOption(id=edge.source_handle or edge.id, label=_capitalize(label)))

        self._add_message(MessageType.DECISION, "Choose a path:", node=node, options=options)
        return self._pause(node, options)

    def _handle_parallel(self, node: WorkflowNode) -> Optional[str]:
        self._add_message(MessageType.PARALLEL, f"Parallel: {node.label}", node=node)

        edges = self.graph.outgoing_edges(node.id)
        if not edges:
            raise NodeExecutionError(
                f'Parallel "{node.label}" has no outgoing connections.',
                node_id=node.id, node_label=node.label
            )

        if len(edges) == 1:
            self._store_node_output(node, {"branches": 1})
            self._finish_step(node, StepStatus.SUCCESS, output={"branches": 1})
            return edges[0].target

        options = [
            SelectableOption(id=edge.source_handle or edge.id, label=edge.label or f"Branch {index}")
            for index, edge in enumerate(edges, start=1)
        ]
        self._add_message(
            MessageType.PARALLEL,
            "Select a branch to simulate (in real execution, all branches run in parallel):",
            node=node, options=options
        )
        return self._pause(node, options)

    def _handle_loop(self, node: WorkflowNode) -> Optional[str]:
        counter = self.state.loop_counters.get(node.id, 0)
        limit = node.loop_count

        suffix = f" of {limit}" if limit else ""
        self._add_message(MessageType.LOOP, f"Loop: {node.label} (iteration {counter + 1}{suffix})", node=node)

        if node.loop_condition:
            outcome = evaluate_condition(node.loop_condition, self.state.context)
            self._add_message(MessageType.SYSTEM, f"Condition: {outcome.resolved}")
            if outcome.ok:
                self._add_message(MessageType.SYSTEM, f"Condition currently {'TRUE' if outcome.result else 'FALSE'}")

        edges = self.graph.outgoing_edges(node.id)
        if not edges:
            raise NodeExecutionError(
                f'Loop "{node.label}" has no outgoing connections.',
                node_id=node.id, node_label=node.label
            )

        if limit and counter >= limit:
            self._add_message(MessageType.SYSTEM, f"Max iterations ({limit}) reached. Exiting loop.")
            response = {"iteration": counter, "maxReached": True, "exited": True}
            self._store_node_output(node, response)
            self._finish_step(node, StepStatus.SUCCESS, metadata={"loop_iteration": counter}, output=response)
            return self._exit_edge(edges).target

        options = [
            SelectableOption(id="continue", label="Continue Loop"),
            SelectableOption(id="exit", label="Exit Loop"),
        ]
        self._add_message(MessageType.LOOP, "Continue loop or exit?", node=node, options=options)
        return self._pause(node, options)

    def _handle_form(self, node: WorkflowNode) -> Optional[str]:
        schema = node.form_schema
        if schema is None or not schema.components:
            raise NodeExecutionError(
                f'Form "{node.label}" has no fields configured.',
                node_id=node.id, node_label=node.label
            )

        self._add_message(MessageType.FORM, f"Form: {schema.title or node.label}", node=node)
        return self._pause(node, [], form_schema=schema)

    # ------------------------------------------------------------------
    # Edge selection
    # ------------------------------------------------------------------

    @staticmethod
    def _handle_edge(edges: List[WorkflowEdge], handle: str) -> Optional[WorkflowEdge]:
        for edge in edges:
            if edge.source_handle == handle:
                return edge
        return None

    def _exit_edge(self, edges: List[WorkflowEdge]) -> WorkflowEdge:
        return self._handle_edge(edges, "exit") or edges[-1]

    @staticmethod
    def _branch_index(branch_id: str) -> int:
        match = re.match(r"\s*([+-]?\d+)", branch_id.replace("branch-", "", 1))
        if not match:
            return 0
        return int(match.group(1)) - 1

    @staticmethod
    def _match_edge(edges: List[WorkflowEdge], choice: str, positional_index: int) -> Optional[WorkflowEdge]:
        """Resolve a user choice to an edge.

        Tie-break order: source handle, edge id, case-insensitive edge
        label, then position (falling back to the first edge).
        """
        for edge in edges:
            if edge.source_handle == choice:
                return edge
        for edge in edges:
            if edge.id == choice:
                return edge
        lowered = choice.lower()
        for edge in edges:
            if edge.label and edge.label.lower() == lowered:
                return edge
        if 0 <= positional_index < len(edges):
            return edges[positional_index]
        return edges[0] if edges else None

    # ------------------------------------------------------------------
    # State mutation helpers
    # ------------------------------------------------------------------

    def _set_phase(self, phase: RunPhase):
        previous = self.state.phase
        self.state.phase = phase
        if previous != phase:
            log_with_context(
                logger, logging.INFO,
                f"Workflow '{self.graph.name}' {previous.value} -> {phase.value}",
                workflow_id=self.graph.id,
                node_id=self.state.current_node_id,
            )
        self._notify()

    def _pause(self, node: WorkflowNode, options: List[SelectableOption], form_schema=None) -> None:
        if self.state.phase != RunPhase.RUNNING:
            return None
        self.state.pending_input = PendingInput(
            node_id=node.id,
            node_label=node.label,
            node_kind=node.kind,
            options=options,
            form_schema=form_schema,
        )
        self._set_phase(RunPhase.PAUSED)
        return None

    def _add_message(
        self,
        message_type: MessageType,
        content: str,
        node: Optional[WorkflowNode] = None,
        options: Optional[List[SelectableOption]] = None,
        api_response: Optional[ApiResponse] = None,
    ) -> RunnerMessage:
        message = RunnerMessage(
            id=f"msg-{uuid.uuid4().hex[:12]}",
            type=message_type,
            content=content,
            node_id=node.id if node else None,
            node_kind=node.kind if node else None,
            options=options,
            api_response=api_response,
        )
        self.state.messages.append(message)
        self._notify()
        return message

    def _snapshot(self, action: str, node: Optional[WorkflowNode] = None, previous_context=None):
        self._snapshots.record(
            action,
            self.state.context,
            self.state.phase,
            current_node_id=self.state.current_node_id,
            visited_node_ids=self.state.visited_node_ids,
            node=node,
            previous_context=previous_context,
        )
        self.state.snapshots = self._snapshots.snapshots
        self._notify()

    def _store_node_output(
        self,
        node: WorkflowNode,
        response: Any,
        status: Optional[int] = None,
        status_text: Optional[str] = None,
    ):
        """Record a node's output under its label; a later write replaces an earlier one."""
        previous = dict(self.state.context)
        self.state.context[node.label] = NodeOutput(
            response=copy.deepcopy(response),
            status=status,
            status_text=status_text,
            node_kind=node.kind,
        )
        self._snapshot(f"NODE_OUTPUT: {node.label}", node=node, previous_context=previous)

    def _finish_step(
        self,
        node: WorkflowNode,
        status: StepStatus,
        metadata: Optional[Dict[str, Any]] = None,
        input: Optional[Dict[str, Any]] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        step_metadata: Optional[Dict[str, Any]] = None,
    ):
        """Record telemetry and the persisted execution step for a node."""
        started_at = self.state.current_step_started_at or utc_now()
        self._telemetry.record_step(node, status, metadata)
        self.state.telemetry = self._telemetry.telemetry

        completed_at = utc_now()
        step_status = {
            StepStatus.SUCCESS: ExecutionStepStatus.SUCCESS,
            StepStatus.ERROR: ExecutionStepStatus.FAILED,
        }.get(status, ExecutionStepStatus.SKIPPED)
        self.state.execution_steps.append(ExecutionStep(
            node_id=node.id,
            node_label=node.label,
            node_kind=node.kind,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=_elapsed_ms(started_at, completed_at),
            status=step_status,
            input=input,
            output=output,
            error=error,
            metadata=step_metadata or {},
        ))
        self.state.current_step_started_at = None
        self._notify()

    def _fail(self, error: NodeExecutionError):
        log_with_context(
            logger, logging.ERROR,
            f"Workflow '{self.graph.name}' failed: {error.message}",
            workflow_id=self.graph.id,
            node_id=error.node_id,
        )

        node = self.graph.get_node(error.node_id) if error.node_id else None
        self._add_message(MessageType.ERROR, error.message, node=node)
        # Only a step still in progress gets a failed entry
        if node is not None and self.state.current_step_started_at is not None:
            self._finish_step(node, StepStatus.ERROR, error=error.message)

        self.state.pending_input = None
        self.state.error = error.message
        self._telemetry.finalize()
        self._set_phase(RunPhase.FAILED)
        self._snapshot(f"ERROR: {error.message}", node=node)
        self._persist(ExecutionStatus.FAILED, error.message)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def build_execution_record(self, status: ExecutionStatus, error: Optional[str] = None) -> ExecutionRecord:
        completed_at = utc_now()
        started_at = self.state.execution_started_at or completed_at
        return ExecutionRecord(
            id=new_execution_id(),
            workflow_id=self.graph.id,
            workflow_version=self.workflow_version,
            workflow_name=self.graph.name,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=_elapsed_ms(started_at, completed_at),
            status=status,
            steps=[step.model_copy(deep=True) for step in self.state.execution_steps],
            context={label: output.model_dump(mode="json") for label, output in self.state.context.items()},
            error=error,
        )

    def _persist(self, status: ExecutionStatus, error: Optional[str] = None):
        """Hand the finished run to the persister; failures are logged, never raised."""
        if self.persister is None:
            return
        if not self.graph.id:
            logger.info("Workflow has no id, skipping execution persistence")
            return

        try:
            record = self.build_execution_record(status, error)
            self.persister.save_execution(self.graph.id, record)
            logger.info(f"Saved execution {record.id} for workflow {self.graph.id} ({status.value})")
        except Exception as e:
            logger.error(f"Failed to save execution for workflow {self.graph.id}: {e}", exc_info=True)
