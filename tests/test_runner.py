"""Tests for the interactive workflow runner."""

import pytest

from conftest import FakeHttpClient, edge, node
from flowrunner.core.runner import STOPPED_BY_USER, WorkflowRunner
from flowrunner.models.execution import (
    ApiResponse, ExecutionStatus, ExecutionStepStatus, MessageType, RunPhase, StepStatus
)


def linear_graph(build_graph, action=None):
    return build_graph(
        [
            node("start", "start", "Start"),
            action or node("act", "action", "Prepare", actionType="transform", description="Preparing data"),
            node("end", "end", "Done"),
        ],
        [edge("e1", "start", "act"), edge("e2", "act", "end")],
    )


def decision_graph(build_graph, condition=None, handles=("yes", "no")):
    decision = node("dec", "decision", "Check")
    if condition is not None:
        decision["condition"] = condition
    return build_graph(
        [
            node("start", "start", "Start"),
            decision,
            node("approve", "action", "Approve"),
            node("reject", "action", "Reject"),
            node("end", "end", "End"),
        ],
        [
            edge("e1", "start", "dec"),
            edge("e-yes", "dec", "approve", handle=handles[0], label="yes"),
            edge("e-no", "dec", "reject", handle=handles[1], label="no"),
            edge("e4", "approve", "end"),
            edge("e5", "reject", "end"),
        ],
    )


def loop_graph(build_graph, loop_count=3):
    return build_graph(
        [
            node("start", "start", "Start"),
            node("loop", "loop", "Retry", loopCount=loop_count),
            node("body", "action", "Attempt"),
            node("end", "end", "End"),
        ],
        [
            edge("e1", "start", "loop"),
            edge("e-loop", "loop", "body", handle="loop"),
            edge("e-back", "body", "loop"),
            edge("e-exit", "loop", "end", handle="exit"),
        ],
    )


class TestLinearRun:
    """Runs that need no user input."""

    def test_runs_to_completion(self, build_graph, fake_http, persister):
        runner = WorkflowRunner(linear_graph(build_graph), http_client=fake_http, persister=persister)

        assert runner.start() is True

        assert runner.phase == RunPhase.COMPLETED
        assert not runner.is_running
        assert runner.state.visited_node_ids == ["start", "act", "end"]
        assert list(runner.get_context()) == ["Start", "Prepare", "Done"]
        assert runner.get_context()["Start"].response["started"] is True
        assert runner.get_context()["Done"].response["completed"] is True

    def test_plain_action_output_resolves_description(self, build_graph, fake_http):
        graph = build_graph(
            [
                node("start", "start", "Start"),
                node("a", "action", "First", description="first step"),
                node("b", "action", "Second", description="after {{First.response.executed}}"),
                node("end", "end", "End"),
            ],
            [edge("e1", "start", "a"), edge("e2", "a", "b"), edge("e3", "b", "end")],
        )
        runner = WorkflowRunner(graph, http_client=fake_http)
        runner.start()

        output = runner.get_context()["Second"]
        assert output.node_kind == "action"
        assert output.response == {"executed": True, "actionType": None, "description": "after true"}

    def test_telemetry_and_summary_messages(self, build_graph, fake_http):
        runner = WorkflowRunner(linear_graph(build_graph), http_client=fake_http)
        runner.start()

        telemetry = runner.get_current_state().telemetry
        assert telemetry.summary.total_nodes == 3
        assert telemetry.summary.success_count == 3
        assert telemetry.summary.error_count == 0
        assert telemetry.ended_at is not None
        assert [step.node_id for step in telemetry.steps] == ["start", "act", "end"]

        contents = [message.content for message in runner.get_messages()]
        assert contents[0] == 'Starting workflow: "Test workflow"'
        assert "Workflow completed at: Done" in contents
        assert "Steps executed: 3" in contents
        assert any(message.type == MessageType.TELEMETRY for message in runner.get_messages())

    def test_persists_completed_record(self, build_graph, fake_http, persister):
        runner = WorkflowRunner(linear_graph(build_graph), http_client=fake_http, persister=persister)
        runner.start()

        assert len(persister.saved) == 1
        workflow_id, record = persister.saved[0]
        assert workflow_id == "wf-1"
        assert record.status == ExecutionStatus.COMPLETED
        assert record.id.startswith("exec-")
        assert record.workflow_name == "Test workflow"
        assert [step.node_id for step in record.steps] == ["start", "act", "end"]
        assert all(step.status == ExecutionStepStatus.SUCCESS for step in record.steps)
        assert set(record.context) == {"Start", "Prepare", "Done"}
        assert record.error is None

    def test_no_start_node_stays_idle(self, build_graph, fake_http, persister):
        graph = build_graph([node("a", "action", "Orphan")], [])
        runner = WorkflowRunner(graph, http_client=fake_http, persister=persister)

        assert runner.start() is False
        assert runner.phase == RunPhase.IDLE
        assert runner.get_messages()[-1].content == "No Start node found in workflow. Please add a Start node."
        assert runner.get_messages()[-1].type == MessageType.ERROR
        assert runner.get_state_snapshots() == []
        assert persister.saved == []

    def test_start_while_running_is_rejected(self, build_graph, fake_http):
        runner = WorkflowRunner(decision_graph(build_graph), http_client=fake_http)
        runner.start()
        assert runner.is_paused

        assert runner.start() is False
        assert runner.is_paused

    def test_restart_after_completion(self, build_graph, fake_http, persister):
        runner = WorkflowRunner(linear_graph(build_graph), http_client=fake_http, persister=persister)
        runner.start()
        assert runner.start() is True

        assert runner.phase == RunPhase.COMPLETED
        assert runner.state.visited_node_ids == ["start", "act", "end"]
        assert len(persister.saved) == 2

    def test_duplicate_labels_last_write_wins(self, build_graph, fake_http):
        graph = build_graph(
            [
                node("start", "start", "Start"),
                node("a", "action", "Step", description="first"),
                node("b", "action", "Step", description="second"),
                node("end", "end", "End"),
            ],
            [edge("e1", "start", "a"), edge("e2", "a", "b"), edge("e3", "b", "end")],
        )
        runner = WorkflowRunner(graph, http_client=fake_http)
        runner.start()

        assert runner.get_context()["Step"].response["description"] == "second"


class TestApiActions:
    """api_call actions through the injected HTTP client."""

    def api_node(self, node_id, label, url, **config):
        return node(node_id, "action", label, actionType="api_call", apiConfig={"url": url, **config})

    def test_stores_response_and_resolves_later_urls(self, build_graph):
        http = FakeHttpClient([
            ApiResponse(status=200, status_text="OK", data={"id": 42, "name": "Ada"}),
            ApiResponse(status=201, status_text="Created", data={"saved": True}),
        ])
        graph = build_graph(
            [
                node("start", "start", "Start"),
                self.api_node("fetch", "Fetch user", "https://api.test/users/1"),
                self.api_node(
                    "save", "Save", "https://api.test/users/{{Fetch user.response.id}}/audit",
                    method="post", body='{"name": "{{Fetch user.response.name}}"}',
                ),
                node("end", "end", "End"),
            ],
            [edge("e1", "start", "fetch"), edge("e2", "fetch", "save"), edge("e3", "save", "end")],
        )
        runner = WorkflowRunner(graph, http_client=http)
        runner.start()

        assert runner.phase == RunPhase.COMPLETED
        assert http.requests[1].url == "https://api.test/users/42/audit"
        assert http.requests[1].body == '{"name": "Ada"}'
        assert http.requests[1].method.value == "POST"

        fetched = runner.get_context()["Fetch user"]
        assert fetched.response == {"id": 42, "name": "Ada"}
        assert fetched.status == 200
        assert fetched.status_text == "OK"

        step = runner.state.execution_steps[1]
        assert step.metadata == {"apiUrl": "https://api.test/users/1", "apiMethod": "GET", "statusCode": 200}

    def test_failed_call_is_recorded_but_run_continues(self, build_graph):
        http = FakeHttpClient([
            ApiResponse(status=0, status_text="Error", data=None, error="Connection refused"),
        ])
        graph = linear_graph(build_graph, self.api_node("act", "Call", "https://down.test"))
        runner = WorkflowRunner(graph, http_client=http)
        runner.start()

        assert runner.phase == RunPhase.COMPLETED
        telemetry = runner.get_current_state().telemetry
        assert telemetry.steps[1].status == StepStatus.ERROR
        assert telemetry.summary.error_count == 1
        assert runner.state.execution_steps[1].status == ExecutionStepStatus.FAILED
        assert runner.state.execution_steps[1].error == "Connection refused"
        assert any(message.content == "Error: Connection refused" for message in runner.get_messages())
        assert any(message.content.startswith("Success: 2") for message in runner.get_messages())

    def test_non_2xx_status_is_a_failed_step(self, build_graph):
        http = FakeHttpClient([ApiResponse(status=404, status_text="Not Found", data="missing")])
        graph = linear_graph(build_graph, self.api_node("act", "Call", "https://api.test/x"))
        runner = WorkflowRunner(graph, http_client=http)
        runner.start()

        assert runner.phase == RunPhase.COMPLETED
        assert runner.get_current_state().telemetry.steps[1].status == StepStatus.ERROR
        assert runner.get_context()["Call"].status == 404

    def test_api_call_without_url_is_a_plain_action(self, build_graph, fake_http):
        graph = linear_graph(build_graph, node("act", "action", "Call", actionType="api_call"))
        runner = WorkflowRunner(graph, http_client=fake_http)
        runner.start()

        assert fake_http.requests == []
        assert runner.get_context()["Call"].response["executed"] is True


class TestDecisions:
    """Automatic and interactive decision nodes."""

    def test_false_condition_follows_no_handle_without_pausing(self, build_graph, fake_http):
        runner = WorkflowRunner(decision_graph(build_graph, condition="1 > 2"), http_client=fake_http)
        runner.start()

        assert runner.phase == RunPhase.COMPLETED
        assert "reject" in runner.state.visited_node_ids
        assert "approve" not in runner.state.visited_node_ids
        output = runner.get_context()["Check"].response
        assert output["result"] is False
        assert output["selectedPath"] == "no"
        assert output["evaluated"] is True

    def test_condition_on_previous_output(self, build_graph):
        http = FakeHttpClient([ApiResponse(status=200, status_text="OK", data={"score": 80})])
        graph = build_graph(
            [
                node("start", "start", "Start"),
                node("fetch", "action", "Score", actionType="api_call", apiConfig={"url": "https://api.test/score"}),
                node("dec", "decision", "High?", condition="{{Score.response.score}} >= 50"),
                node("high", "end", "High"),
                node("low", "end", "Low"),
            ],
            [
                edge("e1", "start", "fetch"),
                edge("e2", "fetch", "dec"),
                edge("e3", "dec", "high", handle="yes"),
                edge("e4", "dec", "low", handle="no"),
            ],
        )
        runner = WorkflowRunner(graph, http_client=http)
        runner.start()

        assert runner.state.visited_node_ids[-1] == "high"
        assert runner.get_context()["High?"].response["resolvedCondition"] == "80 >= 50"

    def test_positional_fallback_without_handles(self, build_graph, fake_http):
        graph = decision_graph(build_graph, condition="false", handles=(None, None))
        runner = WorkflowRunner(graph, http_client=fake_http)
        runner.start()

        assert "reject" in runner.state.visited_node_ids

    def test_no_condition_pauses_with_two_options(self, build_graph, fake_http):
        runner = WorkflowRunner(decision_graph(build_graph), http_client=fake_http)
        runner.start()

        assert runner.phase == RunPhase.PAUSED
        assert runner.is_running
        pending = runner.get_pending_input()
        assert pending.node_id == "dec"
        assert [option.id for option in pending.options] == ["yes", "no"]
        assert [option.label for option in pending.options] == ["Yes", "No"]

    def test_select_option_resumes_to_target(self, build_graph, fake_http):
        runner = WorkflowRunner(decision_graph(build_graph), http_client=fake_http)
        runner.start()
        phases = []
        runner.subscribe(lambda state: phases.append(state.phase))

        assert runner.select_decision_option("no") is True

        assert RunPhase.RUNNING in phases
        assert runner.phase == RunPhase.COMPLETED
        assert runner.state.visited_node_ids == ["start", "dec", "reject", "end"]
        assert runner.get_context()["Check"].response == {"selectedOption": "no"}
        assert runner.get_pending_input() is None

    def test_select_option_by_edge_label(self, build_graph, fake_http):
        runner = WorkflowRunner(decision_graph(build_graph, handles=(None, None)), http_client=fake_http)
        runner.start()
        assert [option.id for option in runner.get_pending_input().options] == ["e-yes", "e-no"]

        runner.select_decision_option("NO")

        assert "reject" in runner.state.visited_node_ids

    def test_unresolved_condition_falls_back_to_pause(self, build_graph, fake_http):
        runner = WorkflowRunner(decision_graph(build_graph, condition="{{Missing.value}} > 1"), http_client=fake_http)
        runner.start()

        assert runner.phase == RunPhase.PAUSED
        assert any("Could not auto-evaluate" in message.content for message in runner.get_messages())

    def test_invalid_condition_falls_back_to_pause(self, build_graph, fake_http):
        runner = WorkflowRunner(decision_graph(build_graph, condition="status ==="), http_client=fake_http)
        runner.start()

        assert runner.phase == RunPhase.PAUSED

    def test_resume_with_wrong_kind_is_ignored(self, build_graph, fake_http):
        runner = WorkflowRunner(decision_graph(build_graph), http_client=fake_http)
        runner.start()

        assert runner.continue_loop(True) is False
        assert runner.select_parallel_branch("branch-1") is False
        assert runner.submit_form({"a": 1}) is False
        assert runner.phase == RunPhase.PAUSED

    def test_resume_when_not_paused_is_ignored(self, build_graph, fake_http):
        runner = WorkflowRunner(linear_graph(build_graph), http_client=fake_http)

        assert runner.select_decision_option("yes") is False
        runner.start()
        assert runner.select_decision_option("yes") is False


class TestParallel:
    def parallel_graph(self, build_graph, targets=("a", "b")):
        nodes = [node("start", "start", "Start"), node("par", "parallel", "Fan out"), node("end", "end", "End")]
        edges = [edge("e0", "start", "par")]
        for index, target in enumerate(targets, start=1):
            nodes.append(node(target, "action", f"Branch {target}"))
            edges.append(edge(f"e-{target}", "par", target))
            edges.append(edge(f"e-{target}-end", target, "end"))
        return build_graph(nodes, edges)

    def test_single_branch_auto_advances(self, build_graph, fake_http):
        runner = WorkflowRunner(self.parallel_graph(build_graph, targets=("a",)), http_client=fake_http)
        runner.start()

        assert runner.phase == RunPhase.COMPLETED
        assert runner.get_context()["Fan out"].response == {"branches": 1}

    def test_pauses_and_selects_positional_branch(self, build_graph, fake_http):
        runner = WorkflowRunner(self.parallel_graph(build_graph), http_client=fake_http)
        runner.start()

        pending = runner.get_pending_input()
        assert [option.label for option in pending.options] == ["Branch 1", "Branch 2"]

        assert runner.select_parallel_branch("branch-2") is True
        assert runner.state.visited_node_ids == ["start", "par", "b", "end"]
        assert runner.get_context()["Fan out"].response == {"selectedBranch": "branch-2"}

    def test_unparsable_branch_takes_first_edge(self, build_graph, fake_http):
        runner = WorkflowRunner(self.parallel_graph(build_graph), http_client=fake_http)
        runner.start()
        runner.select_parallel_branch("whatever")

        assert "a" in runner.state.visited_node_ids


class TestLoops:
    def test_loop_count_exits_on_fourth_entry(self, build_graph, fake_http):
        runner = WorkflowRunner(loop_graph(build_graph, loop_count=3), http_client=fake_http)
        runner.start()

        for expected in (1, 2, 3):
            assert runner.is_paused
            assert runner.continue_loop(True) is True
            assert runner.state.loop_counters["loop"] == expected

        assert runner.phase == RunPhase.COMPLETED
        assert runner.state.visited_node_ids.count("loop") == 4
        assert runner.get_context()["Retry"].response == {"iteration": 3, "maxReached": True, "exited": True}
        assert runner.continue_loop(True) is False

    def test_exit_loop_early(self, build_graph, fake_http):
        runner = WorkflowRunner(loop_graph(build_graph), http_client=fake_http)
        runner.start()
        runner.continue_loop(True)

        assert runner.continue_loop(False) is True

        assert runner.phase == RunPhase.COMPLETED
        assert runner.get_context()["Retry"].response == {"iteration": 1, "continued": False, "exited": True}

    def test_loop_pause_options(self, build_graph, fake_http):
        runner = WorkflowRunner(loop_graph(build_graph), http_client=fake_http)
        runner.start()

        assert [option.id for option in runner.get_pending_input().options] == ["continue", "exit"]

    def test_exit_without_handles_uses_last_edge(self, build_graph, fake_http):
        graph = build_graph(
            [
                node("start", "start", "Start"),
                node("loop", "loop", "Repeat"),
                node("body", "action", "Body"),
                node("end", "end", "End"),
            ],
            [
                edge("e1", "start", "loop"),
                edge("e2", "loop", "body"),
                edge("e3", "body", "loop"),
                edge("e4", "loop", "end"),
            ],
        )
        runner = WorkflowRunner(graph, http_client=fake_http)
        runner.start()
        runner.continue_loop(False)

        assert runner.state.visited_node_ids == ["start", "loop", "end"]


class TestForms:
    form_config = {
        "title": "Customer details",
        "components": [{"id": "f1", "type": "text", "name": "email", "label": "Email", "required": True}],
    }

    def test_pause_and_submit(self, build_graph, fake_http):
        graph = build_graph(
            [node("start", "start", "Start"), node("form", "form", "Details", formConfig=self.form_config),
             node("end", "end", "End")],
            [edge("e1", "start", "form"), edge("e2", "form", "end")],
        )
        runner = WorkflowRunner(graph, http_client=fake_http)
        runner.start()

        pending = runner.get_pending_input()
        assert pending.node_kind == "form"
        assert pending.form_schema.components[0].name == "email"

        assert runner.submit_form({"email": "ada@example.com"}) is True
        assert runner.phase == RunPhase.COMPLETED
        assert runner.get_context()["Details"].response == {"email": "ada@example.com"}

    def test_empty_schema_fails(self, build_graph, fake_http, persister):
        graph = build_graph(
            [node("start", "start", "Start"), node("form", "form", "Details"), node("end", "end", "End")],
            [edge("e1", "start", "form"), edge("e2", "form", "end")],
        )
        runner = WorkflowRunner(graph, http_client=fake_http, persister=persister)
        runner.start()

        assert runner.phase == RunPhase.FAILED
        assert runner.state.error == 'Form "Details" has no fields configured.'
        assert persister.saved[0][1].status == ExecutionStatus.FAILED

    def test_submit_without_outgoing_edge_fails(self, build_graph, fake_http):
        graph = build_graph(
            [node("start", "start", "Start"), node("form", "form", "Details", formConfig=self.form_config)],
            [edge("e1", "start", "form")],
        )
        runner = WorkflowRunner(graph, http_client=fake_http)
        runner.start()
        runner.submit_form({"email": "x"})

        assert runner.phase == RunPhase.FAILED
        assert runner.get_context()["Details"].response == {"email": "x"}

    def test_submitted_values_are_copied(self, build_graph, fake_http):
        graph = build_graph(
            [node("start", "start", "Start"), node("form", "form", "Details", formConfig=self.form_config),
             node("end", "end", "End")],
            [edge("e1", "start", "form"), edge("e2", "form", "end")],
        )
        runner = WorkflowRunner(graph, http_client=fake_http)
        runner.start()
        values = {"name": {"first": "Ada"}, "tags": ["a"]}

        runner.submit_form(values)
        values["name"]["first"] = "Changed"
        values["tags"].append("b")

        assert runner.get_context()["Details"].response == {"name": {"first": "Ada"}, "tags": ["a"]}
        recorded = [s for s in runner.get_state_snapshots() if s.action == "NODE_OUTPUT: Details"][-1]
        assert recorded.context["Details"].response["name"]["first"] == "Ada"


class TestFailures:
    def test_dead_end_action_fails_run(self, build_graph, fake_http, persister):
        graph = build_graph(
            [node("start", "start", "Start"), node("act", "action", "Stuck")],
            [edge("e1", "start", "act")],
        )
        runner = WorkflowRunner(graph, http_client=fake_http, persister=persister)
        runner.start()

        assert runner.phase == RunPhase.FAILED
        assert runner.state.error == 'Action "Stuck" has no outgoing connections. Workflow cannot continue.'
        assert runner.get_messages()[-1].type == MessageType.ERROR
        assert runner.get_state_snapshots()[-1].action.startswith("ERROR: ")

        record = persister.saved[0][1]
        assert record.status == ExecutionStatus.FAILED
        assert record.error == runner.state.error
        assert record.steps[-1].status == ExecutionStepStatus.FAILED

    def test_start_without_edges_fails(self, build_graph, fake_http):
        runner = WorkflowRunner(build_graph([node("start", "start", "Start")], []), http_client=fake_http)
        runner.start()

        assert runner.phase == RunPhase.FAILED
        assert runner.state.error == "Start node has no outgoing connections"

    def test_unknown_node_kind_fails(self, build_graph, fake_http):
        graph = build_graph(
            [node("start", "start", "Start"), node("x", "webhook", "Hook")],
            [edge("e1", "start", "x")],
        )
        runner = WorkflowRunner(graph, http_client=fake_http)
        runner.start()

        assert runner.phase == RunPhase.FAILED
        assert runner.state.error == "Unknown node type: webhook"

    def test_missing_target_node_fails(self, build_graph, fake_http):
        runner = WorkflowRunner(
            build_graph([node("start", "start", "Start")], [edge("e1", "start", "ghost")]),
            http_client=fake_http,
        )
        runner.start()

        assert runner.phase == RunPhase.FAILED
        assert runner.state.error == "Node not found: ghost"

    def test_runaway_cycle_is_bounded(self, build_graph, fake_http):
        graph = build_graph(
            [node("start", "start", "Start"), node("a", "action", "A"), node("b", "action", "B")],
            [edge("e1", "start", "a"), edge("e2", "a", "b"), edge("e3", "b", "a")],
        )
        runner = WorkflowRunner(graph, http_client=fake_http, max_steps_per_run=20)
        runner.start()

        assert runner.phase == RunPhase.FAILED
        assert "Exceeded 20 node entries" in runner.state.error

        # Every entered node finished before the bound tripped
        assert len(runner.state.execution_steps) == 20
        assert all(step.status == ExecutionStepStatus.SUCCESS for step in runner.state.execution_steps)
        assert runner.state.telemetry.summary.error_count == 0


class TestStopAndReset:
    def test_stop_while_paused_cancels(self, build_graph, fake_http, persister):
        runner = WorkflowRunner(decision_graph(build_graph), http_client=fake_http, persister=persister)
        runner.start()

        assert runner.stop() is True

        assert runner.phase == RunPhase.CANCELLED
        assert runner.get_pending_input() is None
        assert runner.get_state_snapshots()[-1].action == "WORKFLOW_STOPPED"
        record = persister.saved[0][1]
        assert record.status == ExecutionStatus.CANCELLED
        assert record.error == STOPPED_BY_USER

    def test_stop_is_noop_when_not_running(self, build_graph, fake_http, persister):
        runner = WorkflowRunner(linear_graph(build_graph), http_client=fake_http, persister=persister)
        assert runner.stop() is False

        runner.start()
        assert runner.stop() is False
        assert len(persister.saved) == 1

    def test_reset_returns_to_idle(self, build_graph, fake_http):
        runner = WorkflowRunner(decision_graph(build_graph), http_client=fake_http)
        runner.start()
        runner.reset()

        state = runner.get_current_state()
        assert state.phase == RunPhase.IDLE
        assert state.context == {}
        assert state.visited_node_ids == []
        assert runner.get_state_snapshots() == []
        assert runner.graph.get_node("dec") is not None


class TestObservation:
    def test_subscribers_receive_independent_copies(self, build_graph, fake_http):
        received = []
        runner = WorkflowRunner(linear_graph(build_graph), on_state_change=received.append, http_client=fake_http)
        runner.start()

        assert received
        assert received[-1].phase == RunPhase.COMPLETED
        received[-1].context.clear()
        received[-1].visited_node_ids.append("tampered")
        assert "Start" in runner.get_context()
        assert "tampered" not in runner.state.visited_node_ids

    def test_failing_callback_does_not_break_run(self, build_graph, fake_http):
        def explode(state):
            raise RuntimeError("observer bug")

        runner = WorkflowRunner(linear_graph(build_graph), on_state_change=explode, http_client=fake_http)
        runner.start()

        assert runner.phase == RunPhase.COMPLETED

    def test_unsubscribe(self, build_graph, fake_http):
        received = []
        runner = WorkflowRunner(linear_graph(build_graph), http_client=fake_http)
        unsubscribe = runner.subscribe(received.append)
        unsubscribe()
        runner.start()

        assert received == []


class TestSnapshots:
    def test_snapshot_sequence(self, build_graph, fake_http):
        runner = WorkflowRunner(linear_graph(build_graph), http_client=fake_http)
        runner.start()

        actions = [snapshot.action for snapshot in runner.get_state_snapshots()]
        assert actions[0] == "WORKFLOW_START"
        assert actions[1] == "ENTER_NODE: Start"
        assert actions[2] == "NODE_OUTPUT: Start"
        assert actions[-1] == "WORKFLOW_COMPLETE"

    def test_new_label_is_added(self, build_graph, fake_http):
        runner = WorkflowRunner(linear_graph(build_graph), http_client=fake_http)
        runner.start()

        outputs = [s for s in runner.get_state_snapshots() if s.action.startswith("NODE_OUTPUT")]
        assert outputs[0].diff.added == ["Start"]
        assert outputs[1].diff.added == ["Prepare"]
        assert outputs[1].diff.modified == []

    def test_restored_label_is_modified(self, build_graph, fake_http):
        runner = WorkflowRunner(loop_graph(build_graph), http_client=fake_http)
        runner.start()
        runner.continue_loop(True)
        runner.continue_loop(True)

        loop_outputs = [s for s in runner.get_state_snapshots() if s.action == "NODE_OUTPUT: Retry"]
        assert loop_outputs[0].diff.added == ["Retry"]
        assert loop_outputs[1].diff.modified == ["Retry"]
        assert loop_outputs[1].diff.added == []
        for snapshot in runner.get_state_snapshots():
            if snapshot.diff is not None:
                assert not set(snapshot.diff.added) & set(snapshot.diff.modified)

    def test_non_mutation_snapshots_have_no_diff(self, build_graph, fake_http):
        runner = WorkflowRunner(linear_graph(build_graph), http_client=fake_http)
        runner.start()

        for snapshot in runner.get_state_snapshots():
            if not snapshot.action.startswith("NODE_OUTPUT"):
                assert snapshot.diff is None

    def test_snapshots_capture_context_at_that_instant(self, build_graph, fake_http):
        runner = WorkflowRunner(linear_graph(build_graph), http_client=fake_http)
        runner.start()

        snapshots = runner.get_state_snapshots()
        assert snapshots[0].context == {}
        assert list(snapshots[2].context) == ["Start"]
        assert snapshots[2].is_running is True

    def test_returned_snapshots_cannot_rewrite_history(self, build_graph, fake_http):
        runner = WorkflowRunner(linear_graph(build_graph), http_client=fake_http)
        runner.start()

        snapshot = runner.get_state_snapshots()[-1]
        snapshot.context["Start"].response["started"] = False
        snapshot.visited_node_ids.append("bogus")
        snapshot.context.clear()

        fresh = runner.get_state_snapshots()[-1]
        assert fresh.context["Start"].response["started"] is True
        assert fresh.visited_node_ids == ["start", "act", "end"]
        assert runner.get_current_state().snapshots[-1].visited_node_ids == ["start", "act", "end"]

    def test_api_payload_is_copied_into_context(self, build_graph):
        payload = {"user": {"id": 7}}
        client = FakeHttpClient([ApiResponse(status=200, status_text="OK", data=payload)])
        action = node("act", "action", "Fetch", actionType="api_call", apiConfig={"url": "https://api.test/user"})
        runner = WorkflowRunner(linear_graph(build_graph, action=action), http_client=client)
        runner.start()

        payload["user"]["id"] = 8

        assert runner.get_context()["Fetch"].response == {"user": {"id": 7}}


class TestPersistence:
    def test_persistence_failure_does_not_change_phase(self, build_graph, fake_http, failing_persister):
        runner = WorkflowRunner(linear_graph(build_graph), http_client=fake_http, persister=failing_persister)
        runner.start()

        assert failing_persister.calls == 1
        assert runner.phase == RunPhase.COMPLETED
        assert runner.state.error is None

    def test_workflow_without_id_is_not_persisted(self, build_graph, fake_http, persister):
        graph = linear_graph(build_graph).model_copy(update={"id": ""})
        runner = WorkflowRunner(graph, http_client=fake_http, persister=persister)
        runner.start()

        assert runner.phase == RunPhase.COMPLETED
        assert persister.saved == []

    def test_record_uses_workflow_version(self, build_graph, fake_http, persister):
        runner = WorkflowRunner(
            linear_graph(build_graph), http_client=fake_http, persister=persister, workflow_version=7
        )
        runner.start()

        assert persister.saved[0][1].workflow_version == 7


@pytest.mark.parametrize("option_id,expected", [("yes", "approve"), ("e-no", "reject"), ("No", "reject")])
def test_decision_tie_break_chain(build_graph, fake_http, option_id, expected):
    runner = WorkflowRunner(decision_graph(build_graph), http_client=fake_http)
    runner.start()
    runner.select_decision_option(option_id)

    assert runner.state.visited_node_ids[2] == expected
