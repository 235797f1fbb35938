"""Tests for run-context logging."""

import json
import logging
import threading

import pytest

from conftest import edge, node
from flowrunner.core.logging import (
    RunContextFilter, StructuredFormatter, clear_logging_context, get_logging_context,
    log_with_context, logging_context, set_logging_context
)
from flowrunner.core.session_manager import SessionManager


@pytest.fixture(autouse=True)
def clean_context():
    clear_logging_context()
    yield
    clear_logging_context()


@pytest.fixture
def captured(caplog):
    caplog.handler.addFilter(RunContextFilter())
    caplog.set_level(logging.DEBUG, logger="flowrunner")
    return caplog


def make_record(message="hello", **extra_fields):
    record = logging.LogRecord("flowrunner.test", logging.INFO, __file__, 1, message, None, None)
    if extra_fields:
        record.extra_fields = extra_fields
    return record


class TestLoggingContext:
    def test_block_restores_previous_fields(self):
        set_logging_context(request_id="req-1")

        with logging_context(session_id="session-a"):
            set_logging_context(node_id="n1")
            assert get_logging_context() == {"request_id": "req-1", "session_id": "session-a", "node_id": "n1"}

        assert get_logging_context() == {"request_id": "req-1"}

    def test_threads_do_not_share_context(self):
        seen = {}
        ready = threading.Barrier(2)

        def worker(name):
            with logging_context(request_id=name):
                ready.wait()
                clear_logging_context()
                seen[name] = get_logging_context()

        set_logging_context(request_id="main")
        threads = [threading.Thread(target=worker, args=(name,)) for name in ("a", "b")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert seen == {"a": {}, "b": {}}
        assert get_logging_context() == {"request_id": "main"}

    def test_filter_merges_ambient_and_explicit_fields(self):
        record = make_record(node_id="explicit")

        with logging_context(session_id="session-a", node_id="ambient", workflow_id=None):
            RunContextFilter().filter(record)

        assert record.extra_fields == {"session_id": "session-a", "node_id": "explicit"}
        assert record.run_context == " [session_id=session-a node_id=explicit]"

    def test_filter_without_context(self):
        record = make_record()
        RunContextFilter().filter(record)

        assert record.extra_fields == {}
        assert record.run_context == ""

    def test_structured_formatter_emits_context(self):
        record = make_record("saved", status="ok")
        with logging_context(workflow_id="wf-1"):
            RunContextFilter().filter(record)

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["message"] == "saved"
        assert entry["workflow_id"] == "wf-1"
        assert entry["status"] == "ok"


def test_log_with_context_passes_fields(captured):
    log_with_context(logging.getLogger("flowrunner.test"), logging.WARNING, "retrying", attempt=2)

    assert captured.records[-1].extra_fields == {"attempt": 2}


def test_session_runs_log_session_workflow_and_node(captured, build_graph, fake_http):
    graph = build_graph(
        [node("s", "start", "Start"), node("d", "decision", "Choose"), node("e", "end", "End")],
        [edge("e1", "s", "d"), edge("e2", "d", "e", handle="yes"), edge("e3", "d", "e", handle="no")],
    )
    manager = SessionManager(http_client=fake_http)

    session = manager.create_session(graph)
    session.call(lambda runner: runner.select_decision_option("yes"))

    entries = [r for r in captured.records if r.getMessage().startswith("Entering node")]
    assert [r.extra_fields["node_id"] for r in entries] == ["s", "d", "e"]
    for record in entries:
        assert record.extra_fields["session_id"] == session.id
        assert record.extra_fields["workflow_id"] == "wf-1"

    # Nothing leaks once the session call returns
    assert get_logging_context() == {}
