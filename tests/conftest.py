"""Pytest configuration and fixtures."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from flowrunner.core.exceptions import StorageError
from flowrunner.models.execution import ApiResponse
from flowrunner.models.graph import WorkflowGraph
from flowrunner.storage.database import Base
from flowrunner.storage import models  # noqa: F401


class FakeHttpClient:
    """Returns queued ApiResponses and records every resolved request config."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.requests = []

    def execute(self, config):
        self.requests.append(config)
        if self.responses:
            return self.responses.pop(0)
        return ApiResponse(status=200, status_text="OK", data={"ok": True})

    def close(self):
        pass


class InMemoryPersister:
    """Collects saved execution records."""

    def __init__(self):
        self.saved = []

    def save_execution(self, workflow_id, record):
        self.saved.append((workflow_id, record))
        return record


class FailingPersister:
    def __init__(self):
        self.calls = 0

    def save_execution(self, workflow_id, record):
        self.calls += 1
        raise StorageError("database is locked", operation="save_execution")


def node(node_id, kind, label=None, **data):
    """Canonical node payload; extra keys use the canvas camelCase names."""
    return {"id": node_id, "type": kind, "label": label or node_id, **data}


def edge(edge_id, source, target, handle=None, label=None):
    return {"id": edge_id, "source": source, "target": target, "sourceHandle": handle, "label": label}


@pytest.fixture
def build_graph():
    """Factory building a WorkflowGraph from node and edge payloads."""
    def _build(nodes, edges, workflow_id="wf-1", name="Test workflow"):
        return WorkflowGraph.model_validate({
            "id": workflow_id,
            "name": name,
            "nodes": nodes,
            "edges": edges,
        })
    return _build


@pytest.fixture
def fake_http():
    return FakeHttpClient()


@pytest.fixture
def persister():
    return InMemoryPersister()


@pytest.fixture
def failing_persister():
    return FailingPersister()


@pytest.fixture
def session_factory():
    """Session factory bound to a fresh in-memory database."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    yield factory

    Base.metadata.drop_all(bind=engine)
    engine.dispose()
