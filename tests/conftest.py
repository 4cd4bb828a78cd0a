"""Pytest configuration and fixtures."""

import os
import tempfile
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

import automation_engine.storage.database as db_module
from automation_engine.config import get_testing_config
from automation_engine.factory import initialize_core_components
from automation_engine.integrations.base import Contact
from automation_engine.integrations.memory import (
    InMemoryContactStore,
    RecordingMessagingGateway,
    ScriptedAIProvider,
)
from automation_engine.models.core import (
    EdgeDefinition,
    NodeDefinition,
    WorkflowDefinition,
    WorkflowSettings,
)

ORG_ID = "org-1"

# Monday 10:00 UTC
START_TIME = datetime(2024, 1, 8, 10, 0, 0)


class FakeClock:
    """Manually advanced clock returning naive UTC datetimes."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


def make_node(node_id: str, node_type: str, name=None, **config) -> NodeDefinition:
    return NodeDefinition(id=node_id, type=node_type, name=name, config=config)


def make_edge(source: str, target: str, handle: str = "default") -> EdgeDefinition:
    return EdgeDefinition(id=f"{source}-{handle}-{target}", source=source, target=target, source_handle=handle)


def make_definition(nodes, edges, name: str = "Test workflow", **settings) -> WorkflowDefinition:
    return WorkflowDefinition(
        name=name,
        nodes=nodes,
        edges=edges,
        settings=WorkflowSettings(**settings)
    )


@pytest.fixture
def graph():
    """Builders for workflow definitions."""
    return SimpleNamespace(node=make_node, edge=make_edge, definition=make_definition)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    db_module.init_database(f"sqlite:///{db_path}")
    db_module.create_tables()

    yield db_path

    # Cleanup
    db_module.reset_database_engine()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_config(temp_db):
    """Testing configuration pointing at the temporary database."""
    return get_testing_config().model_copy(update={"database_url": f"sqlite:///{temp_db}"})


@pytest.fixture
def contact_store():
    return InMemoryContactStore([
        Contact(
            id="contact-1",
            organization_id=ORG_ID,
            first_name="Ada",
            last_name="Lovelace",
            email="ada@example.com",
            phone="+15550001",
            tags=["lead"],
            custom_fields={"plan": "pro", "score": 42},
        ),
        Contact(
            id="contact-2",
            organization_id=ORG_ID,
            first_name="Grace",
            phone="+15550002",
            custom_fields={"plan": "free"},
        ),
        Contact(id="contact-3", organization_id=ORG_ID, first_name="Nophone"),
    ])


@pytest.fixture
def messaging():
    return RecordingMessagingGateway()


@pytest.fixture
def ai_provider():
    return ScriptedAIProvider()


@pytest.fixture
def components(test_config, contact_store, messaging, ai_provider, clock):
    """Fully wired engine components sharing the fake clock."""
    state = initialize_core_components(
        test_config,
        contact_store=contact_store,
        messaging=messaging,
        ai_provider=ai_provider,
        clock=clock,
        worker_id="test-worker"
    )
    yield state
    state.scheduler.shutdown()
    state.execution_engine.shutdown()


@pytest.fixture
def publish(components):
    """Create and publish a workflow in the test organization."""
    def _publish(definition: WorkflowDefinition, organization_id: str = ORG_ID):
        workflow = components.workflow_manager.create_workflow(organization_id, definition)
        return components.workflow_manager.publish(workflow.id)
    return _publish


@pytest.fixture
def drain(components):
    """Run sweeps until nothing due is left at the current clock time."""
    def _drain(max_sweeps: int = 10):
        results = []
        for _ in range(max_sweeps):
            sweep = components.scheduler.run_sweep()
            if not sweep.claimed:
                break
            results.extend(sweep.results)
        return results
    return _drain
