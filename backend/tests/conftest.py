"""Shared test fixtures for backend tests.

Provides a temporary ProjectStore, a fresh EventBus, the scripted agent
runner and fully wired coordination components, so tests never touch git
or a real agent runtime.
"""

import sys
from pathlib import Path

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from models.database import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.runner import ScriptedAgentRunner  # noqa: E402
from agents.tools import ToolExecutor  # noqa: E402
from coordination.dispatcher import FanOutDispatcher  # noqa: E402
from coordination.reconciler import FanInReconciler  # noqa: E402
from diffs import DiffUnavailableError  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import EventType, WorkflowEvent  # noqa: E402
from models.database import ProjectStore  # noqa: E402
from models.schemas import (  # noqa: E402
    AgentRole,
    SessionContextType,
    Workflow,
    WorkflowStatus,
)
from session_manager import ActiveSession, SessionManager  # noqa: E402
from workflow_orchestrator import WorkflowOrchestrator  # noqa: E402

# ---------------------------------------------------------------------------
# Diff source double
# ---------------------------------------------------------------------------


SAMPLE_DIFF = """diff --git a/src/app.py b/src/app.py
index 1111111..2222222 100644
--- a/src/app.py
+++ b/src/app.py
@@ -1,2 +1,3 @@
 import os
+import sys
 print(os.getcwd())
diff --git a/src/util.py b/src/util.py
index 3333333..4444444 100644
--- a/src/util.py
+++ b/src/util.py
@@ -1 +1 @@
-VALUE = 1
+VALUE = 2
diff --git a/docs/readme.md b/docs/readme.md
index 5555555..6666666 100644
--- a/docs/readme.md
+++ b/docs/readme.md
@@ -1 +1 @@
-Old
+New
"""


class FakeDiffSource:
    """In-memory diff source recording the refs it was asked for.

    Args:
        diff: Diff returned by get_diff.
        error: If set, get_diff raises DiffUnavailableError with this text.
    """

    def __init__(self, diff: str = SAMPLE_DIFF, error: str | None = None) -> None:
        self.diff = diff
        self.error = error
        self.calls: list[tuple[str, str, str]] = []

    async def get_diff(self, project_root: str, base_branch: str, branch: str) -> str:
        self.calls.append((project_root, base_branch, branch))
        if self.error is not None:
            raise DiffUnavailableError(self.error)
        return self.diff


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


@pytest.fixture()
async def store(tmp_path: Path) -> ProjectStore:
    """Provide an initialized ProjectStore backed by a temporary file."""
    project_store = ProjectStore(str(tmp_path / "project.db"), busy_timeout=10.0)
    await project_store.init()
    return project_store


@pytest.fixture()
def runner() -> ScriptedAgentRunner:
    """Provide a scripted runner with no handlers (turns are no-ops)."""
    return ScriptedAgentRunner()


@pytest.fixture()
async def session_manager(
    store: ProjectStore, event_bus: EventBus, runner: ScriptedAgentRunner
) -> SessionManager:
    manager = SessionManager(store, event_bus, runner)
    yield manager
    await manager.cleanup_all()


@pytest.fixture()
def reconciler(
    store: ProjectStore, session_manager: SessionManager, event_bus: EventBus
) -> FanInReconciler:
    return FanInReconciler(store, session_manager, event_bus)


@pytest.fixture()
def diff_source() -> FakeDiffSource:
    return FakeDiffSource()


@pytest.fixture()
def dispatcher(
    store: ProjectStore,
    session_manager: SessionManager,
    reconciler: FanInReconciler,
    event_bus: EventBus,
    diff_source: FakeDiffSource,
) -> FanOutDispatcher:
    return FanOutDispatcher(
        store,
        session_manager,
        reconciler,
        event_bus,
        diff_source=diff_source,
        project_root="/repo",
        branch_for=lambda workflow_id: f"work/{workflow_id}",
    )


@pytest.fixture()
def tool_executor(dispatcher: FanOutDispatcher, reconciler: FanInReconciler) -> ToolExecutor:
    return ToolExecutor(dispatcher, reconciler, max_parallel_tasks=4)


@pytest.fixture()
def orchestrator(
    store: ProjectStore, session_manager: SessionManager, event_bus: EventBus
) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(store, session_manager, event_bus)


# ---------------------------------------------------------------------------
# Scenario helpers
# ---------------------------------------------------------------------------


async def make_workflow(
    store: ProjectStore,
    workflow_id: str = "wf_test",
    status: WorkflowStatus = WorkflowStatus.REVIEW,
    base_branch: str | None = "main",
) -> Workflow:
    """Create a workflow row directly in the store."""
    return await store.create_workflow(
        workflow_id=workflow_id,
        title="Test workflow",
        status=status,
        base_branch=base_branch,
    )


async def start_coordinator(
    session_manager: SessionManager,
    workflow_id: str = "wf_test",
) -> ActiveSession:
    """Start the review coordinator session of a workflow."""
    return await session_manager.start_session(
        context_type=SessionContextType.WORKFLOW,
        context_id=workflow_id,
        agent_role=AgentRole.REVIEW,
        workflow_id=workflow_id,
    )


def drain_events(event_bus: EventBus, workflow_id: str) -> list[WorkflowEvent]:
    """Return every event recorded for a workflow so far."""
    return event_bus.get_event_history(workflow_id)


def events_of_type(
    event_bus: EventBus, workflow_id: str, event_type: EventType
) -> list[WorkflowEvent]:
    return [e for e in drain_events(event_bus, workflow_id) if e.type == event_type]
