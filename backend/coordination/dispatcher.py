"""Fan-out of a coordinator's work into parallel sub-agent sessions.

Dispatch order per fan-out:
1. Check the coordinator session is live and belongs to the workflow
2. Load the workflow diff (or fall back to a placeholder)
3. Persist every subtask row in one transaction
4. Per task: start a child session, mark the subtask running, launch the
   child's first turn

A child that fails to start, raises, or ends without reporting is failed
through the reconciler, so the coordinator always hears back.
"""

from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from agents.prompts import build_subtask_message
from coordination.diff_filter import filter_diff_for_files
from coordination.reconciler import FanInReconciler
from diffs import DiffSource
from events import EventBus
from events.types import EventType, WorkflowEvent
from models.database import ProjectStore, generate_id
from models.schemas import (
    TERMINAL_SESSION_STATUSES,
    AgentRole,
    SessionContextType,
    TaskDefinition,
    Workflow,
)
from session_manager import SessionManager

logger = structlog.get_logger()

UNREPORTED_ERROR = "Sub-agent session ended without submitting results"


class DispatchError(RuntimeError):
    """Raised when a fan-out cannot be set up at all."""


@dataclass
class DispatchResult:
    """Outcome of one fan-out.

    Attributes:
        coordinator_session_id: Session that requested the fan-out
        subtask_ids: Created subtasks, in task order
        launched: Subtasks whose child session was started
        failed: Subtasks failed during dispatch
        diff_available: False if children got the "diff unavailable" placeholder
    """

    coordinator_session_id: str
    subtask_ids: list[str] = field(default_factory=list)
    launched: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    diff_available: bool = True


class FanOutDispatcher:
    """Creates subtasks and their child sessions for a coordinator."""

    def __init__(
        self,
        store: ProjectStore,
        session_manager: SessionManager,
        reconciler: FanInReconciler,
        event_bus: EventBus,
        diff_source: DiffSource,
        project_root: str,
        branch_for: Callable[[str], str],
        child_role: AgentRole = AgentRole.REVIEW_SUB,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            store: Store holding workflows and subtasks
            session_manager: Registry starting the child sessions
            reconciler: Failure path for children that never report
            event_bus: Event bus for fan-out progress
            diff_source: Source of the workflow diff
            project_root: Repository the diff is computed in
            branch_for: Maps a workflow id to its working branch
            child_role: Agent role of the child sessions
        """
        self.store = store
        self.session_manager = session_manager
        self.reconciler = reconciler
        self.event_bus = event_bus
        self.diff_source = diff_source
        self.project_root = project_root
        self.branch_for = branch_for
        self.child_role = child_role

    async def _load_diff(self, workflow: Workflow) -> str | None:
        if not workflow.base_branch:
            logger.warning("fan_out_diff_no_base_branch", workflow_id=workflow.id)
            return None
        try:
            return await self.diff_source.get_diff(
                self.project_root,
                workflow.base_branch,
                self.branch_for(workflow.id),
            )
        except Exception as e:
            logger.warning(
                "fan_out_diff_unavailable",
                workflow_id=workflow.id,
                error=str(e),
            )
            return None

    async def _check_coordinator(self, coordinator_session_id: str, workflow_id: str) -> None:
        record = await self.store.get_session(coordinator_session_id)
        if record is None:
            raise DispatchError(f"Coordinator session not found: {coordinator_session_id}")
        if record.status in TERMINAL_SESSION_STATUSES:
            raise DispatchError(
                f"Coordinator session {coordinator_session_id} is {record.status}; "
                "it can no longer receive results"
            )
        if record.workflow_id != workflow_id:
            raise DispatchError(
                f"Coordinator session {coordinator_session_id} does not belong to "
                f"workflow {workflow_id}"
            )

    async def dispatch(
        self,
        coordinator_session_id: str,
        workflow_id: str,
        tasks: list[TaskDefinition],
    ) -> DispatchResult:
        """Fan out ``tasks`` into child sessions of the coordinator.

        Returns once every child is launched (or failed); it does not wait
        for the children to finish.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            DispatchError: If there are no tasks, the coordinator session is
                missing, terminal or bound to another workflow, or the subtasks
                could not be persisted (nothing was launched).
        """
        if not tasks:
            raise DispatchError("At least one task is required")

        workflow = await self.store.require_workflow(workflow_id)
        await self._check_coordinator(coordinator_session_id, workflow_id)
        diff = await self._load_diff(workflow)

        planned = [(generate_id("subtask"), task) for task in tasks]
        try:
            await self.store.create_subtasks(
                coordinator_session_id,
                workflow_id,
                [(subtask_id, task.model_dump()) for subtask_id, task in planned],
            )
        except Exception as e:
            raise DispatchError(f"Failed to create subtasks: {e}") from e

        result = DispatchResult(
            coordinator_session_id=coordinator_session_id,
            subtask_ids=[subtask_id for subtask_id, _ in planned],
            diff_available=diff is not None,
        )
        logger.info(
            "fan_out_subtasks_created",
            coordinator_session_id=coordinator_session_id,
            workflow_id=workflow_id,
            count=len(planned),
            diff_available=result.diff_available,
        )
        await self.event_bus.publish(
            WorkflowEvent(
                type=EventType.SUBTASKS_SPAWNED,
                workflow_id=workflow_id,
                session_id=coordinator_session_id,
                data={
                    "coordinator_session_id": coordinator_session_id,
                    "subtask_ids": result.subtask_ids,
                    "labels": [task.label for _, task in planned],
                },
            )
        )

        for subtask_id, task in planned:
            try:
                await self._launch(coordinator_session_id, workflow_id, subtask_id, task, diff)
                result.launched.append(subtask_id)
            except Exception as e:
                logger.error(
                    "fan_out_launch_failed",
                    subtask_id=subtask_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.failed.append(subtask_id)
                await self.reconciler.fail(
                    subtask_id, f"Failed to start sub-agent session: {e}"
                )

        return result

    async def _launch(
        self,
        coordinator_session_id: str,
        workflow_id: str,
        subtask_id: str,
        task: TaskDefinition,
        diff: str | None,
    ) -> None:
        session = await self.session_manager.start_session(
            context_type=SessionContextType.SUBTASK,
            context_id=subtask_id,
            agent_role=self.child_role,
            workflow_id=workflow_id,
            parent_session_id=coordinator_session_id,
        )

        async def _on_error(exc: Exception) -> None:
            await self.reconciler.fail(subtask_id, f"Sub-agent run failed: {exc}")

        async def _on_finish() -> None:
            await self.reconciler.fail_if_unfinished(subtask_id, UNREPORTED_ERROR)

        try:
            await self.store.start_subtask(subtask_id)
            relevant = filter_diff_for_files(diff, task.files) if diff is not None else None
            message = build_subtask_message(task, relevant)
            await self.session_manager.launch_session(
                session, message, on_error=_on_error, on_finish=_on_finish
            )
        except Exception as e:
            # The child never ran: do not leave its session active
            await self.session_manager.error_session(
                session.session_id, f"Failed to start sub-agent session: {e}"
            )
            raise
        logger.debug(
            "fan_out_child_launched",
            subtask_id=subtask_id,
            session_id=session.session_id,
        )
