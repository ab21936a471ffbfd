"""Fan-in reconciliation of subtask outcomes.

Every subtask outcome (reported findings, failed run, failed dispatch,
missed liveness deadline) goes through ``FanInReconciler``. The terminal
write and the sibling check share one store transaction, so exactly one
outcome per coordinator observes that all siblings are done. That caller
merges the findings, persists the merged message, and resumes the
coordinator session.

Usage:
    >>> reconciler = FanInReconciler(store, session_manager, event_bus)
    >>> await reconciler.complete("subtask_abc123", findings)
    >>> await reconciler.fail("subtask_def456", "Sub-agent run failed: timeout")
"""

from typing import Any

import structlog

from coordination.merger import format_coordinator_message
from events import EventBus
from events.types import EventType, WorkflowEvent
from models.database import ProjectStore
from models.schemas import SubtaskTransition
from session_manager import SessionManager

logger = structlog.get_logger()


class FanInReconciler:
    """Applies subtask outcomes and resumes the coordinator exactly once.

    Attributes:
        store: Transactional subtask store
        session_manager: Registry used to resume the coordinator
        event_bus: Event bus for progress and coordination errors
    """

    def __init__(
        self,
        store: ProjectStore,
        session_manager: SessionManager,
        event_bus: EventBus,
    ) -> None:
        self.store = store
        self.session_manager = session_manager
        self.event_bus = event_bus

    async def complete(self, subtask_id: str, findings: Any) -> SubtaskTransition:
        """Record a sub-agent's findings.

        Raises:
            SubtaskNotFoundError: If the subtask does not exist.
        """
        transition = await self.store.complete_and_check_siblings(subtask_id, findings)
        await self._after_transition(transition, error=None)
        return transition

    async def fail(self, subtask_id: str, error: str) -> SubtaskTransition:
        """Record a subtask failure.

        Raises:
            SubtaskNotFoundError: If the subtask does not exist.
        """
        transition = await self.store.fail_and_check_siblings(subtask_id, error)
        await self._after_transition(transition, error=error)
        return transition

    async def fail_if_unfinished(self, subtask_id: str, error: str) -> SubtaskTransition | None:
        """Fail a subtask only if it has not reached a terminal state yet."""
        subtask = await self.store.get_subtask(subtask_id)
        if subtask is None or subtask.is_terminal:
            return None
        return await self.fail(subtask_id, error)

    async def _after_transition(
        self, transition: SubtaskTransition, error: str | None
    ) -> None:
        if transition.duplicate:
            logger.warning(
                "subtask_duplicate_report_ignored",
                subtask_id=transition.subtask_id,
                status=transition.status.value,
            )
            return

        logger.info(
            "subtask_terminal",
            subtask_id=transition.subtask_id,
            parent_session_id=transition.parent_session_id,
            status=transition.status.value,
            all_done=transition.all_done,
        )
        await self.event_bus.publish(
            WorkflowEvent(
                type=EventType.SUBTASK_UPDATED,
                workflow_id=transition.workflow_id,
                session_id=transition.parent_session_id,
                data={
                    "subtask_id": transition.subtask_id,
                    "status": transition.status.value,
                    "error": error,
                },
            )
        )

        if transition.should_resume:
            await self._merge_and_resume(
                transition.parent_session_id, transition.workflow_id
            )

    async def _merge_and_resume(self, parent_session_id: str, workflow_id: str) -> None:
        """Merge sibling results and deliver them to the coordinator.

        Never raises: failures are logged and broadcast as
        ``coordination_error``. The merged message is persisted before the
        resume attempt so it survives a missing coordinator.
        """
        try:
            merged = await self.store.merged_results_for(parent_session_id)
            message = format_coordinator_message(merged)
            await self.store.save_fan_in_result(parent_session_id, workflow_id, message)

            resumed = await self.session_manager.resume_session(parent_session_id, message)
            if not resumed:
                await self._broadcast_error(
                    workflow_id,
                    parent_session_id,
                    f"Coordinator session {parent_session_id} not found or no longer resumable",
                )
                return

            await self.store.mark_fan_in_delivered(parent_session_id)
            logger.info(
                "coordinator_resumed",
                parent_session_id=parent_session_id,
                completed=len(merged.completed),
                failed=len(merged.failed),
            )
            await self.event_bus.publish(
                WorkflowEvent(
                    type=EventType.COORDINATOR_RESUMED,
                    workflow_id=workflow_id,
                    session_id=parent_session_id,
                    data={
                        "coordinator_session_id": parent_session_id,
                        "completed": len(merged.completed),
                        "failed": len(merged.failed),
                    },
                )
            )
        except Exception as e:
            logger.error(
                "coordinator_resume_failed",
                parent_session_id=parent_session_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._broadcast_error(workflow_id, parent_session_id, str(e))

    async def _broadcast_error(
        self, workflow_id: str, coordinator_session_id: str, error: str
    ) -> None:
        logger.error(
            "coordination_error",
            workflow_id=workflow_id,
            coordinator_session_id=coordinator_session_id,
            error=error,
        )
        try:
            await self.event_bus.publish(
                WorkflowEvent(
                    type=EventType.COORDINATION_ERROR,
                    workflow_id=workflow_id,
                    session_id=coordinator_session_id,
                    data={
                        "workflow_id": workflow_id,
                        "error": error,
                        "coordinator_session_id": coordinator_session_id,
                    },
                )
            )
        except Exception as e:
            logger.error("coordination_error_broadcast_failed", error=str(e))
