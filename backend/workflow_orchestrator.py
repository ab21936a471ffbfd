"""Workflow orchestrator: drives workflows through their gated stages.

The orchestrator reacts to stage-completion tools reported by agent
sessions, raises approval gates for artifacts, and on approval moves the
workflow forward: the old stage session is stopped, the transition is
recorded, and a session for the new stage is started.

Usage:
    >>> orchestrator = WorkflowOrchestrator(store, session_manager, event_bus)
    >>> workflow = await orchestrator.create_workflow("Add export", base_branch="main")
    >>> await orchestrator.handle_tool_result(workflow.id, "submit_scope", {...})
    >>> await orchestrator.approve_artifact(workflow.id)
"""

from typing import Any

import structlog

from agents.prompts import build_changes_requested_message, build_stage_message
from events import EventBus
from events.types import EventType, WorkflowEvent
from models.database import ProjectStore, generate_id
from models.schemas import (
    ArtifactRecord,
    ArtifactStatus,
    ArtifactType,
    RecommendedPath,
    SessionContextType,
    StageTransitionResponse,
    Workflow,
    WorkflowStatus,
)
from models.stages import (
    QUICK_PATH_SKIPPED_STAGES,
    STAGE_TO_AGENT_ROLE,
    TOOL_TO_ARTIFACT_TYPE,
    StageTransitionError,
    is_forward_transition,
    resolve_tool_completion,
    unsatisfied_prerequisites,
)
from session_manager import SessionManager

logger = structlog.get_logger()

_ARTIFACT_TO_TOOL = {artifact: tool for tool, artifact in TOOL_TO_ARTIFACT_TYPE.items()}


class WorkflowOrchestrator:
    """Coordinates stage transitions, approval gates and stage sessions.

    Attributes:
        store: Store for workflows, artifacts and transitions
        session_manager: Registry running the stage sessions
        event_bus: Event bus for workflow events
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

    async def _emit(
        self,
        workflow_id: str,
        event_type: EventType,
        data: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> None:
        await self.event_bus.publish(
            WorkflowEvent(
                type=event_type,
                workflow_id=workflow_id,
                session_id=session_id,
                data=data or {},
            )
        )

    async def create_workflow(
        self,
        title: str,
        description: str | None = None,
        base_branch: str | None = None,
    ) -> Workflow:
        """Create a workflow and start its scoping session.

        Returns:
            The workflow, already in ``scoping``.
        """
        workflow = await self.store.create_workflow(
            workflow_id=generate_id("wf"),
            title=title,
            description=description,
            status=WorkflowStatus.BACKLOG,
            base_branch=base_branch,
        )
        logger.info("workflow_created", workflow_id=workflow.id, title=title)
        await self._emit(
            workflow.id,
            EventType.WORKFLOW_CREATED,
            {"title": title, "base_branch": base_branch},
        )
        await self._transition_stage(workflow, WorkflowStatus.SCOPING)
        return await self.store.require_workflow(workflow.id)

    async def handle_tool_result(
        self,
        workflow_id: str,
        tool_name: str,
        artifact_payload: dict[str, Any] | None = None,
    ) -> StageTransitionResponse:
        """React to a stage-completion tool reported by the workflow's session.

        Approval tools record a pending artifact and raise the approval gate.
        Auto-transition tools advance immediately. Other tools are ignored.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            StageTransitionError: If the tool's target is not ahead of the
                current stage, or an approval is already pending.
        """
        workflow = await self.store.require_workflow(workflow_id)
        resolution = resolve_tool_completion(
            workflow.status, tool_name, workflow.skipped_stages
        )

        if resolution.kind == "none":
            logger.debug("tool_result_ignored", workflow_id=workflow_id, tool_name=tool_name)
            return StageTransitionResponse(transitioned=False)

        if resolution.kind == "auto" and resolution.target is not None:
            await self._transition_stage(workflow, resolution.target)
            return StageTransitionResponse(transitioned=True, new_stage=resolution.target)

        if resolution.artifact_type is None:
            return StageTransitionResponse(transitioned=False)
        if workflow.awaiting_approval:
            raise StageTransitionError(
                f"Workflow {workflow_id} already has a "
                f"{workflow.pending_artifact_type} pending approval"
            )
        artifact = await self.store.create_artifact(
            workflow_id, resolution.artifact_type, artifact_payload
        )
        await self.store.set_awaiting_approval(workflow_id, resolution.artifact_type)
        logger.info(
            "approval_needed",
            workflow_id=workflow_id,
            artifact_type=resolution.artifact_type.value,
            artifact_id=artifact.id,
        )
        await self._emit(
            workflow_id,
            EventType.APPROVAL_NEEDED,
            {
                "artifact_type": resolution.artifact_type.value,
                "artifact_id": artifact.id,
                "target": resolution.target.value if resolution.target else None,
            },
            session_id=workflow.current_session_id,
        )
        return StageTransitionResponse(
            transitioned=False,
            awaiting_approval=True,
            artifact_id=artifact.id,
        )

    async def _pending_artifact(self, workflow: Workflow) -> ArtifactRecord:
        if not workflow.awaiting_approval or workflow.pending_artifact_type is None:
            raise StageTransitionError(f"Workflow {workflow.id} has no artifact pending approval")
        artifact = await self.store.get_latest_artifact(
            workflow.id, workflow.pending_artifact_type
        )
        if artifact is None or artifact.status != ArtifactStatus.PENDING:
            raise StageTransitionError(
                f"No pending {workflow.pending_artifact_type} found for workflow {workflow.id}"
            )
        return artifact

    async def approve_artifact(
        self,
        workflow_id: str,
        path: RecommendedPath | None = None,
    ) -> StageTransitionResponse:
        """Approve the pending artifact and advance the workflow.

        Approving a scope card on the quick path (``path`` or the card's
        ``recommended_path``) records researching and planning as skipped,
        so the workflow moves straight to in_progress.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            StageTransitionError: If nothing is pending or a prerequisite
                stage is neither approved nor skipped.
        """
        workflow = await self.store.require_workflow(workflow_id)
        artifact = await self._pending_artifact(workflow)

        skipped = list(workflow.skipped_stages)
        if artifact.artifact_type == ArtifactType.SCOPE_CARD:
            chosen = path.value if path is not None else artifact.payload.get("recommended_path")
            if chosen == RecommendedPath.QUICK.value:
                skipped = list(QUICK_PATH_SKIPPED_STAGES)

        resolution = resolve_tool_completion(
            workflow.status, _ARTIFACT_TO_TOOL[artifact.artifact_type], skipped
        )
        target = resolution.target
        if target is None:
            raise StageTransitionError(f"No stage follows {workflow.status}")

        approved = await self.store.list_approved_artifact_types(workflow_id)
        approved.add(artifact.artifact_type)
        missing = unsatisfied_prerequisites(target, approved, skipped)
        if missing:
            raise StageTransitionError(
                f"Cannot advance to {target}: stages without approved artifacts: "
                + ", ".join(stage.value for stage in missing)
            )

        if skipped != list(workflow.skipped_stages):
            await self.store.set_skipped_stages(workflow_id, skipped)
            logger.info("quick_path_selected", workflow_id=workflow_id)
        await self.store.update_artifact_status(artifact.id, ArtifactStatus.APPROVED)
        logger.info(
            "artifact_approved",
            workflow_id=workflow_id,
            artifact_id=artifact.id,
            artifact_type=artifact.artifact_type.value,
        )
        workflow = await self.store.require_workflow(workflow_id)
        await self._transition_stage(workflow, target)
        return StageTransitionResponse(transitioned=True, new_stage=target)

    async def request_changes(self, workflow_id: str, feedback: str) -> None:
        """Deny the pending artifact and send feedback to the stage session.

        If the stage session cannot be resumed, a fresh session for the
        same stage is started with the feedback.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            StageTransitionError: If nothing is pending approval.
        """
        workflow = await self.store.require_workflow(workflow_id)
        artifact = await self._pending_artifact(workflow)

        await self.store.update_artifact_status(artifact.id, ArtifactStatus.DENIED)
        await self.store.clear_awaiting_approval(workflow_id)
        logger.info("changes_requested", workflow_id=workflow_id, artifact_id=artifact.id)
        await self._emit(
            workflow_id,
            EventType.CHANGES_REQUESTED,
            {"artifact_id": artifact.id, "feedback": feedback},
            session_id=workflow.current_session_id,
        )

        message = build_changes_requested_message(feedback)
        if workflow.current_session_id and await self.session_manager.resume_session(
            workflow.current_session_id, message
        ):
            return

        logger.warning(
            "changes_requested_session_restarted",
            workflow_id=workflow_id,
            previous_session_id=workflow.current_session_id,
        )
        await self._start_stage_session(
            workflow,
            workflow.status,
            build_stage_message(workflow, workflow.status) + "\n\n" + message,
        )

    async def _start_stage_session(
        self, workflow: Workflow, stage: WorkflowStatus, message: str
    ) -> str:
        session = await self.session_manager.start_session(
            context_type=SessionContextType.WORKFLOW,
            context_id=workflow.id,
            agent_role=STAGE_TO_AGENT_ROLE[stage],
            workflow_id=workflow.id,
        )
        await self.store.set_current_session(workflow.id, session.session_id)

        async def _on_error(exc: Exception) -> None:
            await self._emit(
                workflow.id,
                EventType.WORKFLOW_ERROR,
                {"error": str(exc), "stage": stage.value},
                session_id=session.session_id,
            )

        await self.session_manager.launch_session(session, message, on_error=_on_error)
        return session.session_id

    async def _transition_stage(self, workflow: Workflow, target: WorkflowStatus) -> None:
        """Move ``workflow`` to ``target`` and start the target stage's session.

        Raises:
            StageTransitionError: If ``target`` is not ahead of the current
                stage or the workflow moved concurrently.
        """
        if not is_forward_transition(workflow.status, target):
            raise StageTransitionError(
                f"Cannot move workflow {workflow.id} from {workflow.status} to {target}"
            )

        if workflow.current_session_id:
            await self.session_manager.stop_session(workflow.current_session_id)

        moved = await self.store.transition_stage(workflow.id, workflow.status, target, None)
        if not moved:
            raise StageTransitionError(
                f"Workflow {workflow.id} is no longer in {workflow.status}"
            )
        logger.info(
            "stage_transitioned",
            workflow_id=workflow.id,
            from_stage=workflow.status.value,
            to_stage=target.value,
        )

        session_id = None
        if target != WorkflowStatus.DONE:
            updated = await self.store.require_workflow(workflow.id)
            session_id = await self._start_stage_session(
                updated, target, build_stage_message(updated, target)
            )

        await self._emit(
            workflow.id,
            EventType.STAGE_CHANGED,
            {
                "from_stage": workflow.status.value,
                "to_stage": target.value,
                "session_id": session_id,
            },
            session_id=session_id,
        )
        if target == WorkflowStatus.DONE:
            await self._emit(workflow.id, EventType.WORKFLOW_COMPLETED)
            await self.event_bus.close_stream(workflow.id)

    async def error_workflow(self, workflow_id: str, error: str) -> None:
        """Error the workflow's current session and broadcast ``workflow_error``.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
        """
        workflow = await self.store.require_workflow(workflow_id)
        if workflow.current_session_id:
            await self.session_manager.error_session(workflow.current_session_id, error)
        logger.error("workflow_errored", workflow_id=workflow_id, error=error)
        await self._emit(
            workflow_id,
            EventType.WORKFLOW_ERROR,
            {"error": error, "stage": workflow.status.value},
            session_id=workflow.current_session_id,
        )
