"""HTTP API routes for the workflow coordination backend.

This module defines the HTTP endpoints for workflows, approval gates,
subtask inspection, the agent tool boundary and health checks. Real-time
events are handled via WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, status

from agents.tools import TOOL_INPUT_MODELS, ToolContext
from models.database import WorkflowNotFoundError
from models.schemas import (
    ApproveRequest,
    CreateWorkflowRequest,
    FanInResult,
    HealthResponse,
    RequestChangesRequest,
    StageTransitionResponse,
    SubtaskRecord,
    ToolInvocationRequest,
    ToolInvocationResponse,
    ToolResultRequest,
    Workflow,
)
from models.stages import StageTransitionError

if TYPE_CHECKING:
    from agents.tools import ToolExecutor
    from models.database import ProjectStore
    from session_manager import SessionManager
    from workflow_orchestrator import WorkflowOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter()


@dataclass
class BackendServices:
    """Services the routes depend on, wired once at startup."""

    store: ProjectStore
    session_manager: SessionManager
    orchestrator: WorkflowOrchestrator
    tool_executor: ToolExecutor
    project_root: str


# Services dependency (set during application startup)
_services: BackendServices | None = None


def set_services(services: BackendServices) -> None:
    """Set the services used by all routes.

    This should be called during application startup.
    """
    global _services
    _services = services
    logger.info("backend_services_configured")


def get_services() -> BackendServices:
    """Get the configured services.

    Raises:
        RuntimeError: If the services have not been configured.
    """
    if _services is None:
        logger.error("backend_services_not_configured")
        raise RuntimeError("Services not configured. Call set_services() during startup.")
    return _services


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def _conflict(error: StageTransitionError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))


def _internal(action: str, error: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {error}",
    )


# -----------------------------------------------------------------------------
# Workflows
# -----------------------------------------------------------------------------


@router.post(
    "/api/workflows",
    response_model=Workflow,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
    description="Create a workflow and start its scoping session.",
)
async def create_workflow(request: CreateWorkflowRequest) -> Workflow:
    services = get_services()
    try:
        workflow = await services.orchestrator.create_workflow(
            title=request.title,
            description=request.description,
            base_branch=request.base_branch,
        )
    except Exception as e:
        logger.error("workflow_creation_failed", error=str(e))
        raise _internal("create workflow", e) from e
    return workflow


@router.get(
    "/api/workflows/{workflow_id}",
    response_model=Workflow,
    summary="Get a workflow",
)
async def get_workflow(
    workflow_id: Annotated[str, Path(description="The workflow ID")],
) -> Workflow:
    workflow = await get_services().store.get_workflow(workflow_id)
    if workflow is None:
        raise _not_found(f"Workflow {workflow_id} not found")
    return workflow


@router.post(
    "/api/workflows/{workflow_id}/tool-results",
    response_model=StageTransitionResponse,
    summary="Report a stage-completion tool",
    description=(
        "Report a stage-completion tool result from the workflow's session. "
        "Approval tools raise the approval gate; auto tools advance the stage."
    ),
)
async def report_tool_result(
    workflow_id: Annotated[str, Path(description="The workflow ID")],
    request: ToolResultRequest,
) -> StageTransitionResponse:
    services = get_services()
    try:
        return await services.orchestrator.handle_tool_result(
            workflow_id, request.tool_name, request.artifact
        )
    except WorkflowNotFoundError as e:
        raise _not_found(str(e)) from None
    except StageTransitionError as e:
        logger.warning("tool_result_rejected", workflow_id=workflow_id, error=str(e))
        raise _conflict(e) from e
    except Exception as e:
        logger.error("tool_result_failed", workflow_id=workflow_id, error=str(e))
        raise _internal("handle tool result", e) from e


@router.post(
    "/api/workflows/{workflow_id}/approve",
    response_model=StageTransitionResponse,
    summary="Approve the pending artifact",
)
async def approve_artifact(
    workflow_id: Annotated[str, Path(description="The workflow ID")],
    request: ApproveRequest | None = None,
) -> StageTransitionResponse:
    services = get_services()
    try:
        return await services.orchestrator.approve_artifact(
            workflow_id, path=request.path if request else None
        )
    except WorkflowNotFoundError as e:
        raise _not_found(str(e)) from None
    except StageTransitionError as e:
        logger.warning("approval_rejected", workflow_id=workflow_id, error=str(e))
        raise _conflict(e) from e
    except Exception as e:
        logger.error("approval_failed", workflow_id=workflow_id, error=str(e))
        raise _internal("approve artifact", e) from e


@router.post(
    "/api/workflows/{workflow_id}/request-changes",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Request changes to the pending artifact",
)
async def request_changes(
    workflow_id: Annotated[str, Path(description="The workflow ID")],
    request: RequestChangesRequest,
) -> None:
    services = get_services()
    try:
        await services.orchestrator.request_changes(workflow_id, request.feedback)
    except WorkflowNotFoundError as e:
        raise _not_found(str(e)) from None
    except StageTransitionError as e:
        raise _conflict(e) from e
    except Exception as e:
        logger.error("request_changes_failed", workflow_id=workflow_id, error=str(e))
        raise _internal("request changes", e) from e


@router.get(
    "/api/workflows/{workflow_id}/subtasks",
    response_model=list[SubtaskRecord],
    summary="List a workflow's subtasks",
)
async def list_workflow_subtasks(
    workflow_id: Annotated[str, Path(description="The workflow ID")],
) -> list[SubtaskRecord]:
    store = get_services().store
    if await store.get_workflow(workflow_id) is None:
        raise _not_found(f"Workflow {workflow_id} not found")
    return await store.list_subtasks_for_workflow(workflow_id)


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------


@router.get(
    "/api/sessions/{session_id}/subtasks",
    response_model=list[SubtaskRecord],
    summary="List a coordinator session's subtasks",
)
async def list_session_subtasks(
    session_id: Annotated[str, Path(description="The coordinator session ID")],
) -> list[SubtaskRecord]:
    return await get_services().store.list_subtasks_for_parent(session_id)


@router.get(
    "/api/sessions/{session_id}/fan-in",
    response_model=FanInResult,
    summary="Get the merged sub-agent results of a coordinator session",
)
async def get_fan_in_result(
    session_id: Annotated[str, Path(description="The coordinator session ID")],
) -> FanInResult:
    result = await get_services().store.get_fan_in_result(session_id)
    if result is None:
        raise _not_found(f"No fan-in result for session {session_id}")
    return result


# -----------------------------------------------------------------------------
# Tool boundary
# -----------------------------------------------------------------------------


@router.post(
    "/api/tools/{tool_name}",
    response_model=ToolInvocationResponse,
    summary="Invoke a coordination tool",
    description=(
        "Tool calls forwarded by the agent runtime. Invalid input and "
        "coordination failures are reported in the result, not as HTTP errors."
    ),
)
async def invoke_tool(
    tool_name: Annotated[str, Path(description="The tool name")],
    request: ToolInvocationRequest,
) -> ToolInvocationResponse:
    if tool_name not in TOOL_INPUT_MODELS:
        raise _not_found(f"Unknown tool: {tool_name}")

    services = get_services()
    context = ToolContext(
        project_root=services.project_root,
        workflow_id=request.workflow_id,
        session_id=request.session_id,
        subtask_id=request.subtask_id,
        turn_id=request.turn_id,
        worktree_path=request.worktree_path,
    )
    result = await services.tool_executor.execute(tool_name, request.input, context)
    return ToolInvocationResponse(success=result.success, output=result.output)


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with the number of in-memory sessions.",
)
async def health_check() -> HealthResponse:
    try:
        services = get_services()
    except RuntimeError:
        # Not configured yet (e.g., during startup)
        return HealthResponse(status="unhealthy", timestamp=time.time())

    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        active_sessions=len(services.session_manager.get_active_sessions()),
    )
