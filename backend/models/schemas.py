"""Pydantic schemas for domain records, tool inputs and API models.

This module defines all the data models shared by the persistence layer,
the coordination engine, the tool boundary and the HTTP API.
All models use Pydantic v2.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# -----------------------------------------------------------------------------
# Enumerations
# -----------------------------------------------------------------------------


class WorkflowStatus(StrEnum):
    """Workflow stages, in pipeline order."""

    BACKLOG = "backlog"
    SCOPING = "scoping"
    RESEARCHING = "researching"
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class ArtifactType(StrEnum):
    """Approval-gated stage outputs."""

    SCOPE_CARD = "scope_card"
    RESEARCH = "research"
    PLAN = "plan"
    REVIEW_CARD = "review_card"


class ArtifactStatus(StrEnum):
    """Approval state shared by all artifact types."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class RecommendedPath(StrEnum):
    """Path recommended by a scope card."""

    QUICK = "quick"
    FULL = "full"


class SessionContextType(StrEnum):
    """What a session serves."""

    CHANNEL = "channel"
    WORKFLOW = "workflow"
    SUBTASK = "subtask"


class SessionStatus(StrEnum):
    """Session lifecycle status.

    ``idle`` sessions have finished their last run and can be resumed.
    ``completed`` and ``error`` are terminal.
    """

    ACTIVE = "active"
    IDLE = "idle"
    COMPLETED = "completed"
    ERROR = "error"


class AgentRole(StrEnum):
    """Agent roles a session can be started with."""

    BASIC = "basic"
    SCOPING = "scoping"
    RESEARCH = "research"
    PLANNING = "planning"
    PREFLIGHT = "preflight"
    EXECUTION = "execution"
    REVIEW = "review"
    REVIEW_SUB = "review_sub"


class SubtaskStatus(StrEnum):
    """Subtask lifecycle status: pending -> running -> completed | failed."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_SUBTASK_STATUSES: frozenset[SubtaskStatus] = frozenset(
    {SubtaskStatus.COMPLETED, SubtaskStatus.FAILED}
)

TERMINAL_SESSION_STATUSES: frozenset[SessionStatus] = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.ERROR}
)


# -----------------------------------------------------------------------------
# Persisted records
# -----------------------------------------------------------------------------


class Workflow(BaseModel):
    """A unit of development work progressing through gated stages."""

    id: str
    title: str
    description: str | None = None
    status: WorkflowStatus
    awaiting_approval: bool = False
    pending_artifact_type: ArtifactType | None = None
    current_session_id: str | None = None
    base_branch: str | None = None
    skipped_stages: list[WorkflowStatus] = Field(default_factory=list)
    created_at: float
    updated_at: float


class SessionRecord(BaseModel):
    """Persisted state of one agent session."""

    id: str
    context_type: SessionContextType
    context_id: str
    agent_role: AgentRole
    workflow_id: str | None = None
    parent_session_id: str | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    error_message: str | None = None
    created_at: float
    updated_at: float


class SubtaskRecord(BaseModel):
    """One unit of fanned-out work.

    ``task_definition`` and ``findings`` are opaque JSON payloads; only the
    merger looks inside them.
    """

    id: str
    parent_session_id: str
    workflow_id: str
    task_definition: dict[str, Any] = Field(default_factory=dict)
    status: SubtaskStatus
    findings: Any = None
    error: str | None = None
    created_at: float
    updated_at: float

    @property
    def label(self) -> str:
        """Human label from the task definition, defaulting to 'Subtask'."""
        label = self.task_definition.get("label")
        if isinstance(label, str) and label.strip():
            return label
        return "Subtask"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SUBTASK_STATUSES


class ArtifactRecord(BaseModel):
    """A stage's approval-gated output document."""

    id: str
    workflow_id: str
    artifact_type: ArtifactType
    status: ArtifactStatus = ArtifactStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: float


class StageTransitionRecord(BaseModel):
    """Audit entry for a stage change."""

    workflow_id: str
    from_stage: WorkflowStatus
    to_stage: WorkflowStatus
    created_at: float


class FanInResult(BaseModel):
    """Merged sub-agent output kept for a coordinator session."""

    parent_session_id: str
    workflow_id: str
    message: str
    delivered: bool = False
    created_at: float


class SubtaskTransition(BaseModel):
    """Outcome of an atomic terminal transition plus sibling check.

    ``should_resume`` is true for exactly one caller per coordinator: the
    one whose own write left no sibling in a non-terminal state.
    ``duplicate`` marks a report for a subtask that was already terminal.
    """

    subtask_id: str
    parent_session_id: str
    workflow_id: str
    status: SubtaskStatus
    all_done: bool
    should_resume: bool
    duplicate: bool = False


class MergedSubtaskResults(BaseModel):
    """Coordinator completion view: siblings partitioned by outcome."""

    parent_session_id: str
    completed: list[SubtaskRecord] = Field(default_factory=list)
    failed: list[SubtaskRecord] = Field(default_factory=list)
    unfinished: list[SubtaskRecord] = Field(default_factory=list)

    @property
    def all_done(self) -> bool:
        return not self.unfinished

    @property
    def total(self) -> int:
        return len(self.completed) + len(self.failed) + len(self.unfinished)


# -----------------------------------------------------------------------------
# Tool inputs
# -----------------------------------------------------------------------------

REASON_DESCRIPTION = "Brief explanation of why this tool is being called"


class TaskDefinition(BaseModel):
    """One fan-out task as requested by a coordinator.

    Any caller-supplied ``id`` is dropped; subtask ids are generated
    server-side.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    label: str = Field(min_length=1, description="Short label for this task")
    files: list[str] = Field(
        min_length=1,
        description="Repository paths assigned to this task",
    )
    focus_areas: list[str] = Field(
        default_factory=list,
        alias="focusAreas",
        description="Optional areas to focus on",
    )
    guiding_questions: list[str] = Field(
        default_factory=list,
        alias="guidingQuestions",
        description="Optional questions the sub-agent should answer",
    )


class SpawnParallelTasksInput(BaseModel):
    """Input of the ``spawn_parallel_tasks`` tool."""

    reason: str = Field(description=REASON_DESCRIPTION)
    tasks: list[TaskDefinition] = Field(
        min_length=1,
        description="Tasks to run in parallel sub-agent sessions",
    )


class Concern(BaseModel):
    """A single issue reported by a sub-agent."""

    severity: str = Field(
        description="Severity level, e.g. critical, major, minor, suggestion",
    )
    description: str = Field(description="Self-contained description of the concern")
    scope: Literal["line", "file", "general"] = Field(
        default="general",
        description="What level the concern targets",
    )
    file: str | None = Field(default=None, description="Related file path")
    line: int | None = Field(default=None, ge=1, description="Related line number")


class SubmitSubResultInput(BaseModel):
    """Input of the ``submit_sub_result`` tool."""

    model_config = ConfigDict(populate_by_name=True)

    reason: str = Field(description=REASON_DESCRIPTION)
    summary: str = Field(description="Summary of the sub-task findings")
    concerns: list[Concern] = Field(
        default_factory=list,
        description="Concerns found while working on the sub-task",
    )
    positive_observations: list[str] = Field(
        default_factory=list,
        alias="positiveObservations",
        description="Things done well",
    )


# -----------------------------------------------------------------------------
# API models
# -----------------------------------------------------------------------------


class CreateWorkflowRequest(BaseModel):
    """Request body for creating a workflow."""

    title: str = Field(min_length=1, max_length=500)
    description: str | None = Field(default=None, max_length=20000)
    base_branch: str | None = Field(
        default=None,
        description="Branch the workflow diff is computed against",
        examples=["main"],
    )


class ToolResultRequest(BaseModel):
    """A stage-completion tool result reported by the agent runtime."""

    tool_name: str = Field(examples=["submit_scope", "complete_pulse"])
    artifact: dict[str, Any] | None = Field(
        default=None,
        description="Artifact payload to record before gating",
    )


class ApproveRequest(BaseModel):
    """Request body for approving the pending artifact."""

    path: RecommendedPath | None = Field(
        default=None,
        description="Override the scope card's recommended path",
    )


class RequestChangesRequest(BaseModel):
    """Request body for sending an artifact back with feedback."""

    feedback: str = Field(min_length=1, max_length=20000)


class StageTransitionResponse(BaseModel):
    """Result of handling a stage-completion tool."""

    transitioned: bool
    new_stage: WorkflowStatus | None = None
    awaiting_approval: bool = False
    artifact_id: str | None = None


class ToolInvocationRequest(BaseModel):
    """A tool call forwarded from the agent runtime."""

    input: dict[str, Any] = Field(default_factory=dict)
    workflow_id: str | None = None
    session_id: str | None = None
    subtask_id: str | None = None
    turn_id: str | None = None
    worktree_path: str | None = None


class ToolInvocationResponse(BaseModel):
    """Tool result returned to the agent runtime."""

    success: bool
    output: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    active_sessions: int = Field(
        default=0,
        description="Number of sessions currently tracked in memory",
    )
