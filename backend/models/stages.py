"""Workflow stage model: transition tables and approval gates.

Resolves what a stage-completion tool means for a workflow: either an
approval gate that must be cleared by a human, an automatic transition,
or nothing at all. Stages recorded as skipped (quick path) are stepped
over and count as satisfied prerequisites.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from models.schemas import AgentRole, ArtifactType, WorkflowStatus


class StageTransitionError(ValueError):
    """Raised when a transition would not move a workflow forward."""


STAGE_ORDER: tuple[WorkflowStatus, ...] = (
    WorkflowStatus.BACKLOG,
    WorkflowStatus.SCOPING,
    WorkflowStatus.RESEARCHING,
    WorkflowStatus.PLANNING,
    WorkflowStatus.IN_PROGRESS,
    WorkflowStatus.REVIEW,
    WorkflowStatus.DONE,
)

# Maps workflow status to the next status in the pipeline
STAGE_TRANSITIONS: dict[WorkflowStatus, WorkflowStatus | None] = {
    WorkflowStatus.BACKLOG: WorkflowStatus.SCOPING,
    WorkflowStatus.SCOPING: WorkflowStatus.RESEARCHING,
    WorkflowStatus.RESEARCHING: WorkflowStatus.PLANNING,
    WorkflowStatus.PLANNING: WorkflowStatus.IN_PROGRESS,
    WorkflowStatus.IN_PROGRESS: WorkflowStatus.REVIEW,
    WorkflowStatus.REVIEW: WorkflowStatus.DONE,
    WorkflowStatus.DONE: None,
}

# Tools that require user approval before transitioning
APPROVAL_REQUIRED_TOOLS: dict[str, WorkflowStatus] = {
    "submit_scope": WorkflowStatus.RESEARCHING,
    "submit_research": WorkflowStatus.PLANNING,
    "submit_plan": WorkflowStatus.IN_PROGRESS,
    "complete_review": WorkflowStatus.DONE,
}

# Tools that trigger automatic transitions (no approval needed)
AUTO_TRANSITION_TOOLS: dict[str, WorkflowStatus] = {
    "complete_pulse": WorkflowStatus.REVIEW,
}

TOOL_TO_ARTIFACT_TYPE: dict[str, ArtifactType] = {
    "submit_scope": ArtifactType.SCOPE_CARD,
    "submit_research": ArtifactType.RESEARCH,
    "submit_plan": ArtifactType.PLAN,
    "complete_review": ArtifactType.REVIEW_CARD,
}

# Stage -> artifact whose approval clears that stage
STAGE_GATE_ARTIFACT: dict[WorkflowStatus, ArtifactType] = {
    WorkflowStatus.SCOPING: ArtifactType.SCOPE_CARD,
    WorkflowStatus.RESEARCHING: ArtifactType.RESEARCH,
    WorkflowStatus.PLANNING: ArtifactType.PLAN,
    WorkflowStatus.REVIEW: ArtifactType.REVIEW_CARD,
}

STAGE_TO_AGENT_ROLE: dict[WorkflowStatus, AgentRole] = {
    WorkflowStatus.BACKLOG: AgentRole.SCOPING,
    WorkflowStatus.SCOPING: AgentRole.SCOPING,
    WorkflowStatus.RESEARCHING: AgentRole.RESEARCH,
    WorkflowStatus.PLANNING: AgentRole.PLANNING,
    WorkflowStatus.IN_PROGRESS: AgentRole.PREFLIGHT,
    WorkflowStatus.REVIEW: AgentRole.REVIEW,
    WorkflowStatus.DONE: AgentRole.BASIC,
}

QUICK_PATH_SKIPPED_STAGES: tuple[WorkflowStatus, ...] = (
    WorkflowStatus.RESEARCHING,
    WorkflowStatus.PLANNING,
)


@dataclass(frozen=True)
class StageResolution:
    """What a tool completion means for the workflow.

    Attributes:
        kind: ``approval`` (gate until a human approves), ``auto``
            (advance immediately) or ``none`` (not a stage tool).
        target: Stage the workflow moves to once the gate clears.
        artifact_type: Artifact pending approval, for ``approval``.
    """

    kind: Literal["approval", "auto", "none"]
    target: WorkflowStatus | None = None
    artifact_type: ArtifactType | None = None


def stage_index(stage: WorkflowStatus) -> int:
    """Position of a stage in the pipeline."""
    return STAGE_ORDER.index(stage)


def is_forward_transition(current: WorkflowStatus, target: WorkflowStatus) -> bool:
    return stage_index(target) > stage_index(current)


def get_next_stage(
    current: WorkflowStatus,
    skipped_stages: Iterable[WorkflowStatus] = (),
) -> WorkflowStatus | None:
    """Get the next stage after ``current``, stepping over skipped stages.

    ``done`` is never skipped.
    """
    skipped = set(skipped_stages)
    candidate = STAGE_TRANSITIONS[current]
    while candidate is not None and candidate in skipped and candidate != WorkflowStatus.DONE:
        candidate = STAGE_TRANSITIONS[candidate]
    return candidate


def unsatisfied_prerequisites(
    target: WorkflowStatus,
    approved_artifacts: Iterable[ArtifactType],
    skipped_stages: Iterable[WorkflowStatus] = (),
) -> list[WorkflowStatus]:
    """List gated stages before ``target`` that are neither approved nor skipped."""
    approved = set(approved_artifacts)
    skipped = set(skipped_stages)
    missing: list[WorkflowStatus] = []
    for stage in STAGE_ORDER[: stage_index(target)]:
        gate = STAGE_GATE_ARTIFACT.get(stage)
        if gate is None or stage in skipped:
            continue
        if gate not in approved:
            missing.append(stage)
    return missing


def resolve_tool_completion(
    current: WorkflowStatus,
    tool_name: str,
    skipped_stages: Iterable[WorkflowStatus] = (),
) -> StageResolution:
    """Resolve a tool-completion event against the current status.

    Raises:
        StageTransitionError: If the tool's target is not ahead of ``current``.
    """
    skipped = tuple(skipped_stages)

    target = APPROVAL_REQUIRED_TOOLS.get(tool_name)
    if target is not None:
        target = _skip_forward(target, skipped)
        _ensure_forward(current, target, tool_name)
        return StageResolution(
            kind="approval",
            target=target,
            artifact_type=TOOL_TO_ARTIFACT_TYPE[tool_name],
        )

    target = AUTO_TRANSITION_TOOLS.get(tool_name)
    if target is not None:
        target = _skip_forward(target, skipped)
        _ensure_forward(current, target, tool_name)
        return StageResolution(kind="auto", target=target)

    return StageResolution(kind="none")


def _skip_forward(
    target: WorkflowStatus, skipped: tuple[WorkflowStatus, ...]
) -> WorkflowStatus:
    if target in skipped and target != WorkflowStatus.DONE:
        following = get_next_stage(target, skipped)
        if following is not None:
            return following
    return target


def _ensure_forward(current: WorkflowStatus, target: WorkflowStatus, tool_name: str) -> None:
    if not is_forward_transition(current, target):
        raise StageTransitionError(
            f"Tool '{tool_name}' targets '{target}' which is not ahead of '{current}'"
        )
