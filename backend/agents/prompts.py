"""Input messages delivered to agent sessions.

This module contains the message templates used when the backend starts or
resumes an agent session:
- build_stage_message: First message of a workflow stage session
- build_changes_requested_message: Feedback after a denied artifact
- build_subtask_message: Task brief for a fanned-out sub-agent session

The merged fan-in message sent back to a coordinator lives in
``coordination.merger``.
"""

from models.schemas import TaskDefinition, Workflow, WorkflowStatus

# Stage -> what the stage's agent must produce before the workflow can advance
STAGE_OBJECTIVES: dict[WorkflowStatus, str] = {
    WorkflowStatus.SCOPING: (
        "Clarify the request and produce a scope card with `submit_scope`. "
        "Recommend the `quick` path for small, well-understood changes and "
        "`full` otherwise."
    ),
    WorkflowStatus.RESEARCHING: (
        "Investigate the codebase for this task and submit your findings with "
        "`submit_research`."
    ),
    WorkflowStatus.PLANNING: (
        "Produce an implementation plan and submit it with `submit_plan`."
    ),
    WorkflowStatus.IN_PROGRESS: (
        "Implement the approved plan on the workflow branch. Call "
        "`complete_pulse` once the work is committed."
    ),
    WorkflowStatus.REVIEW: (
        "Review the workflow diff. For large diffs, split the review with "
        "`spawn_parallel_tasks` and wait for the merged results. Finish with "
        "`complete_review`."
    ),
}

DIFF_UNAVAILABLE = "(no diff content available)"


def compose_prompt_sections(*sections: str) -> str:
    """Compose prompt sections into a single deterministic message."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def build_stage_message(workflow: Workflow, stage: WorkflowStatus) -> str:
    """Build the first message for a stage session of ``workflow``."""
    header = f"# Workflow: {workflow.title}\nStage: {stage.value}"
    description = f"## Description\n{workflow.description}" if workflow.description else ""
    skipped = ""
    if workflow.skipped_stages:
        skipped = (
            "## Skipped Stages\n"
            f"{_bullets([s.value for s in workflow.skipped_stages])}\n"
            "These stages were bypassed on the quick path; no artifacts exist for them."
        )
    objective = STAGE_OBJECTIVES.get(stage, "")
    return compose_prompt_sections(
        header,
        description,
        skipped,
        f"## Objective\n{objective}" if objective else "",
    )


def build_changes_requested_message(feedback: str) -> str:
    return compose_prompt_sections(
        "# Changes Requested",
        "The reviewer did not approve your last submission. Address this "
        "feedback and submit again:",
        feedback,
    )


def build_subtask_message(task: TaskDefinition, relevant_diff: str | None) -> str:
    """Build the brief for a sub-agent session.

    Args:
        task: The task assigned to the sub-agent
        relevant_diff: Diff sections for the task's own files, or None
            when the workflow diff is unavailable.

    Returns:
        The complete sub-agent message
    """
    sections = [
        f"# Sub-Task: {task.label}",
        f"## Assigned Files\n{_bullets(task.files)}",
    ]
    if task.focus_areas:
        sections.append(f"## Focus Areas\n{_bullets(task.focus_areas)}")
    if task.guiding_questions:
        sections.append(f"## Guiding Questions\n{_bullets(task.guiding_questions)}")

    relevant = DIFF_UNAVAILABLE if relevant_diff is None else relevant_diff
    sections.append(f"## Diff Content\n```diff\n{relevant}\n```")
    sections.append(
        "## Reporting\n"
        "Report once with `submit_sub_result`: a summary, each concern with "
        "its severity, scope (line, file or general) and location, and any "
        "positive observations. Only review the assigned files."
    )
    return compose_prompt_sections(*sections)
