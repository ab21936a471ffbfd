"""Tool definitions and dispatch for coordination tools.

This module defines the coordination tools agents can call and provides the
ToolExecutor class that validates arguments and routes each call to the
fan-out dispatcher or the fan-in reconciler.

Tools:
    spawn_parallel_tasks: Coordinator splits its work into sub-agent sessions.
        Terminal for the coordinator's turn: the session is resumed with
        merged results once every sub-task has finished.
    submit_sub_result: Sub-agent reports its findings, once.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ValidationError

from models.schemas import SpawnParallelTasksInput, SubmitSubResultInput

if TYPE_CHECKING:
    from coordination.dispatcher import FanOutDispatcher
    from coordination.reconciler import FanInReconciler

logger = structlog.get_logger()


TOOL_INPUT_MODELS: dict[str, type[BaseModel]] = {
    "spawn_parallel_tasks": SpawnParallelTasksInput,
    "submit_sub_result": SubmitSubResultInput,
}

_TOOL_DESCRIPTIONS: dict[str, str] = {
    "spawn_parallel_tasks": (
        "Spawn parallel sub-tasks, each handled by its own sub-agent session "
        "that works on the assigned files and reports findings. This is a "
        "terminal tool: your session pauses until every sub-task has "
        "finished, then resumes with the merged results. Use it when the "
        "work is large enough to benefit from focused parallel passes."
    ),
    "submit_sub_result": (
        "Submit the findings of your sub-task. Call this exactly once when "
        "your sub-task is complete."
    ),
}

# Tool definitions derived from the pydantic input models
TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": name,
        "description": _TOOL_DESCRIPTIONS[name],
        "parameters": model.model_json_schema(),
    }
    for name, model in TOOL_INPUT_MODELS.items()
]


class ToolArgumentError(ValueError):
    """Raised when a tool call has invalid arguments or lacks context."""


def get_tool_definitions_for_llm() -> list[dict[str, Any]]:
    """Get tool definitions in function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            },
        }
        for tool in TOOL_DEFINITIONS
    ]


@dataclass
class ToolContext:
    """Where a tool call comes from.

    Attributes:
        project_root: Repository the session works on
        workflow_id: Workflow of the calling session, if any
        session_id: Calling session
        subtask_id: Subtask served by the calling session (sub-agents only)
        turn_id: Agent turn that issued the call
        worktree_path: Worktree the session operates in
    """

    project_root: str
    workflow_id: str | None = None
    session_id: str | None = None
    subtask_id: str | None = None
    turn_id: str | None = None
    worktree_path: str | None = None


@dataclass
class ToolResult:
    """Result of executing a tool.

    Attributes:
        success: Whether the tool execution succeeded
        output: Text returned to the agent; starts with "Error:" on failure
    """

    success: bool
    output: str


def _format_validation_error(tool_name: str, error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "input"
        problems.append(f"{location}: {item['msg']}")
    return f"Invalid arguments for {tool_name}: " + "; ".join(problems)


class ToolExecutor:
    """Validates coordination tool calls and routes them.

    Attributes:
        dispatcher: Fan-out dispatcher for spawn_parallel_tasks
        reconciler: Fan-in reconciler for submit_sub_result
        max_parallel_tasks: Upper bound on tasks per fan-out
    """

    def __init__(
        self,
        dispatcher: "FanOutDispatcher",
        reconciler: "FanInReconciler",
        max_parallel_tasks: int = 16,
    ) -> None:
        self.dispatcher = dispatcher
        self.reconciler = reconciler
        self.max_parallel_tasks = max_parallel_tasks

    def _validate(self, tool_name: str, args: Any) -> BaseModel:
        model = TOOL_INPUT_MODELS.get(tool_name)
        if model is None:
            raise ToolArgumentError(f"Unknown tool: {tool_name}")
        if not isinstance(args, dict):
            raise ToolArgumentError(
                f"Invalid arguments for {tool_name}: expected an object"
            )
        try:
            return model.model_validate(args)
        except ValidationError as e:
            raise ToolArgumentError(_format_validation_error(tool_name, e)) from e

    async def execute(self, tool_name: str, args: Any, context: ToolContext) -> ToolResult:
        """Execute a tool call.

        Validation happens before anything is mutated. Every failure is
        returned as an unsuccessful ToolResult, never raised.

        Args:
            tool_name: Name of the tool to execute.
            args: Raw arguments from the agent.
            context: Calling session context.

        Returns:
            ToolResult with the execution outcome.
        """
        try:
            validated = self._validate(tool_name, args)
            if isinstance(validated, SpawnParallelTasksInput):
                output = await self._execute_spawn_parallel_tasks(validated, context)
            elif isinstance(validated, SubmitSubResultInput):
                output = await self._execute_submit_sub_result(validated, context)
            else:
                raise ToolArgumentError(f"Unknown tool: {tool_name}")
        except Exception as e:
            level = logger.warning if isinstance(e, ToolArgumentError) else logger.error
            level(
                "tool_execution_failed",
                tool_name=tool_name,
                session_id=context.session_id,
                error=str(e),
            )
            return ToolResult(success=False, output=f"Error: {e}")

        logger.debug(
            "tool_executed",
            tool_name=tool_name,
            session_id=context.session_id,
        )
        return ToolResult(success=True, output=output)

    async def _execute_spawn_parallel_tasks(
        self, args: SpawnParallelTasksInput, context: ToolContext
    ) -> str:
        if not context.workflow_id:
            raise ToolArgumentError(
                "No workflow context - spawn_parallel_tasks can only be used in workflow sessions"
            )
        if not context.session_id:
            raise ToolArgumentError(
                "No session context - spawn_parallel_tasks requires an active session"
            )
        if len(args.tasks) > self.max_parallel_tasks:
            raise ToolArgumentError(
                f"Too many tasks: {len(args.tasks)} requested, "
                f"at most {self.max_parallel_tasks} allowed"
            )

        result = await self.dispatcher.dispatch(
            context.session_id, context.workflow_id, args.tasks
        )

        lines = [f"Spawned {len(result.subtask_ids)} parallel sub-tasks:"]
        for subtask_id, task in zip(result.subtask_ids, args.tasks, strict=True):
            marker = " (failed to start)" if subtask_id in result.failed else ""
            lines.append(f"- {task.label} [{subtask_id}]{marker}")
        if not result.diff_available:
            lines.append("")
            lines.append("Note: the workflow diff was unavailable; sub-agents received no diff content.")
        lines.append("")
        lines.append(
            "Your session will resume with the merged results once every sub-task has finished. "
            "End your turn now."
        )
        return "\n".join(lines)

    async def _execute_submit_sub_result(
        self, args: SubmitSubResultInput, context: ToolContext
    ) -> str:
        if not context.subtask_id:
            raise ToolArgumentError(
                "No subtask context - submit_sub_result can only be used in sub-task sessions"
            )

        findings = args.model_dump(exclude={"reason"})
        transition = await self.reconciler.complete(context.subtask_id, findings)
        if transition.duplicate:
            return (
                "Results for this sub-task were already recorded "
                f"(status: {transition.status.value}); nothing was changed."
            )
        if transition.should_resume:
            return "Sub-task results submitted. All sub-tasks are done; the coordinator has been resumed."
        return "Sub-task results submitted."
