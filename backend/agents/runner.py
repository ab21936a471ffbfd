"""Agent runtime contract.

The coordination engine never talks to a language model directly. It
hands a session and an input message to an ``AgentRunner`` and only relies
on one contract: ``run()`` returns when the turn is over or raises when it
failed. Tool calls made during the turn come back through the tool boundary
(``agents.tools.ToolExecutor``).

This module provides:
- AgentRunner: Protocol implemented by the external runtime
- ScriptedAgentRunner: In-process runner with optional per-role handlers,
  used by default and in tests
- load_agent_runner: Resolve the runtime from a ``module:attr`` import path
"""

import importlib
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

import structlog

from models.schemas import AgentRole, SessionRecord

logger = structlog.get_logger()


RunHandler = Callable[[SessionRecord, str], Awaitable[None]]


@runtime_checkable
class AgentRunner(Protocol):
    """Executes one agent turn for a session."""

    async def run(self, session: SessionRecord, message: str) -> None:
        """Run the session on ``message`` until the turn ends.

        Raises:
            Exception: Any failure of the turn. The caller records it.
        """
        ...


class ScriptedAgentRunner:
    """Agent runner driven by in-process handlers.

    Every call is recorded. When a handler is registered for the session's
    agent role it is awaited; otherwise the turn ends immediately.

    Usage:
        >>> async def review_sub(session, message):
        ...     await executor.execute("submit_sub_result", {...}, context)
        >>> runner = ScriptedAgentRunner(handlers={AgentRole.REVIEW_SUB: review_sub})
        >>> await runner.run(session, "Review these files")
        >>> runner.call_history[0]["session_id"]
    """

    def __init__(self, handlers: dict[AgentRole, RunHandler] | None = None) -> None:
        self.handlers: dict[AgentRole, RunHandler] = dict(handlers or {})
        self.call_history: list[dict[str, Any]] = []

    def set_handler(self, role: AgentRole, handler: RunHandler) -> None:
        self.handlers[role] = handler

    def calls_for(self, session_id: str) -> list[str]:
        """Messages delivered to one session, in order."""
        return [
            call["message"]
            for call in self.call_history
            if call["session_id"] == session_id
        ]

    async def run(self, session: SessionRecord, message: str) -> None:
        self.call_history.append({
            "session_id": session.id,
            "agent_role": session.agent_role,
            "message": message,
        })
        handler = self.handlers.get(session.agent_role)
        if handler is None:
            logger.debug(
                "scripted_run_no_handler",
                session_id=session.id,
                agent_role=session.agent_role.value,
            )
            return
        await handler(session, message)


def load_agent_runner(path: str) -> AgentRunner:
    """Load the agent runtime from an import path.

    Args:
        path: ``package.module:attribute``. The attribute may be a runner
              instance, or a class / zero-argument factory producing one.
              An empty path selects ScriptedAgentRunner.

    Returns:
        The agent runner.

    Raises:
        ValueError: If the path is malformed.
        TypeError: If the target does not implement ``run``.
    """
    if not path:
        return ScriptedAgentRunner()

    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Agent runner path must be 'module:attr', got '{path}'")

    target = getattr(importlib.import_module(module_name), attr)
    runner = target if isinstance(target, AgentRunner) and not isinstance(target, type) else target()
    if not isinstance(runner, AgentRunner):
        raise TypeError(f"'{path}' does not provide an agent runner")

    logger.info("agent_runner_loaded", path=path, runner=type(runner).__name__)
    return runner
