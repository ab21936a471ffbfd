"""Agent runtime contract, messages and tool boundary.

This module exports the key components needed to drive agent sessions:
- Agent runner protocol and the scripted in-process runner
- Messages delivered to stage and sub-agent sessions
- Tool definitions and executor for coordination tools
"""

from agents.prompts import (
    build_changes_requested_message,
    build_stage_message,
    build_subtask_message,
)
from agents.runner import AgentRunner, ScriptedAgentRunner, load_agent_runner
from agents.tools import (
    TOOL_DEFINITIONS,
    ToolArgumentError,
    ToolContext,
    ToolExecutor,
    ToolResult,
    get_tool_definitions_for_llm,
)

__all__ = [
    # Runner
    "AgentRunner",
    "ScriptedAgentRunner",
    "load_agent_runner",
    # Messages
    "build_changes_requested_message",
    "build_stage_message",
    "build_subtask_message",
    # Tools
    "TOOL_DEFINITIONS",
    "ToolArgumentError",
    "ToolContext",
    "ToolExecutor",
    "ToolResult",
    "get_tool_definitions_for_llm",
]
