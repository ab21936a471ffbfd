"""Event type definitions for the workflow event system.

This module defines all event types broadcast while workflows move through
their stages and while sub-agent sessions fan out and back in. Every
meaningful state change produces an event keyed by its workflow id.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the system.

    Events are categorized by:
    - Workflow lifecycle: Creation, stage changes, approval gates, completion
    - Session lifecycle: Start, completion, and error states
    - Coordination: Subtask progress, coordinator resume and failures
    """

    # Workflow lifecycle
    WORKFLOW_CREATED = "workflow_created"
    STAGE_CHANGED = "stage_changed"
    APPROVAL_NEEDED = "approval_needed"
    CHANGES_REQUESTED = "changes_requested"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_ERROR = "workflow_error"

    # Session lifecycle
    SESSION_STARTED = "session_started"
    SESSION_COMPLETED = "session_completed"
    SESSION_ERROR = "session_error"

    # Coordination
    SUBTASKS_SPAWNED = "subtasks_spawned"
    SUBTASK_UPDATED = "subtask_updated"
    COORDINATOR_RESUMED = "coordinator_resumed"
    COORDINATION_ERROR = "coordination_error"

    # Stream sentinel
    STREAM_CLOSED = "stream_closed"


class WorkflowEvent(BaseModel):
    """An event emitted for a workflow.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - workflow_id: Which workflow this event belongs to
    - session_id: Which agent session produced this event (if applicable)
    - data: Event-specific payload

    Payload schemas by event type:

    STAGE_CHANGED:
        - from_stage: str - Previous stage
        - to_stage: str - New stage
        - session_id: Optional[str] - Session started for the new stage

    APPROVAL_NEEDED:
        - artifact_type: str - Artifact pending approval
        - artifact_id: Optional[str] - The pending artifact

    SUBTASKS_SPAWNED:
        - coordinator_session_id: str - Session that fanned out
        - subtask_ids: list - Created subtask ids

    SUBTASK_UPDATED:
        - subtask_id: str - Which subtask changed
        - status: str - New status
        - error: Optional[str] - Failure reason

    COORDINATOR_RESUMED:
        - coordinator_session_id: str - Resumed session
        - completed: int - Completed sibling count
        - failed: int - Failed sibling count

    COORDINATION_ERROR:
        - workflow_id: str - Affected workflow
        - error: str - What went wrong
        - coordinator_session_id: str - Coordinator that could not resume

    SESSION_ERROR / WORKFLOW_ERROR:
        - error: str - Error message
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    workflow_id: str
    session_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "coordination_error",
                    "timestamp": 1699876543.123,
                    "workflow_id": "wf_abc123",
                    "session_id": "sess_coord123",
                    "data": {
                        "workflow_id": "wf_abc123",
                        "error": "Coordinator session not found",
                        "coordinator_session_id": "sess_coord123",
                    },
                }
            ]
        }
    }
