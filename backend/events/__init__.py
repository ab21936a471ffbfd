"""Event system for workflow and coordination updates.

This package provides the event infrastructure between the coordination
backend and its consumers. It is an async pub/sub built on asyncio.Queue,
keyed by workflow id.

Key Components:
    - EventType: Enum of all event types in the system
    - WorkflowEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution

Usage:
    >>> from events import EventType, WorkflowEvent, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("wf_123")
    >>> await bus.publish(WorkflowEvent(
    ...     type=EventType.SUBTASK_UPDATED,
    ...     workflow_id="wf_123",
    ...     data={"subtask_id": "subtask_1", "status": "completed"},
    ... ))
    >>> event = await queue.get()

Event Flow:
    1. Orchestrator, session registry and reconciler publish via EventBus
    2. WebSocket handler subscribes to a workflow and replays its history
    3. Events are forwarded to the client as JSON
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    WorkflowEvent,
)

__all__ = [
    # Event types
    "EventType",
    "WorkflowEvent",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
