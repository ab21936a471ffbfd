"""Async event bus for workflow pub/sub communication.

This module provides an EventBus class that enables asynchronous
publish/subscribe communication between the coordination backend and
its consumers (via WebSocket).

The event bus supports:
- Multiple subscribers per workflow
- Async event delivery via asyncio.Queue
- Per-workflow history for replay on reconnect
- Stream lifecycle management (close terminates all subscribers)
"""

import asyncio
import contextlib
import threading
from collections import defaultdict

import structlog

from events.types import EventType, WorkflowEvent

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for workflow events.

    The EventBus manages subscriptions per workflow, allowing multiple
    WebSocket connections to receive events for the same workflow.
    Events are delivered via asyncio.Queue for non-blocking consumption.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately.

    Thread Safety:
        Registry access is guarded by a threading.Lock, so events can also
        be published from executor threads via publish_sync().

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("wf_123")
        >>> await bus.publish(WorkflowEvent(
        ...     type=EventType.STAGE_CHANGED,
        ...     workflow_id="wf_123",
        ...     data={"from_stage": "scoping", "to_stage": "researching"},
        ... ))
        >>> event = await queue.get()
        >>> bus.unsubscribe("wf_123", queue)
        >>> await bus.close_stream("wf_123")

    Attributes:
        _subscribers: Dict mapping workflow_id to list of subscriber queues
        _event_buffer: Dict mapping workflow_id to list of buffered events
        _lock: Threading lock for thread-safe subscriber management
    """

    # Maximum number of events to retain per workflow, both in history for
    # replay on reconnect and in the buffer awaiting a first subscriber.
    MAX_HISTORY_PER_WORKFLOW = 5000

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[WorkflowEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[WorkflowEvent]] = defaultdict(list)
        self._event_history: dict[str, list[WorkflowEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        logger.info("event_bus_initialized")

    def subscribe(self, workflow_id: str) -> asyncio.Queue[WorkflowEvent]:
        """Subscribe to events for a workflow.

        Buffered events (published before any subscriber connected) are
        delivered immediately to the new subscriber.

        Args:
            workflow_id: The workflow to subscribe to

        Returns:
            An asyncio.Queue that will receive WorkflowEvent objects
        """
        queue: asyncio.Queue[WorkflowEvent] = asyncio.Queue()
        buffered_events: list[WorkflowEvent] = []

        with self._lock:
            self._subscribers[workflow_id].append(queue)
            subscriber_count = len(self._subscribers[workflow_id])
            if workflow_id in self._event_buffer:
                buffered_events = self._event_buffer.pop(workflow_id)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            workflow_id=workflow_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, workflow_id: str, queue: asyncio.Queue[WorkflowEvent]) -> None:
        """Unsubscribe a queue from workflow events.

        If the queue is not registered, this is a no-op.
        """
        with self._lock:
            if workflow_id not in self._subscribers:
                return
            try:
                self._subscribers[workflow_id].remove(queue)
            except ValueError:
                logger.warning("unsubscribe_queue_not_found", workflow_id=workflow_id)
                return
            subscriber_count = len(self._subscribers[workflow_id])
            if not self._subscribers[workflow_id]:
                del self._subscribers[workflow_id]
        logger.info(
            "subscriber_removed",
            workflow_id=workflow_id,
            subscriber_count=subscriber_count,
        )

    def _record(self, event: WorkflowEvent) -> list[asyncio.Queue[WorkflowEvent]]:
        """Store history and buffer under the lock; return live subscribers."""
        if event.type != EventType.STREAM_CLOSED:
            history = self._event_history[event.workflow_id]
            history.append(event)
            if len(history) > self.MAX_HISTORY_PER_WORKFLOW:
                self._event_history[event.workflow_id] = history[
                    -self.MAX_HISTORY_PER_WORKFLOW :
                ]

        subscribers = list(self._subscribers.get(event.workflow_id, []))
        if not subscribers:
            buffer = self._event_buffer[event.workflow_id]
            buffer.append(event)
            if len(buffer) > self.MAX_HISTORY_PER_WORKFLOW:
                del buffer[: -self.MAX_HISTORY_PER_WORKFLOW]
            logger.debug(
                "event_buffered",
                workflow_id=event.workflow_id,
                event_type=event.type.value,
                buffer_size=len(self._event_buffer[event.workflow_id]),
            )
        return subscribers

    async def publish(self, event: WorkflowEvent) -> None:
        """Publish an event to all subscribers for its workflow.

        If there are no subscribers, the event is buffered until one
        connects. All events are also kept in the workflow's history.

        Args:
            event: The WorkflowEvent to publish
        """
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        with self._lock:
            subscribers = self._record(event)
        if not subscribers:
            return

        # Bounded wait so a stalled consumer cannot block the publisher
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    workflow_id=event.workflow_id,
                    event_type=event.type.value,
                )
            except Exception as e:
                logger.error(
                    "event_delivery_failed",
                    workflow_id=event.workflow_id,
                    event_type=event.type.value,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            workflow_id=event.workflow_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
            session_id=event.session_id,
        )

    def publish_sync(self, event: WorkflowEvent) -> None:
        """Synchronously publish an event (for use from non-async contexts).

        The put is scheduled on the event loop thread via
        call_soon_threadsafe, since asyncio.Queue is not thread-safe.

        Args:
            event: The WorkflowEvent to publish
        """
        with self._lock:
            subscribers = self._record(event)
            loop = self._loop
        if not subscribers:
            return

        if loop is not None and not loop.is_closed():
            for queue in subscribers:
                with contextlib.suppress(RuntimeError):
                    loop.call_soon_threadsafe(queue.put_nowait, event)
        else:
            for queue in subscribers:
                queue.put_nowait(event)

        logger.debug(
            "event_published_sync",
            workflow_id=event.workflow_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, workflow_id: str) -> list[WorkflowEvent]:
        """Get all stored events for a workflow, in chronological order.

        Used for replaying events to a newly connected WebSocket client.
        """
        with self._lock:
            return list(self._event_history.get(workflow_id, []))

    async def close_stream(self, workflow_id: str) -> None:
        """Close a workflow's stream and notify all subscribers.

        Puts a STREAM_CLOSED sentinel into each subscriber queue so that
        consumers can break out of their read loops, then removes all
        subscribers and buffered events. History is preserved.

        Args:
            workflow_id: The workflow whose stream is closed
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(workflow_id, [])
            buffered = self._event_buffer.pop(workflow_id, [])

        for queue in queues_to_signal:
            await queue.put(
                WorkflowEvent(
                    type=EventType.STREAM_CLOSED,
                    workflow_id=workflow_id,
                    data={"reason": "stream_closed"},
                )
            )

        if queues_to_signal or buffered:
            logger.info(
                "stream_closed",
                workflow_id=workflow_id,
                subscribers_removed=len(queues_to_signal),
                buffered_events_cleared=len(buffered),
            )

    def get_subscriber_count(self, workflow_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(workflow_id, []))

    def get_active_streams(self) -> list[str]:
        """Get workflow ids with at least one subscriber."""
        with self._lock:
            return list(self._subscribers.keys())

    def clear_event_history(self, workflow_id: str) -> None:
        with self._lock:
            self._event_history.pop(workflow_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance.

    Creates the instance on first call (lazy initialization).
    This function is thread-safe.
    """
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            # Double-check locking pattern
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    Primarily useful for testing to ensure a clean state between tests.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
