"""Session registry for agent sessions.

This module provides the SessionManager class that manages the lifecycle of
agent sessions: persisting session records, running agent turns in
background tasks, restoring sessions from the store so they can be resumed,
and cleanup.

The SessionManager coordinates between:
- ProjectStore: For session persistence
- EventBus: For real-time event streaming
- AgentRunner: For executing agent turns

Usage:
    >>> from events import get_event_bus
    >>> from agents.runner import ScriptedAgentRunner
    >>> from session_manager import SessionManager
    >>>
    >>> manager = SessionManager(store, get_event_bus(), ScriptedAgentRunner())
    >>>
    >>> # Start a session and run its first turn
    >>> session = await manager.start_session(
    ...     context_type=SessionContextType.WORKFLOW,
    ...     context_id="wf_abc123",
    ...     agent_role=AgentRole.SCOPING,
    ...     workflow_id="wf_abc123",
    ... )
    >>> await manager.launch_session(session, "Scope this task")
    >>>
    >>> # Later, deliver new input to the same session
    >>> await manager.resume_session(session.session_id, "Here are the results")
    >>>
    >>> # Cleanup when done
    >>> await manager.cleanup_all()
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from agents.runner import AgentRunner
from events import EventBus
from events.types import EventType, WorkflowEvent
from models.database import ProjectStore, generate_id
from models.schemas import (
    TERMINAL_SESSION_STATUSES,
    AgentRole,
    SessionContextType,
    SessionRecord,
    SessionStatus,
)

logger = structlog.get_logger()


ErrorCallback = Callable[[Exception], Awaitable[None]]
FinishCallback = Callable[[], Awaitable[None]]

# Contexts where at most one session may be active at a time
_EXCLUSIVE_CONTEXTS = (SessionContextType.WORKFLOW, SessionContextType.CHANNEL)


@dataclass
class ActiveSession:
    """In-memory handle of a session.

    Attributes:
        record: The persisted session record
        restored: True if the handle was rehydrated from the store
        run_count: Number of agent turns started for this handle
        last_run_at: Unix timestamp of the last turn start (None if never run)
    """

    record: SessionRecord
    restored: bool = False
    run_count: int = 0
    last_run_at: float | None = None

    @property
    def session_id(self) -> str:
        return self.record.id

    @property
    def workflow_id(self) -> str | None:
        return self.record.workflow_id


class SessionManager:
    """Manages the lifecycle of agent sessions.

    Thread Safety:
        All registry operations use an asyncio.Lock. Turns for the same
        session are chained, so a session never runs two turns at once.

    Attributes:
        store: Persistence for session records
        event_bus: Event bus for real-time event streaming
        runner: Agent runtime executing turns
    """

    def __init__(
        self,
        store: ProjectStore,
        event_bus: EventBus,
        runner: AgentRunner,
    ) -> None:
        """Initialize the SessionManager.

        Args:
            store: Store for session persistence
            event_bus: Event bus for emitting events
            runner: Agent runtime that executes turns
        """
        self.store = store
        self.event_bus = event_bus
        self.runner = runner
        self._sessions: dict[str, ActiveSession] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()
        logger.info("session_manager_initialized")

    async def _persist_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        error_message: str | None = None,
    ) -> None:
        """Persist a session status change to the database.

        DB failures are logged but never propagated; callers reach this
        from run completion paths that must not raise.
        """
        try:
            await self.store.update_session_status(session_id, status, error_message)
        except Exception as e:
            logger.error(
                "persist_session_status_failed",
                session_id=session_id,
                status=status.value,
                error=str(e),
            )

    async def _emit(
        self,
        session: ActiveSession,
        event_type: EventType,
        data: dict[str, object] | None = None,
    ) -> None:
        if session.workflow_id is None:
            return
        await self.event_bus.publish(
            WorkflowEvent(
                type=event_type,
                workflow_id=session.workflow_id,
                session_id=session.session_id,
                data=data or {},
            )
        )

    async def start_session(
        self,
        context_type: SessionContextType,
        context_id: str,
        agent_role: AgentRole,
        workflow_id: str | None = None,
        parent_session_id: str | None = None,
    ) -> ActiveSession:
        """Create and register a new session.

        Nothing runs until ``launch_session`` is called. For workflow and
        channel contexts, any session already active for the same context
        is stopped first.

        Args:
            context_type: What the session serves
            context_id: Workflow, channel or subtask id
            agent_role: Role the agent runs with
            workflow_id: Workflow whose stream receives this session's events.
                Defaults to ``context_id`` for workflow sessions.
            parent_session_id: Coordinator session for subtask sessions

        Returns:
            The in-memory session handle.
        """
        if workflow_id is None and context_type == SessionContextType.WORKFLOW:
            workflow_id = context_id

        if context_type in _EXCLUSIVE_CONTEXTS:
            async with self._lock:
                existing = [
                    s.session_id
                    for s in self._sessions.values()
                    if s.record.context_type == context_type
                    and s.record.context_id == context_id
                ]
            for session_id in existing:
                logger.info(
                    "stopping_existing_session",
                    session_id=session_id,
                    context_id=context_id,
                )
                await self.stop_session(session_id)

        record = await self.store.create_session(
            session_id=generate_id("sess"),
            context_type=context_type,
            context_id=context_id,
            agent_role=agent_role,
            workflow_id=workflow_id,
            parent_session_id=parent_session_id,
        )
        session = ActiveSession(record=record)
        async with self._lock:
            self._sessions[record.id] = session

        logger.info(
            "session_started",
            session_id=record.id,
            context_type=context_type.value,
            context_id=context_id,
            agent_role=agent_role.value,
            parent_session_id=parent_session_id,
        )
        await self._emit(
            session,
            EventType.SESSION_STARTED,
            {
                "agent_role": agent_role.value,
                "context_type": context_type.value,
                "context_id": context_id,
                "parent_session_id": parent_session_id,
            },
        )
        return session

    async def get_or_restore_session(self, session_id: str) -> ActiveSession | None:
        """Return the in-memory handle, rehydrating it from the store if needed.

        Returns:
            The handle, or None if the record does not exist or is terminal.
        """
        async with self._lock:
            session = self._sessions.get(session_id)
        if session is not None:
            return session

        record = await self.store.get_session(session_id)
        if record is None:
            logger.warning("session_restore_not_found", session_id=session_id)
            return None
        if record.status in TERMINAL_SESSION_STATUSES:
            logger.warning(
                "session_restore_terminal",
                session_id=session_id,
                status=record.status.value,
            )
            return None

        async with self._lock:
            # Another caller may have restored it while we were reading
            session = self._sessions.setdefault(
                session_id, ActiveSession(record=record, restored=True)
            )
        logger.info("session_restored", session_id=session_id)
        return session

    async def launch_session(
        self,
        session: ActiveSession,
        message: str,
        on_error: ErrorCallback | None = None,
        on_finish: FinishCallback | None = None,
    ) -> None:
        """Schedule one agent turn for a session and return immediately.

        If a turn is already in flight for the session, the new turn is
        chained after it. A failed turn marks the session ``error`` and
        broadcasts ``session_error``; ``on_error`` then receives the
        exception. ``on_finish`` runs after every turn, failed or not.

        Args:
            session: The session handle
            message: Input delivered to the agent
            on_error: Awaited with the exception if the turn raises
            on_finish: Awaited once the turn is over
        """
        session_id = session.session_id
        async with self._lock:
            previous = self._tasks.get(session_id)
            background_task = asyncio.create_task(
                self._run_turn(session, message, previous, on_error, on_finish),
                name=f"session_{session_id}",
            )
            self._tasks[session_id] = background_task

            # Clean up task reference when it completes
            def _remove_task(t: asyncio.Task[None], sid: str = session_id) -> None:
                if self._tasks.get(sid) is t:
                    self._tasks.pop(sid, None)

            background_task.add_done_callback(_remove_task)

        logger.debug(
            "session_turn_scheduled",
            session_id=session_id,
            chained=previous is not None and not previous.done(),
        )

    async def resume_session(self, session_id: str, message: str) -> bool:
        """Deliver new input to a session as a fresh turn.

        Fire-and-forget: returns once the turn is scheduled. Failures of the
        resumed turn are logged and broadcast, never raised here.

        Returns:
            True if the turn was scheduled, False if the session cannot be
            resumed (missing or terminal).
        """
        session = await self.get_or_restore_session(session_id)
        if session is None:
            return False
        await self.launch_session(session, message)
        logger.info("session_resume_scheduled", session_id=session_id)
        return True

    async def _run_turn(
        self,
        session: ActiveSession,
        message: str,
        previous: asyncio.Task[None] | None,
        on_error: ErrorCallback | None,
        on_finish: FinishCallback | None,
    ) -> None:
        session_id = session.session_id
        if previous is not None and not previous.done():
            # asyncio.wait never raises the previous turn's outcome
            await asyncio.wait([previous])

        cancelled = False
        try:
            async with self._lock:
                if session_id not in self._sessions:
                    logger.info("session_turn_skipped_stopped", session_id=session_id)
                    return
            session.run_count += 1
            session.last_run_at = time.time()
            await self._persist_session_status(session_id, SessionStatus.ACTIVE)

            try:
                await self.runner.run(session.record, message)
            except Exception as e:
                logger.error(
                    "session_turn_failed",
                    session_id=session_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self.error_session(session_id, str(e) or type(e).__name__)
                if on_error is not None:
                    try:
                        await on_error(e)
                    except Exception as callback_error:
                        logger.error(
                            "session_error_callback_failed",
                            session_id=session_id,
                            error=str(callback_error),
                        )
                return

            async with self._lock:
                still_registered = session_id in self._sessions
            if still_registered:
                await self._persist_session_status(session_id, SessionStatus.IDLE)
            logger.info(
                "session_turn_complete",
                session_id=session_id,
                run_count=session.run_count,
            )
            await self._emit(session, EventType.SESSION_COMPLETED, {"run_count": session.run_count})
        except asyncio.CancelledError:
            cancelled = True
            logger.info("session_turn_cancelled", session_id=session_id)
            raise
        finally:
            if on_finish is not None and not cancelled:
                try:
                    await on_finish()
                except Exception as e:
                    logger.error(
                        "session_finish_callback_failed",
                        session_id=session_id,
                        error=str(e),
                    )

    def _detach_task(self, session_id: str) -> asyncio.Task[None] | None:
        """Unregister the session's latest turn so it can be cancelled.

        The calling turn itself is left registered and never returned: it
        ends on its own. Must be called with ``_lock`` held.
        """
        task = self._tasks.get(session_id)
        if task is None or task is asyncio.current_task():
            return None
        del self._tasks[session_id]
        return task

    async def stop_session(self, session_id: str) -> None:
        """Stop a session: cancel its in-flight turn and mark it completed.

        A turn is never cancelled from inside itself (e.g. when the agent's
        own tool call triggers a stage transition); it simply ends.
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            task = self._detach_task(session_id)

        if task is not None and not task.done():
            task.cancel()

        await self._persist_session_status(session_id, SessionStatus.COMPLETED)
        logger.info("session_stopped", session_id=session_id)
        if session is not None:
            await self._emit(session, EventType.SESSION_COMPLETED, {"stopped": True})

    async def error_session(self, session_id: str, error: str) -> None:
        """Mark a session as errored, cancel its in-flight turn and broadcast ``session_error``."""
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            task = self._detach_task(session_id)

        if task is not None and not task.done():
            task.cancel()

        await self._persist_session_status(session_id, SessionStatus.ERROR, error)
        logger.warning("session_errored", session_id=session_id, error=error)

        if session is None:
            record = await self.store.get_session(session_id)
            if record is None:
                return
            session = ActiveSession(record=record, restored=True)
        await self._emit(session, EventType.SESSION_ERROR, {"error": error})

    def get_session(self, session_id: str) -> ActiveSession | None:
        """Get the in-memory handle of a session (no store lookup)."""
        return self._sessions.get(session_id)

    def get_active_sessions(self) -> list[ActiveSession]:
        return list(self._sessions.values())

    def has_running_turn(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    async def wait_for_idle(self, timeout: float | None = None) -> None:
        """Wait until no turn is in flight, including turns scheduled meanwhile.

        Raises:
            TimeoutError: If turns are still running after ``timeout``.
        """

        async def _drain() -> None:
            while True:
                pending = [t for t in self._tasks.values() if not t.done()]
                if not pending:
                    return
                await asyncio.wait(pending)

        await asyncio.wait_for(_drain(), timeout=timeout)

    async def cleanup_all(self) -> None:
        """Cancel all in-flight turns and drop in-memory sessions.

        Persisted records are kept so sessions can be restored later.
        Called during application shutdown.
        """
        logger.info("cleanup_all_start", session_count=len(self._sessions))

        # Collect tasks under the lock, cancel outside to avoid deadlock
        async with self._lock:
            tasks_to_cancel = list(self._tasks.items())
            self._tasks.clear()

        for session_id, task in tasks_to_cancel:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(
                    "cleanup_task_cancel_failed",
                    session_id=session_id,
                    error=str(e),
                )

        async with self._lock:
            self._sessions.clear()

        logger.info("cleanup_all_complete")
