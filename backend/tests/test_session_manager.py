"""Tests for session_manager.py -- session lifecycle management.

Covers session creation and context exclusivity, chained turns, failure
callbacks, stop/cancel behaviour, restoring sessions from the store, and
cleanup_all. Turns run through the ScriptedAgentRunner.
"""

import asyncio

import pytest

from agents.runner import ScriptedAgentRunner
from events.bus import EventBus
from events.types import EventType
from models.database import ProjectStore
from models.schemas import AgentRole, SessionContextType, SessionRecord, SessionStatus
from session_manager import SessionManager
from tests.conftest import events_of_type, start_coordinator


async def _start_workflow_session(
    manager: SessionManager, workflow_id: str = "wf_test", role: AgentRole = AgentRole.SCOPING
):
    return await manager.start_session(
        context_type=SessionContextType.WORKFLOW,
        context_id=workflow_id,
        agent_role=role,
    )


# =========================================================================
# Session Creation
# =========================================================================


class TestStartSession:
    async def test_start_persists_and_registers(
        self, session_manager: SessionManager, store: ProjectStore, event_bus: EventBus
    ) -> None:
        session = await _start_workflow_session(session_manager)

        assert session_manager.get_session(session.session_id) is session
        record = await store.get_session(session.session_id)
        assert record is not None
        assert record.status == SessionStatus.ACTIVE
        assert record.workflow_id == "wf_test"
        assert events_of_type(event_bus, "wf_test", EventType.SESSION_STARTED)

    async def test_workflow_context_is_exclusive(
        self, session_manager: SessionManager, store: ProjectStore
    ) -> None:
        first = await _start_workflow_session(session_manager)
        second = await _start_workflow_session(session_manager, role=AgentRole.RESEARCH)

        assert session_manager.get_session(first.session_id) is None
        assert session_manager.get_session(second.session_id) is second
        assert (await store.get_session(first.session_id)).status == SessionStatus.COMPLETED

    async def test_subtask_contexts_coexist(self, session_manager: SessionManager) -> None:
        sessions = [
            await session_manager.start_session(
                context_type=SessionContextType.SUBTASK,
                context_id=f"subtask_{i}",
                agent_role=AgentRole.REVIEW_SUB,
                workflow_id="wf_test",
                parent_session_id="sess_coord",
            )
            for i in range(3)
        ]
        assert len(session_manager.get_active_sessions()) == 3
        assert all(s.record.parent_session_id == "sess_coord" for s in sessions)

    async def test_session_without_workflow_emits_nothing(
        self, session_manager: SessionManager, event_bus: EventBus
    ) -> None:
        await session_manager.start_session(
            context_type=SessionContextType.CHANNEL,
            context_id="chan_1",
            agent_role=AgentRole.BASIC,
        )
        assert event_bus.get_active_streams() == []
        assert event_bus.get_event_history("chan_1") == []


# =========================================================================
# Turns
# =========================================================================


class TestLaunchSession:
    async def test_turn_runs_and_goes_idle(
        self,
        session_manager: SessionManager,
        runner: ScriptedAgentRunner,
        store: ProjectStore,
        event_bus: EventBus,
    ) -> None:
        session = await _start_workflow_session(session_manager)
        await session_manager.launch_session(session, "hello")
        await session_manager.wait_for_idle(timeout=5)

        assert runner.calls_for(session.session_id) == ["hello"]
        assert session.run_count == 1
        assert (await store.get_session(session.session_id)).status == SessionStatus.IDLE
        assert events_of_type(event_bus, "wf_test", EventType.SESSION_COMPLETED)

    async def test_turns_of_one_session_are_chained(
        self, session_manager: SessionManager, runner: ScriptedAgentRunner
    ) -> None:
        running = 0
        overlaps = 0

        async def slow(record: SessionRecord, message: str) -> None:
            nonlocal running, overlaps
            running += 1
            if running > 1:
                overlaps += 1
            await asyncio.sleep(0.01)
            running -= 1

        runner.set_handler(AgentRole.SCOPING, slow)
        session = await _start_workflow_session(session_manager)
        for i in range(3):
            await session_manager.launch_session(session, f"turn {i}")
        await session_manager.wait_for_idle(timeout=5)

        assert overlaps == 0
        assert runner.calls_for(session.session_id) == ["turn 0", "turn 1", "turn 2"]

    async def test_failed_turn_errors_session_and_calls_back(
        self,
        session_manager: SessionManager,
        runner: ScriptedAgentRunner,
        store: ProjectStore,
        event_bus: EventBus,
    ) -> None:
        async def broken(record: SessionRecord, message: str) -> None:
            raise RuntimeError("model unavailable")

        runner.set_handler(AgentRole.SCOPING, broken)
        errors: list[Exception] = []
        finished: list[bool] = []

        async def on_error(exc: Exception) -> None:
            errors.append(exc)

        async def on_finish() -> None:
            finished.append(True)

        session = await _start_workflow_session(session_manager)
        await session_manager.launch_session(
            session, "go", on_error=on_error, on_finish=on_finish
        )
        await session_manager.wait_for_idle(timeout=5)

        assert [str(e) for e in errors] == ["model unavailable"]
        assert finished == [True]
        record = await store.get_session(session.session_id)
        assert record.status == SessionStatus.ERROR
        assert record.error_message == "model unavailable"
        assert session_manager.get_session(session.session_id) is None
        assert events_of_type(event_bus, "wf_test", EventType.SESSION_ERROR)

    async def test_failing_callback_is_contained(
        self, session_manager: SessionManager, store: ProjectStore
    ) -> None:
        async def on_finish() -> None:
            raise RuntimeError("callback bug")

        session = await _start_workflow_session(session_manager)
        await session_manager.launch_session(session, "go", on_finish=on_finish)
        await session_manager.wait_for_idle(timeout=5)

        assert (await store.get_session(session.session_id)).status == SessionStatus.IDLE

    async def test_stopped_session_skips_queued_turn(
        self, session_manager: SessionManager, runner: ScriptedAgentRunner
    ) -> None:
        session = await _start_workflow_session(session_manager)
        await session_manager.stop_session(session.session_id)
        await session_manager.launch_session(session, "late")
        await session_manager.wait_for_idle(timeout=5)
        assert runner.calls_for(session.session_id) == []


class TestStopSession:
    async def test_stop_cancels_turn_without_finish_callback(
        self,
        session_manager: SessionManager,
        runner: ScriptedAgentRunner,
        store: ProjectStore,
    ) -> None:
        started = asyncio.Event()

        async def hang(record: SessionRecord, message: str) -> None:
            started.set()
            await asyncio.sleep(60)

        runner.set_handler(AgentRole.SCOPING, hang)
        finished: list[bool] = []

        async def on_finish() -> None:
            finished.append(True)

        session = await _start_workflow_session(session_manager)
        await session_manager.launch_session(session, "go", on_finish=on_finish)
        await asyncio.wait_for(started.wait(), timeout=5)

        await session_manager.stop_session(session.session_id)
        await asyncio.sleep(0)

        assert not session_manager.has_running_turn(session.session_id)
        assert finished == []
        assert (await store.get_session(session.session_id)).status == SessionStatus.COMPLETED

    async def test_error_session_cancels_running_turn(
        self, session_manager: SessionManager, runner: ScriptedAgentRunner, store: ProjectStore
    ) -> None:
        started = asyncio.Event()

        async def hang(record: SessionRecord, message: str) -> None:
            started.set()
            await asyncio.sleep(60)

        runner.set_handler(AgentRole.SCOPING, hang)
        session = await _start_workflow_session(session_manager)
        await session_manager.launch_session(session, "go")
        await asyncio.wait_for(started.wait(), timeout=5)

        await session_manager.error_session(session.session_id, "Cancelled by user")
        await asyncio.sleep(0)

        assert not session_manager.has_running_turn(session.session_id)
        record = await store.get_session(session.session_id)
        assert record.status == SessionStatus.ERROR
        assert record.error_message == "Cancelled by user"


# =========================================================================
# Resume / restore
# =========================================================================


class TestResumeSession:
    async def test_resume_in_memory_session(
        self, session_manager: SessionManager, runner: ScriptedAgentRunner
    ) -> None:
        session = await start_coordinator(session_manager)
        assert await session_manager.resume_session(session.session_id, "results") is True
        await session_manager.wait_for_idle(timeout=5)
        assert runner.calls_for(session.session_id) == ["results"]

    async def test_resume_restores_from_store(
        self,
        store: ProjectStore,
        event_bus: EventBus,
        runner: ScriptedAgentRunner,
    ) -> None:
        first = SessionManager(store, event_bus, runner)
        session = await start_coordinator(first)
        await first.cleanup_all()

        second = SessionManager(store, event_bus, runner)
        try:
            assert await second.resume_session(session.session_id, "after restart") is True
            await second.wait_for_idle(timeout=5)
            restored = second.get_session(session.session_id)
            assert restored is not None
            assert restored.restored is True
            assert runner.calls_for(session.session_id) == ["after restart"]
        finally:
            await second.cleanup_all()

    async def test_resume_unknown_session(self, session_manager: SessionManager) -> None:
        assert await session_manager.resume_session("sess_missing", "x") is False

    @pytest.mark.parametrize("status", [SessionStatus.COMPLETED, SessionStatus.ERROR])
    async def test_resume_terminal_session(
        self, session_manager: SessionManager, store: ProjectStore, status: SessionStatus
    ) -> None:
        session = await start_coordinator(session_manager)
        await session_manager.stop_session(session.session_id)
        await store.update_session_status(session.session_id, status)
        assert await session_manager.resume_session(session.session_id, "x") is False


class TestCleanup:
    async def test_cleanup_all_keeps_records(
        self, session_manager: SessionManager, runner: ScriptedAgentRunner, store: ProjectStore
    ) -> None:
        async def hang(record: SessionRecord, message: str) -> None:
            await asyncio.sleep(60)

        runner.set_handler(AgentRole.SCOPING, hang)
        session = await _start_workflow_session(session_manager)
        await session_manager.launch_session(session, "go")
        await asyncio.sleep(0.01)

        await session_manager.cleanup_all()

        assert session_manager.get_active_sessions() == []
        assert await store.get_session(session.session_id) is not None


class TestLateStatusWrites:
    async def test_in_flight_idle_write_does_not_revive_errored_session(
        self,
        session_manager: SessionManager,
        store: ProjectStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        original_update = store.update_session_status
        idle_write_started = asyncio.Event()
        release = asyncio.Event()
        late_writes: list[asyncio.Task[bool]] = []

        async def delayed_update(
            session_id: str, status: SessionStatus, error_message: str | None = None
        ) -> bool:
            if status != SessionStatus.IDLE:
                return await original_update(session_id, status, error_message)

            async def write_after_release() -> bool:
                idle_write_started.set()
                await release.wait()
                return await original_update(session_id, status, error_message)

            # The write is already queued: cancelling the turn does not stop it
            late_writes.append(asyncio.ensure_future(write_after_release()))
            return await asyncio.shield(late_writes[-1])

        monkeypatch.setattr(store, "update_session_status", delayed_update)

        session = await start_coordinator(session_manager)
        await session_manager.launch_session(session, "go")
        await asyncio.wait_for(idle_write_started.wait(), timeout=5)

        await session_manager.error_session(session.session_id, "Cancelled by user")
        release.set()
        applied = await late_writes[0]

        assert applied is False
        record = await store.get_session(session.session_id)
        assert record.status == SessionStatus.ERROR
        assert await session_manager.resume_session(session.session_id, "results") is False
