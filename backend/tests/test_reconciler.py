"""Tests for coordination/reconciler.py -- exactly-once coordinator resume.

Covers the fan-in of concurrent outcomes, duplicate reports, the merged
message delivered to the coordinator, and the coordination_error path when
the coordinator can no longer be resumed.
"""

import asyncio
import random

import aiosqlite
import pytest

from agents.runner import ScriptedAgentRunner
from coordination.reconciler import FanInReconciler
from events.bus import EventBus
from events.types import EventType
from models.database import ProjectStore, SubtaskNotFoundError
from models.schemas import SubtaskStatus
from session_manager import SessionManager
from tests.conftest import events_of_type, make_workflow, start_coordinator


async def _setup(
    store: ProjectStore, session_manager: SessionManager, labels: list[str]
) -> tuple[str, list[str]]:
    await make_workflow(store)
    coordinator = await start_coordinator(session_manager)
    ids = [f"subtask_{i}" for i in range(len(labels))]
    await store.create_subtasks(
        coordinator.session_id,
        "wf_test",
        [(sid, {"label": label, "files": ["a.py"]}) for sid, label in zip(ids, labels, strict=True)],
    )
    for sid in ids:
        await store.start_subtask(sid)
    return coordinator.session_id, ids


class TestExactlyOnceResume:
    @pytest.mark.parametrize("seed", [1, 2, 3])
    async def test_concurrent_outcomes_resume_once(
        self,
        seed: int,
        store: ProjectStore,
        session_manager: SessionManager,
        reconciler: FanInReconciler,
        runner: ScriptedAgentRunner,
        event_bus: EventBus,
    ) -> None:
        rng = random.Random(seed)
        coordinator_id, ids = await _setup(
            store, session_manager, [f"Task {i}" for i in range(6)]
        )
        order = list(ids)
        rng.shuffle(order)
        plan = {sid: (rng.random() / 50, rng.random() < 0.3) for sid in order}

        async def report(subtask_id: str) -> None:
            delay, fails = plan[subtask_id]
            await asyncio.sleep(delay)
            if fails:
                await reconciler.fail(subtask_id, "boom")
            else:
                await reconciler.complete(subtask_id, {"summary": subtask_id})

        await asyncio.gather(*(report(sid) for sid in order))
        await session_manager.wait_for_idle(timeout=5)

        assert len(runner.calls_for(coordinator_id)) == 1
        assert len(events_of_type(event_bus, "wf_test", EventType.COORDINATOR_RESUMED)) == 1
        merged = await store.merged_results_for(coordinator_id)
        assert merged.all_done
        assert len(merged.failed) == sum(fails for _, fails in plan.values())

    async def test_duplicate_report_is_noop(
        self,
        store: ProjectStore,
        session_manager: SessionManager,
        reconciler: FanInReconciler,
        runner: ScriptedAgentRunner,
    ) -> None:
        coordinator_id, ids = await _setup(store, session_manager, ["Only"])

        first = await reconciler.complete(ids[0], {"summary": "first"})
        second = await reconciler.complete(ids[0], {"summary": "second"})
        late_failure = await reconciler.fail(ids[0], "late")
        await session_manager.wait_for_idle(timeout=5)

        assert first.should_resume is True
        assert second.duplicate is True
        assert second.should_resume is False
        assert late_failure.duplicate is True
        assert (await store.get_subtask(ids[0])).findings == {"summary": "first"}
        assert len(runner.calls_for(coordinator_id)) == 1

    async def test_fail_if_unfinished_skips_terminal(
        self, store: ProjectStore, session_manager: SessionManager, reconciler: FanInReconciler
    ) -> None:
        _, ids = await _setup(store, session_manager, ["A", "B"])
        await reconciler.complete(ids[0], {"summary": "done"})

        assert await reconciler.fail_if_unfinished(ids[0], "ended") is None
        transition = await reconciler.fail_if_unfinished(ids[1], "ended")
        assert transition is not None
        assert transition.status == SubtaskStatus.FAILED
        assert await reconciler.fail_if_unfinished("subtask_missing", "ended") is None

    async def test_unknown_subtask_raises(self, reconciler: FanInReconciler) -> None:
        with pytest.raises(SubtaskNotFoundError):
            await reconciler.complete("subtask_missing", {})


class TestMergedDelivery:
    async def test_two_completed_one_failed(
        self,
        store: ProjectStore,
        session_manager: SessionManager,
        reconciler: FanInReconciler,
        runner: ScriptedAgentRunner,
        event_bus: EventBus,
    ) -> None:
        coordinator_id, ids = await _setup(store, session_manager, ["API", "UI", "Docs"])

        await reconciler.complete(ids[0], {
            "summary": "API fine",
            "concerns": [{"severity": "major", "description": "No rate limit", "scope": "file", "file": "api.py"}],
        })
        await reconciler.fail(ids[2], "timeout")
        await reconciler.complete(ids[1], {"summary": "UI fine", "positiveObservations": ["Accessible"]})
        await session_manager.wait_for_idle(timeout=5)

        messages = runner.calls_for(coordinator_id)
        assert len(messages) == 1
        message = messages[0]
        assert "(2 completed, 1 failed)" in message
        assert "## API" in message
        assert "- [MAJOR] (api.py) [file] No rate limit" in message
        assert "## UI" in message
        assert "- Accessible" in message
        assert "- **Docs**: timeout" in message

        fan_in = await store.get_fan_in_result(coordinator_id)
        assert fan_in is not None
        assert fan_in.message == message
        assert fan_in.delivered is True

        updates = events_of_type(event_bus, "wf_test", EventType.SUBTASK_UPDATED)
        assert [e.data["status"] for e in updates] == ["completed", "failed", "completed"]
        resumed = events_of_type(event_bus, "wf_test", EventType.COORDINATOR_RESUMED)
        assert resumed[0].data == {
            "coordinator_session_id": coordinator_id,
            "completed": 2,
            "failed": 1,
        }


class TestCoordinatorGone:
    async def test_deleted_coordinator_broadcasts_error(
        self,
        store: ProjectStore,
        session_manager: SessionManager,
        reconciler: FanInReconciler,
        event_bus: EventBus,
    ) -> None:
        coordinator_id, ids = await _setup(store, session_manager, ["Only"])

        # Remove the coordinator out-of-band: from memory and from the store
        await session_manager.stop_session(coordinator_id)
        async with aiosqlite.connect(store.db_path) as db:
            await db.execute("DELETE FROM sessions WHERE id = ?", (coordinator_id,))
            await db.commit()

        transition = await reconciler.complete(ids[0], {"summary": "done"})

        assert transition.should_resume is True
        errors = events_of_type(event_bus, "wf_test", EventType.COORDINATION_ERROR)
        assert len(errors) == 1
        assert errors[0].data["coordinator_session_id"] == coordinator_id
        assert errors[0].data["workflow_id"] == "wf_test"
        assert "not found or no longer resumable" in errors[0].data["error"]

        fan_in = await store.get_fan_in_result(coordinator_id)
        assert fan_in is not None
        assert fan_in.delivered is False
        assert not events_of_type(event_bus, "wf_test", EventType.COORDINATOR_RESUMED)

    async def test_merge_failure_is_broadcast_not_raised(
        self,
        store: ProjectStore,
        session_manager: SessionManager,
        reconciler: FanInReconciler,
        event_bus: EventBus,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        _, ids = await _setup(store, session_manager, ["Only"])

        async def broken_save(*args: object, **kwargs: object) -> None:
            raise RuntimeError("database is locked")

        monkeypatch.setattr(store, "save_fan_in_result", broken_save)

        await reconciler.complete(ids[0], {"summary": "done"})

        errors = events_of_type(event_bus, "wf_test", EventType.COORDINATION_ERROR)
        assert [e.data["error"] for e in errors] == ["database is locked"]
