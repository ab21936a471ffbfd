"""Liveness deadline for unfinished subtasks.

A sub-agent that hangs, or one that was never launched, would keep its
coordinator waiting forever. The watchdog periodically fails pending or
running subtasks not updated within the liveness deadline, through the
normal reconciler failure path.
"""

import asyncio
import time

import structlog

from coordination.reconciler import FanInReconciler
from models.database import ProjectStore

logger = structlog.get_logger()


class SubtaskWatchdog:
    """Background sweeper for stale unfinished subtasks."""

    def __init__(
        self,
        store: ProjectStore,
        reconciler: FanInReconciler,
        liveness_seconds: float,
        interval_seconds: float = 60.0,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.liveness_seconds = liveness_seconds
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    async def sweep(self, now: float | None = None) -> list[str]:
        """Fail every pending or running subtask idle longer than the deadline.

        Returns:
            Ids of the subtasks failed by this sweep.
        """
        cutoff = (now if now is not None else time.time()) - self.liveness_seconds
        stale = await self.store.list_stale_unfinished_subtasks(cutoff)
        failed: list[str] = []
        for subtask in stale:
            transition = await self.reconciler.fail(
                subtask.id,
                f"Sub-agent exceeded liveness deadline of {self.liveness_seconds:g}s",
            )
            if not transition.duplicate:
                failed.append(subtask.id)
        if failed:
            logger.warning("watchdog_failed_stale_subtasks", subtask_ids=failed)
        return failed

    def start(self) -> asyncio.Task[None]:
        """Start the sweep loop. It runs until stop() or cancellation."""

        async def _loop() -> None:
            logger.info(
                "watchdog_loop_started",
                interval_seconds=self.interval_seconds,
                liveness_seconds=self.liveness_seconds,
            )
            while True:
                try:
                    await asyncio.sleep(self.interval_seconds)
                    await self.sweep()
                except asyncio.CancelledError:
                    logger.info("watchdog_loop_stopped")
                    return
                except Exception as e:
                    logger.error("watchdog_loop_error", error=str(e))

        self._task = asyncio.create_task(_loop(), name="subtask_watchdog")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
