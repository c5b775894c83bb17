"""
Stale-Call Reaper — guarantees that no call stays open forever.

If the terminal webhook for a call is lost, the record would sit in CALLING
or IN_PROGRESS indefinitely. The reaper runs as a background task inside
the FastAPI lifespan and, on every sweep:

    1. fails CALLING / IN_PROGRESS records not updated within the timeout
       (full terminal path, summary included)
    2. backfills summaries for terminal records that are missing one

Configure in settings:
    reaper:
      timeout_seconds: 600
      interval_seconds: 300
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from typing import Callable, Optional

from context.lifecycle import LifecycleController
from database.store_base import BaseCallStore, CallNotFoundError
from models.schemas import CallStatus, OPEN_STATUSES, TERMINAL_STATUSES, utcnow

logger = structlog.get_logger()


def timeout_message(timeout_s: int) -> str:
    if timeout_s < 60:
        return f"Call timed out after {timeout_s} seconds without status update"
    return f"Call timed out after {timeout_s // 60} minutes without status update"


class StaleCallReaper:

    def __init__(
        self,
        controller: LifecycleController,
        store: BaseCallStore,
        timeout_s: int = 600,
        interval_s: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.controller = controller
        self.store = store
        self.timeout_s = timeout_s
        self.interval_s = interval_s
        self._clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the sweep loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="stale_call_reaper")
        logger.info("stale_call_reaper_started",
                    timeout_s=self.timeout_s, interval_s=self.interval_s)

    async def stop(self) -> None:
        """Gracefully stop the reaper."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("stale_call_reaper_stopped")

    async def _sweep_loop(self) -> None:
        """Main loop, runs until stopped."""
        while self._running:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("reaper_sweep_error", error=str(e))

            await asyncio.sleep(self.interval_s)

    async def sweep(self) -> dict[str, int]:
        """
        Single sweep.

        Returns counts: {"timed_out": N, "summaries_backfilled": N, "errors": N}
        """
        stats = {"timed_out": 0, "summaries_backfilled": 0, "errors": 0}
        cutoff = self._clock() - timedelta(seconds=self.timeout_s)

        stale = await self.store.list_stale(OPEN_STATUSES, cutoff)
        for record in stale:
            try:
                if await self._expire(record.id, cutoff):
                    stats["timed_out"] += 1
            except CallNotFoundError:
                continue
            except Exception as e:
                logger.error("reaper_timeout_failed", call_id=record.id, error=str(e))
                stats["errors"] += 1

        for record in await self.store.list_missing_summary(TERMINAL_STATUSES):
            try:
                if await self.controller.backfill_summary(record.id):
                    stats["summaries_backfilled"] += 1
            except Exception as e:
                logger.error("reaper_backfill_failed", call_id=record.id, error=str(e))
                stats["errors"] += 1

        if any(stats.values()):
            logger.info("reaper_sweep_complete", **stats)
        return stats

    async def _expire(self, call_id: str, cutoff: datetime) -> bool:
        # A webhook may touch the record between listing and locking
        outcome = await self.controller.terminate(
            call_id, CallStatus.FAILED, timeout_message(self.timeout_s),
            stale_before=cutoff,
        )
        if outcome.applied:
            logger.warning("call_timed_out", call_id=call_id, timeout_s=self.timeout_s)
        return outcome.applied
