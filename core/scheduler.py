"""
Wake Scheduler — re-enters suspended sessions without holding a worker.

A suspended session stores its wake condition (delay ``wake_at`` or webhook
``deadline``) on itself. The scheduler keeps one cancellable asyncio timer
per session pointing at that instant, plus a periodic loop that:

    → fires anything due that a timer missed (restart, clock skew)
    → expires webhook waits past their deadline
    → closes sessions idle past the inactivity window

Runs as a background task inside the FastAPI lifespan.

Timers are only hints: the orchestrator re-reads the session under its lock,
so a timer firing for a closed or already-advanced session does nothing.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Optional

from models.schemas import utcnow

logger = structlog.get_logger()


class WakeScheduler:
    """
    Per-session timers plus the periodic due/sweep loop.

    Configure the loop interval in settings:
        engine:
          sweep_interval_seconds: 30
    """

    def __init__(self, orchestrator, interval_s: float = 30.0):
        self.orchestrator = orchestrator
        self.interval_s = interval_s
        self._timers: dict[str, asyncio.Task] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._timers)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._timers

    # ── Timers ────────────────────────────────────────────────

    def schedule(self, session_id: str, due_at: datetime) -> None:
        """Arm (or re-arm) the session's timer for ``due_at``."""
        self.cancel(session_id)
        self._timers[session_id] = asyncio.create_task(
            self._fire_at(session_id, due_at), name=f"wake:{session_id}"
        )
        logger.debug("wake_scheduled", session_id=session_id, due_at=due_at.isoformat())

    def cancel(self, session_id: str) -> None:
        task = self._timers.pop(session_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            logger.debug("wake_cancelled", session_id=session_id)

    async def _fire_at(self, session_id: str, due_at: datetime) -> None:
        delay = (due_at - utcnow()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        # Drop our own entry first; the wake may re-arm a new timer
        if self._timers.get(session_id) is asyncio.current_task():
            del self._timers[session_id]
        try:
            await self.orchestrator.wake(session_id)
        except Exception as e:
            logger.error("wake_failed", session_id=session_id, error=str(e))

    # ── Periodic loop ─────────────────────────────────────────

    async def start(self) -> None:
        """Restore timers from the store and start the periodic loop."""
        self._running = True
        await self.orchestrator.restore_timers()
        self._task = asyncio.create_task(self._loop(), name="wake_scheduler")
        logger.info("wake_scheduler_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        for session_id in list(self._timers):
            self.cancel(session_id)
        logger.info("wake_scheduler_stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("scheduler_tick_error", error=str(e))

            await asyncio.sleep(self.interval_s)

    async def tick(self, now: Optional[datetime] = None) -> dict[str, int]:
        """One pass: due wakes, then the inactivity sweep."""
        now = now or utcnow()
        woken = await self.orchestrator.run_due(now)
        dropped = await self.orchestrator.sweep(now)
        if woken or dropped:
            logger.info("scheduler_tick", woken=len(woken), dropped=len(dropped))
        return {"woken": len(woken), "dropped": len(dropped)}
