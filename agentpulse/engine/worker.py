"""Background task that drives engine ticks on the adaptive interval."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from agentpulse.engine.aggregator import ActivityEngine, TickResult
from agentpulse.engine.broadcast import ActivityBroadcaster

logger = logging.getLogger("agentpulse.worker")


class ActivityWorker:
    """Runs ``engine.tick()`` in a thread, one tick at a time.

    Sleeps for the engine's current poll interval between ticks; ``poll_now``
    runs an extra tick on demand. Changed progress and sessions are published to the
    broadcaster from the event loop.
    """

    def __init__(self, engine: ActivityEngine, broadcaster: Optional[ActivityBroadcaster] = None):
        self.engine = engine
        self.broadcaster = broadcaster
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._tick_lock: Optional[asyncio.Lock] = None

    async def start(self) -> None:
        if self._running:
            logger.warning("Activity worker already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Activity worker started (progress=%s, sessions=%s)",
                    self.engine.settings.progress_file, self.engine.settings.sessions_dir)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Activity worker stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def _lock(self) -> asyncio.Lock:
        if self._tick_lock is None:
            self._tick_lock = asyncio.Lock()
        return self._tick_lock

    async def run_once(self) -> TickResult:
        """Run a single tick and publish what changed."""
        async with self._lock():
            result = await asyncio.to_thread(self.engine.tick)
        self._publish(result)
        return result

    async def poll_now(self) -> TickResult:
        """Tick immediately, outside the regular schedule."""
        return await self.run_once()

    def _publish(self, result: TickResult) -> None:
        if self.broadcaster is None:
            return
        if result.progress:
            self.broadcaster.publish(
                "progress",
                {"progress": [event.model_dump(mode="json") for event in result.progress]},
            )
        if result.sessions is not None:
            self.broadcaster.publish(
                "sessions",
                {"sessions": [session.model_dump(mode="json") for session in result.sessions]},
            )

    async def _loop(self) -> None:
        try:
            while self._running:
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error(f"Activity tick failed: {e}")
                await asyncio.sleep(self.engine.poll_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Activity worker task cancelled")
        finally:
            self._running = False
