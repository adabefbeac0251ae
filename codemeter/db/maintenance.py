"""Background compaction of the log store."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from codemeter import config
from codemeter.db.log_store import LogStore

logger = logging.getLogger("codemeter.maintenance")


class CompactionScheduler:
    """Runs ``compact_all`` on a fixed interval in a background task."""

    def __init__(self, store: LogStore, interval_seconds: float = config.COMPACT_INTERVAL_SECONDS):
        self.store = store
        self.interval_seconds = max(1.0, float(interval_seconds))
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self) -> None:
        if self._running:
            logger.warning("Compaction scheduler already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Compaction scheduler started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Compaction scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self) -> dict[str, bool]:
        results = await self.store.compact_all()
        skipped = [kind for kind, done in results.items() if not done]
        if skipped:
            logger.info("Compaction skipped for %s (lock held elsewhere)", ", ".join(skipped))
        return results

    async def _loop(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self.interval_seconds)
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error(f"Periodic compaction failed: {e}")
        except asyncio.CancelledError:
            logger.info("Compaction task cancelled")
        finally:
            self._running = False
