"""Per-IDE-process wiring of session tracking, periodic sync and compaction."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Sequence

from codemeter import config
from codemeter.budgets import BudgetMonitor, Notify
from codemeter.date_utils import now_ms
from codemeter.db.factory import (
    create_log_store,
    get_project_repository,
    get_session_repository,
    get_sync_state_repository,
)
from codemeter.db.log_store import LogStore
from codemeter.db.maintenance import CompactionScheduler
from codemeter.db.sync_engine import SyncCoordinator
from codemeter.connectors.base import UsageSource
from codemeter.errors import PreconditionError
from codemeter.session_tracker import ProjectSessionTracker, WorkspaceHost

logger = logging.getLogger("codemeter.runtime")


class CodeMeterRuntime:
    def __init__(
        self,
        host: WorkspaceHost,
        sources: Sequence[UsageSource] = (),
        *,
        store: Optional[LogStore] = None,
        ide_type: str = "unknown",
        notify: Optional[Notify] = None,
        sync_interval_minutes: int = config.SYNC_INTERVAL_MINUTES,
        sync_window_ms: int = config.SYNC_WINDOW_MS,
        compact_interval_seconds: float = config.COMPACT_INTERVAL_SECONDS,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store or create_log_store()
        self.sources = list(sources)
        self.notify = notify
        self.sync_interval_seconds = max(60, sync_interval_minutes) * 60
        self.sync_window_ms = sync_window_ms
        self._clock = clock

        self.tracker = ProjectSessionTracker(
            host,
            get_session_repository(self.store),
            get_project_repository(self.store),
            ide_type=ide_type,
            clock=clock,
        )
        self.sync = SyncCoordinator(self.store, clock=clock)
        self.budgets = BudgetMonitor(self.store, clock=clock)
        self.compaction = CompactionScheduler(self.store, compact_interval_seconds)
        self._sync_tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        await self.tracker.start()
        self.tracker.start_idle_poll()
        await self.compaction.start()
        for source in self.sources:
            self._sync_tasks.append(asyncio.create_task(self._sync_loop(source)))
        logger.info("CodeMeter runtime started with %d source(s)", len(self.sources))

    async def stop(self) -> None:
        for task in self._sync_tasks:
            task.cancel()
        for task in self._sync_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._sync_tasks.clear()
        await self.compaction.stop()
        await self.tracker.dispose()
        logger.info("CodeMeter runtime stopped")

    async def sync_now(self, source: UsageSource, trigger: str = "manual") -> dict:
        now = self._clock()
        stats = await self.sync.sync(source, now - self.sync_window_ms, now, trigger=trigger)
        if self.notify is not None:
            await self.budgets.check_budgets(self.notify)
        return stats

    async def _synced_recently(self, source: UsageSource) -> bool:
        state = await get_sync_state_repository(self.store).get(source.source)
        if state is None or not state.lastSyncAtMs:
            return False
        return self._clock() - state.lastSyncAtMs < self.sync_interval_seconds * 1000

    async def _sync_loop(self, source: UsageSource) -> None:
        first = True
        while True:
            try:
                if not (first and await self._synced_recently(source)):
                    await self.sync_now(source, trigger="periodic")
            except asyncio.CancelledError:
                raise
            except PreconditionError as e:
                logger.info(f"Skipping sync for {source.source}: {e}")
            except Exception as e:
                logger.error(f"Periodic sync for {source.source} failed: {e}")
            first = False
            await asyncio.sleep(self.sync_interval_seconds)
