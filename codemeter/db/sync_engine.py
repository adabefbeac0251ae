"""Incremental usage sync: fetch, store and attribute events from one source.

The per-source cursor tracks the newest *observed* event timestamp. Each sync
re-reads a lookback window below it so events that settle late are not lost,
and relies on idempotent upserts by ``eventId`` to absorb the overlap.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from codemeter import config
from codemeter.attribution import AttributionEngine
from codemeter.connectors.base import UsageSource, normalize_usage_item
from codemeter.date_utils import now_ms
from codemeter.db.factory import (
    get_attribution_repository,
    get_event_repository,
    get_session_repository,
    get_sync_state_repository,
)
from codemeter.db.log_store import LogStore
from codemeter.db.repositories.attributions import is_manual
from codemeter.models import UNATTRIBUTED, SyncState, UsageEvent
from codemeter.observability import record_sync, start_span
from codemeter.retry import BackoffConfig, with_backoff

logger = logging.getLogger("codemeter.sync")


def effective_start_ms(requested_start_ms: int, high_water_ms: int, lookback_ms: int) -> int:
    """Fetch start for a sync request.

    With a high-water mark the fetch resumes ``lookback_ms`` below
    ``max(requested_start_ms, high_water_ms)``; without one the request is
    taken as is.
    """
    if high_water_ms <= 0:
        return max(0, requested_start_ms)
    return max(0, max(requested_start_ms, high_water_ms) - max(0, lookback_ms))


class SyncCoordinator:
    def __init__(
        self,
        store: LogStore,
        *,
        engine: Optional[AttributionEngine] = None,
        lookback_ms: int = config.SYNC_LOOKBACK_MS,
        backoff: Optional[BackoffConfig] = None,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.event_repo = get_event_repository(store)
        self.session_repo = get_session_repository(store)
        self.attribution_repo = get_attribution_repository(store)
        self.sync_repo = get_sync_state_repository(store)
        self.engine = engine or AttributionEngine()
        self.lookback_ms = lookback_ms
        self.backoff = backoff or BackoffConfig()
        self._clock = clock
        self._sleep = sleep
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._max_operation_history = 40

    # ── Operations ──────────────────────────────────────────────────

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            return copy.deepcopy(op) if op else None

    async def _start_operation(self, source: str, trigger: str, metadata: dict[str, Any]) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": "sync",
            "source": source,
            "trigger": trigger,
            "status": "running",
            "startedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "stats": {},
            "metadata": metadata,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            if len(self._operation_order) > self._max_operation_history:
                for stale_id in self._operation_order[self._max_operation_history:]:
                    self._operations.pop(stale_id, None)
                self._operation_order = self._operation_order[: self._max_operation_history]
        logger.info("Operation started [%s] sync (source=%s trigger=%s)", op_id, source, trigger)
        return op_id

    async def _finish_operation(
        self,
        operation_id: str,
        *,
        status: str,
        duration_ms: float,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if operation:
                operation["status"] = status
                operation["finishedAt"] = datetime.now(timezone.utc).isoformat()
                operation["durationMs"] = int(duration_ms)
                if stats:
                    operation["stats"].update(stats)
                if error:
                    operation["error"] = error
        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)

    # ── Sync ────────────────────────────────────────────────────────

    async def sync(
        self,
        source: UsageSource,
        start_ms: int,
        end_ms: int,
        trigger: str = "manual",
    ) -> dict[str, Any]:
        """Fetch ``[effective start, end_ms]`` from ``source`` and merge it into the store.

        A failed fetch records the error against the unchanged cursor and
        re-raises. Storage failures propagate without touching the cursor.
        """
        name = source.source
        t0 = time.monotonic()
        state = await self.sync_repo.get(name)
        high_water = state.lastFetchedMs if state else 0
        fetch_start = effective_start_ms(start_ms, high_water, self.lookback_ms)
        op_id = await self._start_operation(
            name, trigger, {"requestedStartMs": start_ms, "startMs": fetch_start, "endMs": end_ms}
        )

        with start_span("codemeter.sync", {"source": name, "start_ms": fetch_start, "end_ms": end_ms}):
            try:
                fetched = await with_backoff(
                    lambda: source.fetch_usage_events(fetch_start, end_ms),
                    self.backoff,
                    label=f"fetch {name}",
                    sleep=self._sleep,
                )
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
                latest = await self.sync_repo.get(name)
                await self.sync_repo.upsert(
                    SyncState(
                        source=name,
                        lastFetchedMs=max(high_water, latest.lastFetchedMs if latest else 0),
                        lastSyncAtMs=latest.lastSyncAtMs if latest else None,
                        lastError=error,
                    )
                )
                await self._fail(op_id, name, t0, error)
                raise

            try:
                stats = await self._ingest(name, fetched or [], high_water)
                latest = await self.sync_repo.get(name)
                # Another process may have advanced the cursor while this sync ran.
                stats["lastFetchedMs"] = max(stats["lastFetchedMs"], latest.lastFetchedMs if latest else 0)
                await self.sync_repo.upsert(
                    SyncState(
                        source=name,
                        lastFetchedMs=stats["lastFetchedMs"],
                        lastSyncAtMs=self._clock(),
                        lastError=None,
                    )
                )
            except Exception as exc:
                await self._fail(op_id, name, t0, str(exc) or exc.__class__.__name__)
                raise

        duration_ms = (time.monotonic() - t0) * 1000
        stats.update({"operationId": op_id, "source": name, "effectiveStartMs": fetch_start})
        await self._finish_operation(op_id, status="completed", duration_ms=duration_ms, stats=stats)
        record_sync(name, "success", stats["fetched"], duration_ms)
        return stats

    async def _fail(self, op_id: str, name: str, t0: float, error: str) -> None:
        duration_ms = (time.monotonic() - t0) * 1000
        await self._finish_operation(op_id, status="failed", duration_ms=duration_ms, error=error)
        record_sync(name, "failed", 0, duration_ms)

    async def _ingest(self, name: str, fetched: list[Any], high_water: int) -> dict[str, Any]:
        sessions = await self.session_repo.get_all()
        known_events = await self.event_repo.get_map()
        current_attributions = await self.attribution_repo.get_map()

        stats = {
            "fetched": 0,
            "rejected": 0,
            "eventsWritten": 0,
            "attributionsWritten": 0,
            "manualPreserved": 0,
            "unattributed": 0,
            "conflicts": 0,
            "lastFetchedMs": high_water,
        }
        for item in fetched:
            event = item if isinstance(item, UsageEvent) else normalize_usage_item(item, name)
            if event is None:
                stats["rejected"] += 1
                continue
            stats["fetched"] += 1
            stats["lastFetchedMs"] = max(stats["lastFetchedMs"], event.timestampMs)

            if known_events.get(event.eventId) != event:
                await self.event_repo.create(event)
                known_events[event.eventId] = event
                stats["eventsWritten"] += 1

            current = current_attributions.get(event.eventId)
            if is_manual(current):
                stats["manualPreserved"] += 1
                continue

            result = self.engine.attribute(event, sessions)
            if result.projectKey == UNATTRIBUTED:
                stats["unattributed"] += 1
            if result.conflicts:
                stats["conflicts"] += 1
            record = result.to_record(event)
            if current != record:
                await self.attribution_repo.create(record)
                current_attributions[event.eventId] = record
                stats["attributionsWritten"] += 1

        if stats["rejected"]:
            logger.warning("Sync %s rejected %d malformed item(s)", name, stats["rejected"])
        return stats
