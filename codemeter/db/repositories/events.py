"""Log-backed UsageEvent repository. Upserts are idempotent by ``eventId``."""
from __future__ import annotations

from typing import Optional

from codemeter.db.log_store import LogStore
from codemeter.db.reducers import EVENTS, entities, upsert_record
from codemeter.db.repositories.base import dump_entity, parse_entities
from codemeter.models import UsageEvent


class EventRepository:
    def __init__(self, store: LogStore):
        self.store = store

    async def create(self, event: UsageEvent) -> None:
        await self.store.append(EVENTS, upsert_record("event", dump_entity(event)))

    async def get_all(self) -> list[UsageEvent]:
        records = await self.store.read_current(EVENTS)
        return parse_entities(UsageEvent, entities(records, "event"))

    async def get_map(self) -> dict[str, UsageEvent]:
        return {e.eventId: e for e in await self.get_all()}

    async def get_by_id(self, event_id: str) -> Optional[UsageEvent]:
        return (await self.get_map()).get(event_id)

    async def get_by_time_range(self, start_ms: int, end_ms: int) -> list[UsageEvent]:
        """Events with ``start_ms <= timestampMs <= end_ms``, newest first."""
        events = [e for e in await self.get_all() if start_ms <= e.timestampMs <= end_ms]
        return sorted(events, key=lambda e: e.timestampMs, reverse=True)
