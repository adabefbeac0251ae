"""Track per-source sync cursors for incremental fetching."""
from __future__ import annotations

from typing import Optional

from codemeter.db.log_store import LogStore
from codemeter.db.reducers import SYNC_STATE, entities, upsert_record
from codemeter.db.repositories.base import dump_entity, parse_entities
from codemeter.models import SyncState


class SyncStateRepository:
    def __init__(self, store: LogStore):
        self.store = store

    async def upsert(self, state: SyncState) -> None:
        await self.store.append(SYNC_STATE, upsert_record("state", dump_entity(state)))

    async def list_all(self) -> list[SyncState]:
        records = await self.store.read_current(SYNC_STATE)
        return parse_entities(SyncState, entities(records, "state"))

    async def get(self, source: str) -> Optional[SyncState]:
        for state in await self.list_all():
            if state.source == source:
                return state
        return None
