"""Log-backed AttributionRecord repository.

The current attribution for an event is the last one appended for its
``eventId``.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from codemeter.date_utils import now_ms
from codemeter.db.log_store import LogStore
from codemeter.db.reducers import ATTRIBUTIONS, entities, upsert_record
from codemeter.db.repositories.base import dump_entity, parse_entities
from codemeter.models import AttributionRecord

logger = logging.getLogger("codemeter.db.attributions")

MANUAL_REASON = "manual reassignment"


def is_manual(record: Optional[AttributionRecord]) -> bool:
    return record is not None and record.reason == MANUAL_REASON


class AttributionRepository:
    def __init__(self, store: LogStore):
        self.store = store

    async def create(self, attribution: AttributionRecord) -> None:
        await self.store.append(ATTRIBUTIONS, upsert_record("attribution", dump_entity(attribution)))

    async def get_all(self) -> list[AttributionRecord]:
        records = await self.store.read_current(ATTRIBUTIONS)
        return parse_entities(AttributionRecord, entities(records, "attribution"))

    async def get_map(self) -> dict[str, AttributionRecord]:
        return {a.eventId: a for a in await self.get_all()}

    async def get_by_event_id(self, event_id: str) -> Optional[AttributionRecord]:
        return (await self.get_map()).get(event_id)

    async def get_by_project_key(self, project_key: str) -> list[AttributionRecord]:
        matches = [a for a in await self.get_all() if a.projectKey == project_key]
        return sorted(matches, key=lambda a: a.timestampMs, reverse=True)

    async def reassign(
        self,
        event_ids: Iterable[str],
        project_key: str,
        at_ms: int | None = None,
    ) -> list[AttributionRecord]:
        """Manually assign events to a project. Syncs never override these."""
        stamp = at_ms if at_ms is not None else now_ms()
        written = []
        for event_id in event_ids:
            record = AttributionRecord(
                eventId=event_id,
                projectKey=project_key,
                confidence=1.0,
                reason=MANUAL_REASON,
                timestampMs=stamp,
            )
            await self.create(record)
            written.append(record)
        logger.info("Manually reassigned %d event(s) to %s", len(written), project_key)
        return written
