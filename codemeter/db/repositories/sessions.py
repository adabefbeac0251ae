"""Log-backed ProjectSession repository.

Sessions are written once as a ``create`` intent and then changed only through
``update`` intents carrying a partial patch.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from codemeter.db.log_store import LogStore
from codemeter.db.reducers import SESSIONS, entities, session_create_record, session_update_record
from codemeter.db.repositories.base import dump_entity, parse_entities
from codemeter.models import ProjectSession

logger = logging.getLogger("codemeter.db.sessions")


class SessionRepository:
    def __init__(self, store: LogStore):
        self.store = store

    async def create(self, session: ProjectSession) -> None:
        await self.store.append(SESSIONS, session_create_record(dump_entity(session)))

    async def update(self, session_id: str, patch: dict[str, Any]) -> None:
        await self.store.append(SESSIONS, session_update_record(session_id, patch))

    async def update_end_time(self, session_id: str, end_ms: int) -> None:
        await self.update(session_id, {"endMs": end_ms})

    async def update_flags(self, session_id: str, focused: bool, idle: bool) -> None:
        await self.update(session_id, {"focused": focused, "idle": idle})

    async def get_all(self) -> list[ProjectSession]:
        records = await self.store.read_current(SESSIONS)
        return parse_entities(ProjectSession, entities(records, "session"))

    async def get_by_id(self, session_id: str) -> Optional[ProjectSession]:
        for session in await self.get_all():
            if session.id == session_id:
                return session
        return None

    async def get_open_sessions(self, instance_id: str | None = None) -> list[ProjectSession]:
        return [
            s for s in await self.get_all()
            if s.is_open and (instance_id is None or s.instanceId == instance_id)
        ]

    async def get_active_sessions(self, at_timestamp_ms: int) -> list[ProjectSession]:
        """Sessions covering ``at_timestamp_ms``, most recently started first."""
        return active_sessions_at(await self.get_all(), at_timestamp_ms)

    async def close_stale_sessions(
        self,
        now_ms: int,
        max_open_ms: int,
        exclude_instance_id: str | None = None,
    ) -> int:
        """Close open sessions older than ``max_open_ms`` left behind by crashed instances.

        The session is closed at ``startMs + max_open_ms`` so the sweep never
        claims time after the cutoff.
        """
        closed = 0
        for session in await self.get_open_sessions():
            if exclude_instance_id and session.instanceId == exclude_instance_id:
                continue
            if now_ms - session.startMs <= max_open_ms:
                continue
            await self.update_end_time(session.id, session.startMs + max_open_ms)
            closed += 1
        if closed:
            logger.info("Closed %d stale session(s)", closed)
        return closed


def active_sessions_at(sessions: list[ProjectSession], timestamp_ms: int) -> list[ProjectSession]:
    active = [s for s in sessions if s.is_active_at(timestamp_ms)]
    return sorted(active, key=lambda s: (-s.startMs, s.id))
