"""Per-kind merge rules for log records.

Each reducer turns a raw record sequence (append order) into the canonical
record list for that kind. Repositories apply them at read time and the
compactor applies them eagerly, so both always agree on the "current" state.
"""
from __future__ import annotations

import logging
from functools import partial
from typing import Any, Callable, Iterable

logger = logging.getLogger("codemeter.store")

PROJECTS = "projects"
SESSIONS = "sessions"
EVENTS = "events"
ATTRIBUTIONS = "attributions"
BUDGETS = "budgets"
SYNC_STATE = "sync_state"

ALL_KINDS = (PROJECTS, SESSIONS, EVENTS, ATTRIBUTIONS, BUDGETS, SYNC_STATE)

Reducer = Callable[[Iterable[Any]], list[dict]]


def _order_value(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def upsert_record(envelope: str, entity: dict) -> dict:
    return {"type": "upsert", envelope: entity}


def session_create_record(session: dict) -> dict:
    return {"type": "create", "session": session}


def session_update_record(session_id: str, patch: dict) -> dict:
    return {"type": "update", "sessionId": session_id, "patch": patch}


def entities(records: Iterable[dict], envelope: str) -> list[dict]:
    return [r[envelope] for r in records if isinstance(r.get(envelope), dict)]


def reduce_latest_by_key(
    records: Iterable[Any],
    *,
    envelope: str,
    key_field: str,
    order_field: str | None = None,
) -> list[dict]:
    """Keep one upsert per key.

    Without ``order_field`` the last record in append order wins. With it, the
    record carrying the greatest value wins and ties go to the later record.
    """
    latest: dict[str, dict] = {}
    for record in records:
        if not isinstance(record, dict) or record.get("type") != "upsert":
            continue
        entity = record.get(envelope)
        if not isinstance(entity, dict):
            continue
        key = entity.get(key_field)
        if not isinstance(key, str) or not key:
            continue
        prev = latest.get(key)
        if (
            prev is None
            or order_field is None
            or _order_value(entity.get(order_field)) >= _order_value(prev[envelope].get(order_field))
        ):
            latest[key] = upsert_record(envelope, entity)
    return list(latest.values())


def reduce_sessions(records: Iterable[Any]) -> list[dict]:
    """Replay ``create`` intents and fold ``update`` patches in append order.

    Patches that arrive before their create (possible when processes
    interleave) are held back and applied once the create is seen.
    """
    sessions: dict[str, dict] = {}
    pending: dict[str, list[dict]] = {}
    for record in records:
        if not isinstance(record, dict):
            continue
        kind = record.get("type")
        if kind == "create":
            session = record.get("session")
            if not isinstance(session, dict):
                continue
            session_id = session.get("id")
            if not isinstance(session_id, str) or not session_id:
                continue
            merged = dict(session)
            for patch in pending.pop(session_id, []):
                merged.update(patch)
            sessions[session_id] = merged
        elif kind == "update":
            session_id = record.get("sessionId")
            patch = record.get("patch")
            if not isinstance(session_id, str) or not isinstance(patch, dict):
                continue
            patch = {k: v for k, v in patch.items() if k != "id"}
            if session_id in sessions:
                sessions[session_id] = {**sessions[session_id], **patch}
            else:
                pending.setdefault(session_id, []).append(patch)
    if pending:
        logger.debug("Dropping patches for %d unknown sessions", len(pending))
    return [session_create_record(s) for s in sessions.values()]


DEFAULT_REDUCERS: dict[str, Reducer] = {
    PROJECTS: partial(reduce_latest_by_key, envelope="project", key_field="projectKey", order_field="lastActiveAt"),
    SESSIONS: reduce_sessions,
    EVENTS: partial(reduce_latest_by_key, envelope="event", key_field="eventId"),
    ATTRIBUTIONS: partial(reduce_latest_by_key, envelope="attribution", key_field="eventId"),
    BUDGETS: partial(reduce_latest_by_key, envelope="budget", key_field="projectKey", order_field="updatedAt"),
    SYNC_STATE: partial(reduce_latest_by_key, envelope="state", key_field="source", order_field="lastFetchedMs"),
}
