"""Derived per-project, per-day cost index.

The index is a pure function of the events and attributions logs. It is
rebuilt after those kinds are compacted and is safe to delete at any time.
"""
from __future__ import annotations

from typing import Iterable, Optional

from pydantic import ValidationError

from codemeter.date_utils import day_key
from codemeter.models import UNATTRIBUTED, CostByProjectByDay

COST_BY_PROJECT_BY_DAY = "index.cost_by_project_by_day"
INDEX_VERSION = 1


def _to_int(value) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _to_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def build_cost_by_project_by_day(
    events: Iterable[dict],
    attributions: Iterable[dict],
    generated_at_ms: int,
) -> dict:
    """Join each event with its current attribution and roll up by UTC day."""
    attribution_by_event: dict[str, dict] = {}
    for attribution in attributions:
        event_id = attribution.get("eventId")
        if event_id:
            attribution_by_event[event_id] = attribution

    by_project_by_day: dict[str, dict[str, dict]] = {}
    for event in events:
        event_id = event.get("eventId")
        timestamp_ms = _to_int(event.get("timestampMs"))
        if not event_id or timestamp_ms <= 0:
            continue
        attribution = attribution_by_event.get(event_id) or {}
        project_key = attribution.get("projectKey") or UNATTRIBUTED
        cost = event.get("cost") if isinstance(event.get("cost"), dict) else {}

        day = by_project_by_day.setdefault(project_key, {}).setdefault(
            day_key(timestamp_ms),
            {"totalCost": 0, "eventCount": 0, "confidenceSum": 0.0},
        )
        day["totalCost"] += _to_int(cost.get("totalCents"))
        day["eventCount"] += 1
        day["confidenceSum"] += _to_float(attribution.get("confidence"))

    return {
        "version": INDEX_VERSION,
        "generatedAtMs": generated_at_ms,
        "byProjectByDay": by_project_by_day,
    }


def parse_cost_index(payload: Optional[dict]) -> Optional[CostByProjectByDay]:
    if not isinstance(payload, dict) or payload.get("version") != INDEX_VERSION:
        return None
    try:
        return CostByProjectByDay.model_validate(payload)
    except ValidationError:
        return None
