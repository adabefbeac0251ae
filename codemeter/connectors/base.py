"""Usage source interface and the boundary decode for loosely shaped payloads.

Source APIs change their field names without notice. Everything fetched is
passed through ``normalize_usage_item`` so only fully typed ``UsageEvent``
objects reach the store.
"""
from __future__ import annotations

import hashlib
import json
import logging
import math
from typing import Any, Optional, Protocol, runtime_checkable

from codemeter.models import EventCost, TokenUsage, UsageEvent

logger = logging.getLogger("codemeter.connectors")

_SECONDS_CUTOFF = 10_000_000_000
_MISSING = object()


@runtime_checkable
class UsageSource(Protocol):
    """A fetchable stream of usage events tagged with a per-source cursor name."""

    source: str

    async def fetch_usage_events(self, start_ms: int, end_ms: int) -> list[UsageEvent]: ...


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _coerce_int(value: Any) -> int:
    number = _to_number(value)
    return int(round(number)) if number is not None else 0


def _coerce_optional_int(value: Any) -> Optional[int]:
    number = _to_number(value)
    return int(round(number)) if number is not None else None


def coerce_timestamp_ms(value: Any) -> Optional[int]:
    """Milliseconds since epoch, or None. Values below 1e10 are taken as seconds."""
    number = _to_number(value)
    if number is None or number <= 0:
        return None
    return int(round(number * 1000)) if number < _SECONDS_CUTOFF else int(round(number))


def _first(item: dict[str, Any], *keys: str, nested: Optional[dict[str, Any]] = None, nested_key: str = "") -> Any:
    if nested is not None and nested.get(nested_key) is not None:
        return nested[nested_key]
    for key in keys:
        value = item.get(key)
        if value is not None:
            return value
    return _MISSING


def _value(found: Any, default: Any = None) -> Any:
    return default if found is _MISSING else found


def stable_event_id(timestamp_ms: int, model: str, tokens: TokenUsage, total_cents: int) -> str:
    content = {
        "timestampMs": timestamp_ms,
        "model": model,
        "tokenUsage": tokens.model_dump(exclude_none=True),
        "totalCents": total_cents,
    }
    encoded = json.dumps(content, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:32]


def normalize_usage_item(item: Any, source: str) -> Optional[UsageEvent]:
    """Decode one raw item into a ``UsageEvent``, or None when it has no usable timestamp."""
    if not isinstance(item, dict):
        return None

    timestamp_ms = coerce_timestamp_ms(
        _value(_first(item, "timestampMs", "timestamp", "createdAtMs", "createdAt", "time"))
    )
    if timestamp_ms is None:
        return None

    model = str(_value(_first(item, "model", "modelName", "llm"), "unknown")) or "unknown"

    token_usage = item.get("tokenUsage") if isinstance(item.get("tokenUsage"), dict) else {}
    tokens = TokenUsage(
        inputTokens=_coerce_int(_value(_first(item, "inputTokens", "promptTokens", nested=token_usage, nested_key="inputTokens"))),
        outputTokens=_coerce_int(_value(_first(item, "outputTokens", "completionTokens", nested=token_usage, nested_key="outputTokens"))),
        cacheReadTokens=_coerce_optional_int(_value(_first(item, "cacheReadTokens", nested=token_usage, nested_key="cacheReadTokens"))),
        cacheWriteTokens=_coerce_optional_int(_value(_first(item, "cacheWriteTokens", nested=token_usage, nested_key="cacheWriteTokens"))),
    )

    cost = item.get("cost") if isinstance(item.get("cost"), dict) else {}
    total_cents = _coerce_int(_value(_first(
        item, "totalCents", "total_cents", "totalCostCents", "costCents", nested=cost, nested_key="totalCents",
    )))
    model_cents = _coerce_int(_value(_first(item, "modelCents", "model_cents", nested=cost, nested_key="modelCents")))
    fee_cents = _coerce_optional_int(_value(_first(
        item, "cursorFeeCents", "cursor_fee_cents", nested=cost, nested_key="cursorFeeCents",
    )))

    raw_id = _value(_first(item, "eventId", "id"))
    event_id = str(raw_id).strip() if raw_id is not None else ""
    if not event_id:
        event_id = stable_event_id(timestamp_ms, model, tokens, total_cents)

    kind = item.get("kind")
    return UsageEvent(
        eventId=event_id,
        timestampMs=timestamp_ms,
        source=source,
        model=model,
        kind=kind if kind in ("included", "usage-based") else None,
        tokenUsage=tokens,
        cost=EventCost(modelCents=model_cents, cursorFeeCents=fee_cents, totalCents=total_cents),
    )


def extract_usage_items(payload: Any) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("usageEvents", "events"):
            if isinstance(payload.get(key), list):
                return payload[key]
    return []


def normalize_usage_payload(payload: Any, source: str) -> list[UsageEvent]:
    """Decode every item of a response, dropping the ones that cannot be typed."""
    items = extract_usage_items(payload)
    events = []
    for item in items:
        event = normalize_usage_item(item, source)
        if event is not None:
            events.append(event)
    rejected = len(items) - len(events)
    if rejected:
        logger.warning("Rejected %d of %d usage item(s) from %s", rejected, len(items), source)
    return events
