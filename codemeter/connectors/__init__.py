"""Usage-source connectors."""

from codemeter.connectors.base import (
    UsageSource,
    coerce_timestamp_ms,
    extract_usage_items,
    normalize_usage_item,
    normalize_usage_payload,
)

__all__ = [
    "UsageSource",
    "coerce_timestamp_ms",
    "extract_usage_items",
    "normalize_usage_item",
    "normalize_usage_payload",
]
