"""Observability helpers."""

from codemeter.observability.otel import (
    confidence_tier,
    initialize,
    shutdown,
    start_span,
    record_sync,
    record_compaction,
    record_attribution,
)

__all__ = [
    "confidence_tier",
    "initialize",
    "shutdown",
    "start_span",
    "record_sync",
    "record_compaction",
    "record_attribution",
]
