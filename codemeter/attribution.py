"""Attribution engine: decide which project owns a usage event.

The decision only looks at the sessions covering the event timestamp. A focused,
non-idle session is the strongest signal; overlapping candidates are resolved
to the first session in input order so re-running attribution is stable.
"""
from __future__ import annotations

import logging
from typing import Iterable

from codemeter import config
from codemeter.models import UNATTRIBUTED, AttributionResult, ProjectSession, UsageEvent
from codemeter.observability import record_attribution

logger = logging.getLogger("codemeter.attribution")

REASON_NO_SESSIONS = "no active sessions"
REASON_FOCUSED_ACTIVE = "single focused, non-idle session"
REASON_FOCUSED = "single focused session"
REASON_SINGLE_ACTIVE = "single active session"
REASON_MULTI_FOCUSED = "multiple focused sessions"
REASON_MULTI_ACTIVE = "multiple active sessions"


def find_active_sessions(timestamp_ms: int, sessions: Iterable[ProjectSession]) -> list[ProjectSession]:
    """Sessions with ``startMs <= timestamp_ms <= endMs`` (open sessions never end), in input order."""
    return [s for s in sessions if s.is_active_at(timestamp_ms)]


class AttributionEngine:
    def __init__(self, min_conflict_confidence: float = config.MIN_CONFLICT_CONFIDENCE):
        self.min_conflict_confidence = max(0.0, float(min_conflict_confidence))

    def attribute(self, event: UsageEvent, sessions: Iterable[ProjectSession]) -> AttributionResult:
        result = self._decide(event, find_active_sessions(event.timestampMs, sessions))
        record_attribution(result.confidence)
        return result

    def _decide(self, event: UsageEvent, active: list[ProjectSession]) -> AttributionResult:
        if not active:
            return AttributionResult(projectKey=UNATTRIBUTED, confidence=0.0, reason=REASON_NO_SESSIONS)

        focused = [s for s in active if s.focused]
        focused_active = [s for s in focused if not s.idle]

        if len(focused_active) == 1:
            return self._single(focused_active[0], 1.0, REASON_FOCUSED_ACTIVE)
        if len(focused) == 1:
            return self._single(focused[0], 0.9, REASON_FOCUSED)
        if len(active) == 1:
            return self._single(active[0], 0.7, REASON_SINGLE_ACTIVE)
        if len(focused) > 1:
            return self._conflict(event, focused, REASON_MULTI_FOCUSED)
        return self._conflict(event, active, REASON_MULTI_ACTIVE)

    @staticmethod
    def _single(session: ProjectSession, confidence: float, reason: str) -> AttributionResult:
        return AttributionResult(projectKey=session.projectKey, confidence=confidence, reason=reason)

    def _conflict(self, event: UsageEvent, conflicts: list[ProjectSession], reason: str) -> AttributionResult:
        confidence = 0.5 / len(conflicts)
        if confidence < self.min_conflict_confidence:
            logger.debug(
                "Event %s left unattributed: %d-way conflict below floor %.3f",
                event.eventId, len(conflicts), self.min_conflict_confidence,
            )
            return AttributionResult(
                projectKey=UNATTRIBUTED,
                confidence=0.0,
                reason=f"{reason} - below confidence floor",
                conflicts=conflicts,
            )
        return AttributionResult(
            projectKey=conflicts[0].projectKey,
            confidence=confidence,
            reason=f"{reason} - using primary session",
            conflicts=conflicts,
        )
