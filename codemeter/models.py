"""Pydantic models for the persisted entities and analytics payloads.

Field names are camelCase so that ``model_dump()`` produces the exact keys
written to the on-disk logs.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator

UNATTRIBUTED = "unattributed"


# ── Persisted entities ──────────────────────────────────────────────

class Project(BaseModel):
    projectKey: str
    displayName: str = ""
    gitRemote: Optional[str] = None
    workspacePath: str = ""
    createdAt: int = 0
    lastActiveAt: int = 0


class ProjectSession(BaseModel):
    id: str
    projectKey: str
    workspaceFolders: list[str] = Field(default_factory=list)
    startMs: int
    endMs: Optional[int] = None
    focused: bool = False
    idle: bool = False
    instanceId: str = ""
    ideType: str = "unknown"

    @property
    def is_open(self) -> bool:
        return self.endMs is None

    def is_active_at(self, timestamp_ms: int) -> bool:
        return self.startMs <= timestamp_ms and (self.endMs is None or timestamp_ms <= self.endMs)


class TokenUsage(BaseModel):
    inputTokens: int = 0
    outputTokens: int = 0
    cacheReadTokens: Optional[int] = None
    cacheWriteTokens: Optional[int] = None


class EventCost(BaseModel):
    """Cost in integer minor-currency units (cents)."""

    modelCents: int = 0
    cursorFeeCents: Optional[int] = None
    totalCents: int = 0


class UsageEvent(BaseModel):
    eventId: str
    timestampMs: int
    source: str = "unknown"
    model: str = "unknown"
    kind: Optional[str] = None  # "included" | "usage-based"
    tokenUsage: TokenUsage = Field(default_factory=TokenUsage)
    cost: EventCost = Field(default_factory=EventCost)


class AttributionRecord(BaseModel):
    eventId: str
    projectKey: str = UNATTRIBUTED
    confidence: float = 0.0
    reason: str = ""
    timestampMs: int = 0


class Budget(BaseModel):
    projectKey: str
    monthlyCents: int
    alertThresholds: list[float] = Field(default_factory=list)
    createdAt: int = 0
    updatedAt: int = 0

    @field_validator("alertThresholds")
    @classmethod
    def _sort_thresholds(cls, value: list[float]) -> list[float]:
        return sorted(value)


class SyncState(BaseModel):
    source: str
    lastFetchedMs: int = 0
    lastSyncAtMs: Optional[int] = None
    lastError: Optional[str] = None


# ── Attribution results ─────────────────────────────────────────────

class AttributionResult(BaseModel):
    projectKey: str
    confidence: float
    reason: str
    conflicts: list[ProjectSession] = Field(default_factory=list)

    @property
    def needs_review(self) -> bool:
        return self.projectKey == UNATTRIBUTED or self.confidence < 0.7

    def to_record(self, event: UsageEvent) -> AttributionRecord:
        return AttributionRecord(
            eventId=event.eventId,
            projectKey=self.projectKey,
            confidence=self.confidence,
            reason=self.reason,
            timestampMs=event.timestampMs,
        )


# ── Derived index ───────────────────────────────────────────────────

class DayTotals(BaseModel):
    totalCost: int = 0
    eventCount: int = 0
    confidenceSum: float = 0.0


class CostByProjectByDay(BaseModel):
    version: int = 1
    generatedAtMs: int = 0
    byProjectByDay: dict[str, dict[str, DayTotals]] = Field(default_factory=dict)


# ── Analytics payloads ──────────────────────────────────────────────

class ProjectCostTotal(BaseModel):
    projectKey: str
    totalCents: int = 0
    eventCount: int = 0
    avgConfidence: float = 0.0


class TokenBreakdown(BaseModel):
    inputTokens: int = 0
    outputTokens: int = 0
    cacheReadTokens: int = 0
    cacheWriteTokens: int = 0


class ProjectMetrics(ProjectCostTotal):
    modelBreakdown: dict[str, int] = Field(default_factory=dict)
    tokenBreakdown: TokenBreakdown = Field(default_factory=TokenBreakdown)


class HourlyHeatmap(BaseModel):
    projectKey: str
    hourTotalsCents: list[int] = Field(default_factory=lambda: [0] * 24)


class CostSummary(BaseModel):
    totalCents: int = 0
    eventCount: int = 0


class DailyCost(BaseModel):
    day: str
    totalCents: int = 0
    eventCount: int = 0


class ReviewCandidate(BaseModel):
    event: UsageEvent
    attribution: Optional[AttributionRecord] = None


class BudgetStatus(BaseModel):
    projectKey: str
    displayName: str
    spentCents: int
    monthlyCents: int
    ratio: float
    crossedThreshold: Optional[float] = None
