"""Read-only analytics over events joined with their current attribution."""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Optional

from codemeter import config
from codemeter.date_utils import day_key, hour_of_day, is_day_aligned_range
from codemeter.db.derived import COST_BY_PROJECT_BY_DAY, parse_cost_index
from codemeter.db.log_store import LogStore
from codemeter.db.reducers import ATTRIBUTIONS, EVENTS
from codemeter.db.repositories.attributions import AttributionRepository
from codemeter.db.repositories.events import EventRepository
from codemeter.models import (
    UNATTRIBUTED,
    AttributionRecord,
    CostByProjectByDay,
    CostSummary,
    DailyCost,
    HourlyHeatmap,
    ProjectCostTotal,
    ProjectMetrics,
    ReviewCandidate,
    UsageEvent,
)

logger = logging.getLogger("codemeter.analytics")

Joined = list[tuple[UsageEvent, Optional[AttributionRecord]]]


def _project_of(attribution: Optional[AttributionRecord]) -> str:
    return attribution.projectKey if attribution and attribution.projectKey else UNATTRIBUTED


def _confidence_of(attribution: Optional[AttributionRecord]) -> float:
    return attribution.confidence if attribution else 0.0


class AnalyticsRepository:
    def __init__(self, store: LogStore):
        self.store = store
        self.events = EventRepository(store)
        self.attributions = AttributionRepository(store)

    async def _joined(self, start_ms: int, end_ms: int) -> Joined:
        events = await self.events.get_by_time_range(start_ms, end_ms)
        attributions = await self.attributions.get_map()
        return [(event, attributions.get(event.eventId)) for event in events]

    async def _fresh_index(self, start_ms: int, end_ms: int) -> Optional[CostByProjectByDay]:
        if not is_day_aligned_range(start_ms, end_ms):
            return None
        payload = await self.store.read_derived(COST_BY_PROJECT_BY_DAY, fresh_for=(EVENTS, ATTRIBUTIONS))
        index = parse_cost_index(payload)
        if index is not None:
            logger.debug("Serving totals from %s", COST_BY_PROJECT_BY_DAY)
        return index

    async def get_cost_totals_by_project(self, start_ms: int, end_ms: int) -> list[ProjectCostTotal]:
        """Per-project cost, event count and mean confidence, highest cost first."""
        totals: dict[str, ProjectCostTotal] = {}
        confidence_sums: dict[str, float] = defaultdict(float)

        index = await self._fresh_index(start_ms, end_ms)
        if index is not None:
            first_day, last_day = day_key(start_ms), day_key(end_ms)
            for project_key, days in index.byProjectByDay.items():
                for day, day_totals in days.items():
                    if not first_day <= day <= last_day:
                        continue
                    total = totals.setdefault(project_key, ProjectCostTotal(projectKey=project_key))
                    total.totalCents += day_totals.totalCost
                    total.eventCount += day_totals.eventCount
                    confidence_sums[project_key] += day_totals.confidenceSum
        else:
            for event, attribution in await self._joined(start_ms, end_ms):
                project_key = _project_of(attribution)
                total = totals.setdefault(project_key, ProjectCostTotal(projectKey=project_key))
                total.totalCents += event.cost.totalCents
                total.eventCount += 1
                confidence_sums[project_key] += _confidence_of(attribution)

        for project_key, total in totals.items():
            if total.eventCount:
                total.avgConfidence = confidence_sums[project_key] / total.eventCount
        return sorted(totals.values(), key=lambda t: (-t.totalCents, t.projectKey))

    async def get_project_metrics(self, project_key: str, start_ms: int, end_ms: int) -> ProjectMetrics:
        metrics = ProjectMetrics(projectKey=project_key)
        confidence_sum = 0.0
        for event, attribution in await self._joined(start_ms, end_ms):
            if _project_of(attribution) != project_key:
                continue
            metrics.totalCents += event.cost.totalCents
            metrics.eventCount += 1
            confidence_sum += _confidence_of(attribution)
            metrics.modelBreakdown[event.model] = metrics.modelBreakdown.get(event.model, 0) + event.cost.totalCents
            tokens = metrics.tokenBreakdown
            tokens.inputTokens += event.tokenUsage.inputTokens
            tokens.outputTokens += event.tokenUsage.outputTokens
            tokens.cacheReadTokens += event.tokenUsage.cacheReadTokens or 0
            tokens.cacheWriteTokens += event.tokenUsage.cacheWriteTokens or 0
        if metrics.eventCount:
            metrics.avgConfidence = confidence_sum / metrics.eventCount
        return metrics

    async def get_hourly_heatmap(
        self,
        start_ms: int,
        end_ms: int,
        utc_offset_minutes: int = 0,
    ) -> list[HourlyHeatmap]:
        """Cost per hour of day for each project. Hours are UTC unless an offset is given."""
        heatmaps: dict[str, HourlyHeatmap] = {}
        for event, attribution in await self._joined(start_ms, end_ms):
            project_key = _project_of(attribution)
            heatmap = heatmaps.setdefault(project_key, HourlyHeatmap(projectKey=project_key))
            heatmap.hourTotalsCents[hour_of_day(event.timestampMs, utc_offset_minutes)] += event.cost.totalCents
        return sorted(heatmaps.values(), key=lambda h: h.projectKey)

    async def get_unattributed_summary(self, start_ms: int, end_ms: int) -> CostSummary:
        summary = CostSummary()
        for event, attribution in await self._joined(start_ms, end_ms):
            if _project_of(attribution) == UNATTRIBUTED:
                summary.totalCents += event.cost.totalCents
                summary.eventCount += 1
        return summary

    async def get_conflict_summary(self, start_ms: int, end_ms: int) -> CostSummary:
        """Low-confidence attributions that still name a project."""
        summary = CostSummary()
        for event, attribution in await self._joined(start_ms, end_ms):
            if attribution is None or attribution.projectKey == UNATTRIBUTED:
                continue
            if attribution.confidence < config.REVIEW_CONFIDENCE_THRESHOLD:
                summary.totalCents += event.cost.totalCents
                summary.eventCount += 1
        return summary

    async def get_daily_costs(
        self,
        start_ms: int,
        end_ms: int,
        project_key: str | None = None,
    ) -> list[DailyCost]:
        days: dict[str, DailyCost] = {}
        index = await self._fresh_index(start_ms, end_ms)
        if index is not None:
            first_day, last_day = day_key(start_ms), day_key(end_ms)
            for key, by_day in index.byProjectByDay.items():
                if project_key is not None and key != project_key:
                    continue
                for day, day_totals in by_day.items():
                    if not first_day <= day <= last_day:
                        continue
                    daily = days.setdefault(day, DailyCost(day=day))
                    daily.totalCents += day_totals.totalCost
                    daily.eventCount += day_totals.eventCount
        else:
            for event, attribution in await self._joined(start_ms, end_ms):
                if project_key is not None and _project_of(attribution) != project_key:
                    continue
                day = day_key(event.timestampMs)
                daily = days.setdefault(day, DailyCost(day=day))
                daily.totalCents += event.cost.totalCents
                daily.eventCount += 1
        return [days[d] for d in sorted(days)]

    async def get_review_candidates(
        self,
        limit: int = 200,
        start_ms: int = 0,
        end_ms: int | None = None,
    ) -> list[ReviewCandidate]:
        """Events whose attribution is missing, unattributed or low confidence, newest first."""
        if end_ms is None:
            end_ms = 2**63 - 1
        candidates = []
        for event, attribution in await self._joined(start_ms, end_ms):
            if (
                attribution is None
                or attribution.projectKey == UNATTRIBUTED
                or attribution.confidence < config.REVIEW_CONFIDENCE_THRESHOLD
            ):
                candidates.append(ReviewCandidate(event=event, attribution=attribution))
                if len(candidates) >= max(1, limit):
                    break
        return candidates
