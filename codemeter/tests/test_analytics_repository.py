import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from codemeter.date_utils import DAY_MS, day_key
from codemeter.db.log_store import LogStore
from codemeter.db.reducers import EVENTS
from codemeter.db.repositories.analytics import AnalyticsRepository
from codemeter.db.repositories.attributions import AttributionRepository
from codemeter.db.repositories.events import EventRepository
from codemeter.models import AttributionRecord, EventCost, TokenUsage, UsageEvent

HOUR_MS = 60 * 60 * 1000
BASE = 100 * DAY_MS


def _event(event_id: str, ts: int, cents: int, model: str = "m1") -> UsageEvent:
    return UsageEvent(
        eventId=event_id,
        timestampMs=ts,
        model=model,
        tokenUsage=TokenUsage(inputTokens=10, outputTokens=5, cacheReadTokens=2),
        cost=EventCost(modelCents=cents, totalCents=cents),
    )


class AnalyticsRepositoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = LogStore(Path(self._tmp.name))
        self.repo = AnalyticsRepository(self.store)
        events = EventRepository(self.store)
        attributions = AttributionRepository(self.store)

        rows = [
            (_event("e1", BASE + 1 * HOUR_MS, 100, "m1"), ("p1", 1.0)),
            (_event("e2", BASE + 2 * HOUR_MS, 50, "m2"), ("p1", 0.5)),
            (_event("e3", BASE + 3 * HOUR_MS, 30), ("unattributed", 0.0)),
            (_event("e4", BASE + 4 * HOUR_MS, 20), None),
            (_event("e5", BASE + DAY_MS + HOUR_MS, 7), ("p2", 0.9)),
        ]
        for event, attribution in rows:
            await events.create(event)
            if attribution:
                project_key, confidence = attribution
                await attributions.create(
                    AttributionRecord(
                        eventId=event.eventId,
                        projectKey=project_key,
                        confidence=confidence,
                        reason="test",
                        timestampMs=event.timestampMs,
                    )
                )
        self.start = BASE
        self.end = BASE + 2 * DAY_MS - 1

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_cost_totals_by_project(self) -> None:
        totals = await self.repo.get_cost_totals_by_project(self.start, self.end)

        self.assertEqual(
            [(t.projectKey, t.totalCents, t.eventCount) for t in totals],
            [("p1", 150, 2), ("unattributed", 50, 2), ("p2", 7, 1)],
        )
        self.assertAlmostEqual(totals[0].avgConfidence, 0.75)

    async def test_totals_respect_time_range(self) -> None:
        totals = await self.repo.get_cost_totals_by_project(BASE, BASE + 2 * HOUR_MS)

        self.assertEqual([(t.projectKey, t.totalCents) for t in totals], [("p1", 150)])

    async def test_totals_served_from_fresh_index(self) -> None:
        scanned = await self.repo.get_cost_totals_by_project(self.start, self.end)
        await self.store.compact(EVENTS)

        with patch.object(self.repo, "_joined", side_effect=AssertionError("index not used")):
            indexed = await self.repo.get_cost_totals_by_project(self.start, self.end)

        self.assertEqual([t.model_dump() for t in indexed], [t.model_dump() for t in scanned])

    async def test_partial_day_range_does_not_use_index(self) -> None:
        await self.store.compact(EVENTS)

        with patch.object(self.store, "read_derived", side_effect=AssertionError("index used")):
            totals = await self.repo.get_cost_totals_by_project(BASE, BASE + 2 * HOUR_MS)

        self.assertEqual(totals[0].totalCents, 150)

    async def test_project_metrics(self) -> None:
        metrics = await self.repo.get_project_metrics("p1", self.start, self.end)

        self.assertEqual(metrics.totalCents, 150)
        self.assertEqual(metrics.eventCount, 2)
        self.assertEqual(metrics.modelBreakdown, {"m1": 100, "m2": 50})
        self.assertEqual(metrics.tokenBreakdown.inputTokens, 20)
        self.assertEqual(metrics.tokenBreakdown.outputTokens, 10)
        self.assertEqual(metrics.tokenBreakdown.cacheReadTokens, 4)
        self.assertEqual(metrics.tokenBreakdown.cacheWriteTokens, 0)

    async def test_hourly_heatmap_utc_and_offset(self) -> None:
        utc = {h.projectKey: h for h in await self.repo.get_hourly_heatmap(self.start, self.end)}
        self.assertEqual(utc["p1"].hourTotalsCents[1], 100)
        self.assertEqual(utc["p1"].hourTotalsCents[2], 50)
        self.assertEqual(len(utc["p1"].hourTotalsCents), 24)

        shifted = {h.projectKey: h for h in await self.repo.get_hourly_heatmap(self.start, self.end, 60)}
        self.assertEqual(shifted["p1"].hourTotalsCents[2], 100)
        self.assertEqual(shifted["p1"].hourTotalsCents[3], 50)

    async def test_unattributed_summary_includes_missing_attributions(self) -> None:
        summary = await self.repo.get_unattributed_summary(self.start, self.end)

        self.assertEqual((summary.totalCents, summary.eventCount), (50, 2))

    async def test_conflict_summary(self) -> None:
        summary = await self.repo.get_conflict_summary(self.start, self.end)

        self.assertEqual((summary.totalCents, summary.eventCount), (50, 1))

    async def test_daily_costs(self) -> None:
        days = await self.repo.get_daily_costs(self.start, self.end)
        self.assertEqual(
            [(d.day, d.totalCents, d.eventCount) for d in days],
            [(day_key(BASE), 200, 4), (day_key(BASE + DAY_MS), 7, 1)],
        )

        p1_days = await self.repo.get_daily_costs(self.start, self.end, project_key="p1")
        self.assertEqual([(d.day, d.totalCents) for d in p1_days], [(day_key(BASE), 150)])

    async def test_review_candidates_newest_first_with_limit(self) -> None:
        candidates = await self.repo.get_review_candidates()
        self.assertEqual([c.event.eventId for c in candidates], ["e4", "e3", "e2"])
        self.assertIsNone(candidates[0].attribution)

        limited = await self.repo.get_review_candidates(limit=2)
        self.assertEqual([c.event.eventId for c in limited], ["e4", "e3"])


if __name__ == "__main__":
    unittest.main()
