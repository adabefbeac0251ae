import tempfile
import types
import unittest
from pathlib import Path

from fastapi import HTTPException

from codemeter.db.log_store import LogStore
from codemeter.db.repositories.attributions import AttributionRepository
from codemeter.db.repositories.events import EventRepository
from codemeter.db.repositories.projects import ProjectRepository
from codemeter.models import AttributionRecord, EventCost, Project, UsageEvent
from codemeter.routers import analytics as analytics_router


def _request(store):
    return types.SimpleNamespace(app=types.SimpleNamespace(state=types.SimpleNamespace(log_store=store)))


class AnalyticsRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = LogStore(Path(self._tmp.name))
        await ProjectRepository(self.store).create(Project(projectKey="p1", displayName="Alpha", lastActiveAt=5))
        await EventRepository(self.store).create(
            UsageEvent(eventId="e1", timestampMs=1_000, model="m", cost=EventCost(totalCents=30))
        )
        await EventRepository(self.store).create(
            UsageEvent(eventId="e2", timestampMs=2_000, model="m", cost=EventCost(totalCents=5))
        )
        await AttributionRepository(self.store).create(
            AttributionRecord(eventId="e1", projectKey="p1", confidence=1.0, timestampMs=1_000)
        )
        self.request = _request(self.store)

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_cost_totals(self) -> None:
        payload = await analytics_router.get_cost_totals(self.request, start_ms=0, end_ms=10_000)

        self.assertEqual(payload["startMs"], 0)
        self.assertEqual(
            [(item["projectKey"], item["totalCents"]) for item in payload["items"]],
            [("p1", 30), ("unattributed", 5)],
        )

    async def test_projects_and_metrics(self) -> None:
        projects = await analytics_router.list_projects(self.request)
        self.assertEqual(projects["items"][0]["displayName"], "Alpha")

        metrics = await analytics_router.get_project_metrics(self.request, "p1", start_ms=0, end_ms=10_000)
        self.assertEqual(metrics["modelBreakdown"], {"m": 30})

    async def test_summaries_and_review(self) -> None:
        unattributed = await analytics_router.get_unattributed_summary(self.request, start_ms=0, end_ms=10_000)
        self.assertEqual(unattributed, {"totalCents": 5, "eventCount": 1})

        conflicts = await analytics_router.get_conflict_summary(self.request, start_ms=0, end_ms=10_000)
        self.assertEqual(conflicts["eventCount"], 0)

        review = await analytics_router.get_review_candidates(self.request, limit=10)
        self.assertEqual(review["count"], 1)
        self.assertEqual(review["items"][0]["event"]["eventId"], "e2")

    async def test_heatmap_and_daily(self) -> None:
        heatmap = await analytics_router.get_hourly_heatmap(self.request, start_ms=0, end_ms=10_000, utc_offset_minutes=0)
        self.assertEqual({h["projectKey"] for h in heatmap["items"]}, {"p1", "unattributed"})

        daily = await analytics_router.get_daily_costs(self.request, start_ms=0, end_ms=10_000, project_key=None)
        self.assertEqual(daily["items"], [{"day": "1970-01-01", "totalCents": 35, "eventCount": 2}])

    async def test_budgets_and_sync_state_empty(self) -> None:
        self.assertEqual(await analytics_router.get_budget_status(self.request), {"items": []})
        self.assertEqual(await analytics_router.get_sync_state(self.request), {"items": []})

    async def test_inverted_range_is_rejected(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await analytics_router.get_cost_totals(self.request, start_ms=10, end_ms=5)
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_missing_store_returns_503(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await analytics_router.list_projects(_request(None))
        self.assertEqual(ctx.exception.status_code, 503)


if __name__ == "__main__":
    unittest.main()
