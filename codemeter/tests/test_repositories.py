import tempfile
import unittest
from pathlib import Path

from codemeter.db.log_store import LogStore
from codemeter.db.reducers import SESSIONS, session_create_record
from codemeter.db.repositories.attributions import MANUAL_REASON, AttributionRepository, is_manual
from codemeter.db.repositories.budgets import BudgetRepository
from codemeter.db.repositories.events import EventRepository
from codemeter.db.repositories.projects import ProjectRepository
from codemeter.db.repositories.sessions import SessionRepository
from codemeter.db.repositories.sync_state import SyncStateRepository
from codemeter.models import AttributionRecord, Budget, Project, ProjectSession, SyncState, UsageEvent


class RepositoryTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = LogStore(Path(self._tmp.name))

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()


class SessionRepositoryTests(RepositoryTestCase):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.repo = SessionRepository(self.store)

    async def test_update_end_time_and_flags(self) -> None:
        await self.repo.create(ProjectSession(id="s1", projectKey="p1", startMs=0, focused=True))
        await self.repo.update_flags("s1", focused=False, idle=True)
        await self.repo.update_end_time("s1", 500)

        session = await self.repo.get_by_id("s1")

        self.assertEqual(session.endMs, 500)
        self.assertFalse(session.focused)
        self.assertTrue(session.idle)
        self.assertFalse(session.is_open)

    async def test_active_sessions_newest_first(self) -> None:
        await self.repo.create(ProjectSession(id="a", projectKey="p1", startMs=0))
        await self.repo.create(ProjectSession(id="b", projectKey="p2", startMs=100, endMs=200))
        await self.repo.create(ProjectSession(id="c", projectKey="p3", startMs=300))

        active = await self.repo.get_active_sessions(150)
        self.assertEqual([s.id for s in active], ["b", "a"])

        at_end = await self.repo.get_active_sessions(200)
        self.assertEqual([s.id for s in at_end], ["b", "a"])

        later = await self.repo.get_active_sessions(250)
        self.assertEqual([s.id for s in later], ["a"])

    async def test_malformed_session_is_skipped(self) -> None:
        await self.store.append(SESSIONS, session_create_record({"id": "bad", "projectKey": "p1"}))
        await self.repo.create(ProjectSession(id="good", projectKey="p1", startMs=0))

        self.assertEqual([s.id for s in await self.repo.get_all()], ["good"])

    async def test_close_stale_sessions_skips_own_instance(self) -> None:
        hour = 60 * 60 * 1000
        await self.repo.create(ProjectSession(id="old", projectKey="p1", startMs=0, instanceId="other"))
        await self.repo.create(ProjectSession(id="mine", projectKey="p1", startMs=0, instanceId="me"))
        await self.repo.create(ProjectSession(id="fresh", projectKey="p1", startMs=30 * hour, instanceId="other"))

        closed = await self.repo.close_stale_sessions(now_ms=31 * hour, max_open_ms=24 * hour, exclude_instance_id="me")

        self.assertEqual(closed, 1)
        sessions = {s.id: s for s in await self.repo.get_all()}
        self.assertEqual(sessions["old"].endMs, 24 * hour)
        self.assertIsNone(sessions["mine"].endMs)
        self.assertIsNone(sessions["fresh"].endMs)


class EventAndAttributionRepositoryTests(RepositoryTestCase):
    async def test_duplicate_event_is_one_logical_record(self) -> None:
        repo = EventRepository(self.store)
        event = UsageEvent(eventId="e1", timestampMs=1_000)
        await repo.create(event)
        await repo.create(event)

        self.assertEqual(len(await repo.get_all()), 1)
        self.assertEqual(await repo.get_by_id("e1"), event)

    async def test_time_range_is_inclusive_and_newest_first(self) -> None:
        repo = EventRepository(self.store)
        for event_id, ts in (("a", 100), ("b", 200), ("c", 300)):
            await repo.create(UsageEvent(eventId=event_id, timestampMs=ts))

        events = await repo.get_by_time_range(100, 200)

        self.assertEqual([e.eventId for e in events], ["b", "a"])

    async def test_latest_attribution_wins(self) -> None:
        repo = AttributionRepository(self.store)
        await repo.create(AttributionRecord(eventId="e1", projectKey="p1", confidence=0.5, timestampMs=1))
        await repo.create(AttributionRecord(eventId="e1", projectKey="p2", confidence=1.0, timestampMs=1))

        current = await repo.get_by_event_id("e1")

        self.assertEqual(current.projectKey, "p2")
        self.assertEqual(await repo.get_by_project_key("p1"), [])

    async def test_reassign_marks_attributions_manual(self) -> None:
        repo = AttributionRepository(self.store)
        await repo.create(AttributionRecord(eventId="e1", projectKey="unattributed", timestampMs=1))

        written = await repo.reassign(["e1", "e2"], "p9", at_ms=42)

        self.assertEqual(len(written), 2)
        current = await repo.get_by_event_id("e1")
        self.assertEqual(current.projectKey, "p9")
        self.assertEqual(current.confidence, 1.0)
        self.assertEqual(current.reason, MANUAL_REASON)
        self.assertTrue(is_manual(current))
        self.assertEqual(len(await repo.get_by_project_key("p9")), 2)


class ProjectBudgetSyncStateRepositoryTests(RepositoryTestCase):
    async def test_projects_sorted_by_last_active(self) -> None:
        repo = ProjectRepository(self.store)
        await repo.create(Project(projectKey="a", displayName="A", lastActiveAt=100))
        await repo.create(Project(projectKey="b", displayName="B", lastActiveAt=300))
        await repo.create(Project(projectKey="a", displayName="A2", lastActiveAt=50))

        projects = await repo.get_all()

        self.assertEqual([p.projectKey for p in projects], ["b", "a"])
        self.assertEqual((await repo.get_by_key("a")).displayName, "A")
        self.assertIsNone(await repo.get_by_key("zzz"))

    async def test_budget_latest_updated_at_wins(self) -> None:
        repo = BudgetRepository(self.store)
        await repo.create_or_update(Budget(projectKey="p1", monthlyCents=1000, alertThresholds=[1.0, 0.5], updatedAt=2))
        await repo.create_or_update(Budget(projectKey="p1", monthlyCents=500, updatedAt=1))

        budget = await repo.get_by_project_key("p1")

        self.assertEqual(budget.monthlyCents, 1000)
        self.assertEqual(budget.alertThresholds, [0.5, 1.0])

    async def test_sync_state_upsert(self) -> None:
        repo = SyncStateRepository(self.store)
        self.assertIsNone(await repo.get("dash"))

        await repo.upsert(SyncState(source="dash", lastFetchedMs=10))
        await repo.upsert(SyncState(source="dash", lastFetchedMs=20, lastError="boom"))

        state = await repo.get("dash")
        self.assertEqual(state.lastFetchedMs, 20)
        self.assertEqual(state.lastError, "boom")


if __name__ == "__main__":
    unittest.main()
