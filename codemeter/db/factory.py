"""Repository factory: every repository shares one explicitly constructed LogStore."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from codemeter import config
from codemeter.db.log_store import LogStore
from codemeter.db.repositories.analytics import AnalyticsRepository
from codemeter.db.repositories.attributions import AttributionRepository
from codemeter.db.repositories.budgets import BudgetRepository
from codemeter.db.repositories.events import EventRepository
from codemeter.db.repositories.projects import ProjectRepository
from codemeter.db.repositories.sessions import SessionRepository
from codemeter.db.repositories.sync_state import SyncStateRepository


def create_log_store(data_dir: Optional[Path] = None) -> LogStore:
    return LogStore(Path(data_dir) if data_dir is not None else config.DATA_DIR)


def get_project_repository(store: LogStore):
    return ProjectRepository(store)


def get_session_repository(store: LogStore):
    return SessionRepository(store)


def get_event_repository(store: LogStore):
    return EventRepository(store)


def get_attribution_repository(store: LogStore):
    return AttributionRepository(store)


def get_budget_repository(store: LogStore):
    return BudgetRepository(store)


def get_sync_state_repository(store: LogStore):
    return SyncStateRepository(store)


def get_analytics_repository(store: LogStore):
    return AnalyticsRepository(store)
