"""Log-backed Project repository."""
from __future__ import annotations

from typing import Optional

from codemeter.db.log_store import LogStore
from codemeter.db.reducers import PROJECTS, entities, upsert_record
from codemeter.db.repositories.base import dump_entity, parse_entities
from codemeter.models import Project


class ProjectRepository:
    """Projects keyed by ``projectKey``; the greatest ``lastActiveAt`` wins."""

    def __init__(self, store: LogStore):
        self.store = store

    async def create(self, project: Project) -> None:
        await self.store.append(PROJECTS, upsert_record("project", dump_entity(project)))

    async def get_all(self) -> list[Project]:
        records = await self.store.read_current(PROJECTS)
        projects = parse_entities(Project, entities(records, "project"))
        return sorted(projects, key=lambda p: p.lastActiveAt, reverse=True)

    async def get_by_key(self, project_key: str) -> Optional[Project]:
        for project in await self.get_all():
            if project.projectKey == project_key:
                return project
        return None
