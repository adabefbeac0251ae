"""Log-backed Budget repository; latest ``updatedAt`` wins per project."""
from __future__ import annotations

from typing import Optional

from codemeter.db.log_store import LogStore
from codemeter.db.reducers import BUDGETS, entities, upsert_record
from codemeter.db.repositories.base import dump_entity, parse_entities
from codemeter.models import Budget


class BudgetRepository:
    def __init__(self, store: LogStore):
        self.store = store

    async def create_or_update(self, budget: Budget) -> None:
        await self.store.append(BUDGETS, upsert_record("budget", dump_entity(budget)))

    async def get_all(self) -> list[Budget]:
        records = await self.store.read_current(BUDGETS)
        budgets = parse_entities(Budget, entities(records, "budget"))
        return sorted(budgets, key=lambda b: b.updatedAt, reverse=True)

    async def get_by_project_key(self, project_key: str) -> Optional[Budget]:
        for budget in await self.get_all():
            if budget.projectKey == project_key:
                return budget
        return None
