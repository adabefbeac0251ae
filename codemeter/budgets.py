"""Monthly per-project budgets and threshold checks."""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from codemeter import config
from codemeter.date_utils import now_ms, start_of_month_ms
from codemeter.db.factory import get_analytics_repository, get_budget_repository, get_project_repository
from codemeter.db.log_store import LogStore
from codemeter.errors import best_effort_async
from codemeter.models import Budget, BudgetStatus

logger = logging.getLogger("codemeter.budgets")

Notify = Callable[[BudgetStatus], Awaitable[Any]]


class BudgetMonitor:
    def __init__(
        self,
        store: LogStore,
        clock: Callable[[], int] = now_ms,
        alerts_enabled: bool = config.BUDGET_ALERTS_ENABLED,
    ):
        self.budgets = get_budget_repository(store)
        self.projects = get_project_repository(store)
        self.analytics = get_analytics_repository(store)
        self.alerts_enabled = alerts_enabled
        self._clock = clock

    async def set_budget(
        self,
        project_key: str,
        monthly_cents: int,
        alert_thresholds: Optional[list[float]] = None,
    ) -> Budget:
        if monthly_cents <= 0:
            raise ValueError("monthly_cents must be positive")
        now = self._clock()
        existing = await self.budgets.get_by_project_key(project_key)
        budget = Budget(
            projectKey=project_key,
            monthlyCents=int(monthly_cents),
            alertThresholds=list(alert_thresholds or config.DEFAULT_ALERT_THRESHOLDS),
            createdAt=existing.createdAt if existing else now,
            updatedAt=now,
        )
        await self.budgets.create_or_update(budget)
        logger.info("Budget for %s set to %d cents/month", project_key, budget.monthlyCents)
        return budget

    async def evaluate_budgets(self, at_ms: Optional[int] = None) -> list[BudgetStatus]:
        """Month-to-date spend against every budget. The month starts at 00:00 UTC."""
        now = self._clock() if at_ms is None else at_ms
        budgets = await self.budgets.get_all()
        if not budgets:
            return []

        totals = {
            t.projectKey: t
            for t in await self.analytics.get_cost_totals_by_project(start_of_month_ms(now), now)
        }
        names = {p.projectKey: p.displayName for p in await self.projects.get_all()}

        statuses = []
        for budget in budgets:
            if budget.monthlyCents <= 0:
                continue
            total = totals.get(budget.projectKey)
            spent = total.totalCents if total else 0
            ratio = spent / budget.monthlyCents
            crossed = [t for t in budget.alertThresholds if ratio >= t]
            statuses.append(
                BudgetStatus(
                    projectKey=budget.projectKey,
                    displayName=names.get(budget.projectKey) or budget.projectKey,
                    spentCents=spent,
                    monthlyCents=budget.monthlyCents,
                    ratio=ratio,
                    crossedThreshold=max(crossed) if crossed else None,
                )
            )
        return statuses

    async def check_budgets(self, notify: Notify) -> list[BudgetStatus]:
        """Call ``notify`` for every budget past one of its thresholds."""
        if not self.alerts_enabled:
            return []
        crossed = [s for s in await self.evaluate_budgets() if s.crossedThreshold is not None]
        for status in crossed:
            await best_effort_async(f"budget alert for {status.projectKey}", notify, status)
        return crossed
