"""Dashboard assembly.

Every sub-computation is an independent read. They run concurrently on a
thread pool, each in its own session from ``session_factory``, and return
plain pydantic models so nothing crosses threads bound to a session. Budget
spent totals are a second stage once the budget list is known: one aggregate
per distinct ``(period, scope)`` key, shared by every budget with that key.

Rows written while the fan-out is running may show up in some sub-results and
not in others. A failure in any sub-computation propagates to the caller.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from aggregation import (
    BudgetKey,
    CategoryDisplay,
    Totals,
    chart_slices,
    count_alerts,
    group_budgets,
    percent_change,
    scope_category_id,
)
from config import get_settings
from models import CategoryType
from periods import DashboardRange, Period, budget_windows, local_now
from schemas import (
    BudgetOut,
    ChartSlice,
    DashboardMeta,
    DashboardOut,
    DashboardStats,
    ExpenseOut,
    IncomeOut,
    StatValue,
)
from services import (
    BudgetService,
    CategoryService,
    ExpenseService,
    IncomeService,
    budget_with_spent,
)


logger = logging.getLogger(__name__)

RECENT_LIMIT = 5


class DashboardService:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        user_id: str,
        *,
        max_workers: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory
        self.user_id = user_id
        self.max_workers = max_workers or get_settings().dashboard_workers

    def _expense_totals(self, window: Period) -> Totals:
        with self.session_factory() as session:
            return ExpenseService(session, self.user_id).aggregate(window)

    def _income_totals(self, window: Period) -> Totals:
        with self.session_factory() as session:
            return IncomeService(session, self.user_id).aggregate(window)

    def _budgets(self) -> list[BudgetOut]:
        with self.session_factory() as session:
            budgets = BudgetService(session, self.user_id).list_all()
            return [BudgetOut.model_validate(b) for b in budgets]

    def _spent(self, window: Period, category_id: Optional[int]) -> int:
        with self.session_factory() as session:
            service = ExpenseService(session, self.user_id)
            return service.aggregate(window, category_id).sum_cents

    def _recent_expenses(self) -> list[ExpenseOut]:
        with self.session_factory() as session:
            rows = ExpenseService(session, self.user_id).recent(RECENT_LIMIT)
            return [ExpenseOut.model_validate(row) for row in rows]

    def _recent_incomes(self) -> list[IncomeOut]:
        with self.session_factory() as session:
            rows = IncomeService(session, self.user_id).recent(RECENT_LIMIT)
            return [IncomeOut.model_validate(row) for row in rows]

    def _chart(self, window: Period) -> list[ChartSlice]:
        with self.session_factory() as session:
            sums = ExpenseService(session, self.user_id).sum_by_category(window)
            categories = {
                c.id: CategoryDisplay(name=c.name, color=c.color)
                for c in CategoryService(session).list_by_type(CategoryType.expense)
            }
        return [ChartSlice(**item) for item in chart_slices(sums, categories)]

    def build(
        self, dashboard_range: DashboardRange, now: Optional[datetime] = None
    ) -> DashboardOut:
        now = now or local_now()
        windows = budget_windows(now)
        current = dashboard_range.current
        comparison = dashboard_range.comparison

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="dashboard"
        ) as pool:
            current_expenses = pool.submit(self._expense_totals, current)
            current_incomes = pool.submit(self._income_totals, current)
            previous_expenses: Optional[Future[Totals]] = None
            previous_incomes: Optional[Future[Totals]] = None
            if comparison is not None:
                previous_expenses = pool.submit(self._expense_totals, comparison)
                previous_incomes = pool.submit(self._income_totals, comparison)
            budgets_future = pool.submit(self._budgets)
            recent_expenses = pool.submit(self._recent_expenses)
            recent_incomes = pool.submit(self._recent_incomes)
            chart = pool.submit(self._chart, current)

            budgets = budgets_future.result()
            groups = group_budgets(budgets)
            spent_futures: dict[BudgetKey, Future[int]] = {}
            for key in groups:
                period, scope = key
                spent_futures[key] = pool.submit(
                    self._spent, windows.for_period(period), scope_category_id(scope)
                )

            budgets_with_spent = []
            for key, members in groups.items():
                spent = spent_futures[key].result()
                for budget in members:
                    budgets_with_spent.append(budget_with_spent(budget, spent))
            order = {budget.id: index for index, budget in enumerate(budgets)}
            budgets_with_spent.sort(key=lambda b: order[b.id])

            expense_totals = current_expenses.result()
            income_totals = current_incomes.result()
            previous_expense_sum = (
                previous_expenses.result().sum_cents if previous_expenses else None
            )
            previous_income_sum = (
                previous_incomes.result().sum_cents if previous_incomes else None
            )

            stats = DashboardStats(
                income=StatValue(
                    value=income_totals.sum_cents,
                    count=income_totals.count,
                    change=percent_change(income_totals.sum_cents, previous_income_sum),
                ),
                expenses=StatValue(
                    value=expense_totals.sum_cents,
                    count=expense_totals.count,
                    change=percent_change(
                        expense_totals.sum_cents, previous_expense_sum
                    ),
                ),
                net_balance=income_totals.sum_cents - expense_totals.sum_cents,
                budget_alerts=count_alerts(b.utilization for b in budgets_with_spent),
            )
            payload = DashboardOut(
                stats=stats,
                recent_expenses=recent_expenses.result(),
                recent_incomes=recent_incomes.result(),
                budgets=budgets_with_spent,
                chart_data=chart.result(),
                meta=DashboardMeta(
                    range=dashboard_range.selector, from_=current.start, to=current.end
                ),
            )

        logger.debug(
            f"dashboard_built: user={self.user_id} range={dashboard_range.selector} "
            f"budget_groups={len(groups)}"
        )
        return payload
