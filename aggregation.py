"""Arithmetic behind the dashboard: percentage deltas, budget scopes and
utilization, and the category chart join.

Everything here is pure; the stores in ``services`` feed it plain values.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Optional, TypeVar, Union

from models import BudgetPeriod


ALERT_THRESHOLD = 80.0
OVER_THRESHOLD = 100.0
UNKNOWN_CATEGORY_NAME = "Unknown"
UNKNOWN_CATEGORY_COLOR = "#2ECC71"


@dataclass(frozen=True)
class Totals:
    sum_cents: int = 0
    count: int = 0


@dataclass(frozen=True)
class OverallScope:
    """Budget covering every expense category."""


@dataclass(frozen=True)
class CategoryScope:
    category_id: int


BudgetScope = Union[OverallScope, CategoryScope]
BudgetKey = tuple[BudgetPeriod, BudgetScope]

B = TypeVar("B")


def percent_change(current: int, previous: Optional[int]) -> float:
    if previous is None or previous <= 0:
        return 0.0
    return ((current - previous) / previous) * 100


def scope_of(category_id: Optional[int]) -> BudgetScope:
    if category_id is None:
        return OverallScope()
    return CategoryScope(category_id)


def scope_category_id(scope: BudgetScope) -> Optional[int]:
    if isinstance(scope, OverallScope):
        return None
    if isinstance(scope, CategoryScope):
        return scope.category_id
    raise TypeError(f"Unsupported budget scope: {scope!r}")


def budget_key(budget) -> BudgetKey:
    """Works for ORM rows and output models alike."""
    return (BudgetPeriod(budget.period), scope_of(budget.category_id))


def group_budgets(budgets: Iterable[B], key=budget_key) -> dict[BudgetKey, list[B]]:
    groups: dict[BudgetKey, list[B]] = {}
    for budget in budgets:
        groups.setdefault(key(budget), []).append(budget)
    return groups


def utilization(spent_cents: int, amount_cents: int) -> float:
    if amount_cents <= 0:
        return 0.0
    return spent_cents / amount_cents * 100


def budget_status(percent: float) -> str:
    if percent >= OVER_THRESHOLD:
        return "over"
    if percent >= ALERT_THRESHOLD:
        return "warning"
    return "ok"


def needs_attention(percent: float) -> bool:
    return percent >= ALERT_THRESHOLD


def count_alerts(percentages: Iterable[float]) -> int:
    return sum(1 for percent in percentages if needs_attention(percent))


@dataclass(frozen=True)
class CategoryDisplay:
    name: str
    color: str


def chart_slices(
    sums: Iterable[tuple[int, int]],
    categories: Mapping[int, CategoryDisplay],
) -> list[dict[str, object]]:
    slices = []
    for category_id, total in sums:
        display = categories.get(category_id)
        slices.append(
            {
                "category_id": category_id,
                "name": display.name if display else UNKNOWN_CATEGORY_NAME,
                "value": int(total or 0),
                "color": display.color if display else UNKNOWN_CATEGORY_COLOR,
            }
        )
    slices.sort(key=lambda s: (-int(s["value"]), int(s["category_id"])))
    return slices
