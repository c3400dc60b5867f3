from datetime import date, datetime, time

import pytest

from models import BudgetPeriod
from periods import (
    budget_windows,
    month_period,
    parse_boundary,
    resolve_range,
    week_period,
)


def test_monthly_range_compares_with_previous_month() -> None:
    result = resolve_range("monthly", None, None, now=datetime(2024, 3, 15, 10, 30))

    assert result.selector == "monthly"
    assert result.current.start == datetime(2024, 3, 1)
    assert result.current.end == datetime.combine(date(2024, 3, 31), time.max)
    assert result.comparison is not None
    assert result.comparison.start == datetime(2024, 2, 1)
    assert result.comparison.end == datetime.combine(date(2024, 2, 29), time.max)


def test_monthly_range_in_january_compares_with_december() -> None:
    result = resolve_range("monthly", None, None, now=datetime(2025, 1, 2))

    assert result.comparison.start == datetime(2024, 12, 1)
    assert result.comparison.end == datetime.combine(date(2024, 12, 31), time.max)


def test_missing_selector_defaults_to_monthly() -> None:
    result = resolve_range(None, None, None, now=datetime(2024, 6, 10))

    assert result.selector == "monthly"
    assert result.current.start == datetime(2024, 6, 1)


def test_yearly_range_compares_with_previous_year() -> None:
    result = resolve_range("yearly", None, None, now=datetime(2024, 7, 4))

    assert result.current.start == datetime(2024, 1, 1)
    assert result.current.end == datetime.combine(date(2024, 12, 31), time.max)
    assert result.comparison.start == datetime(2023, 1, 1)
    assert result.comparison.end == datetime.combine(date(2023, 12, 31), time.max)


def test_custom_range_is_inclusive_and_has_no_comparison() -> None:
    result = resolve_range("custom", "2024-01-01", "2024-01-31")

    assert result.current.start == datetime(2024, 1, 1)
    assert result.current.end == datetime.combine(date(2024, 1, 31), time.max)
    assert result.comparison is None
    assert result.current.contains(datetime(2024, 1, 31, 23, 59, 59))


def test_custom_range_requires_both_boundaries() -> None:
    with pytest.raises(ValueError):
        resolve_range("custom", "2024-01-01", None)
    with pytest.raises(ValueError):
        resolve_range("custom", None, "2024-01-31")


def test_custom_range_rejects_reversed_boundaries() -> None:
    with pytest.raises(ValueError):
        resolve_range("custom", "2024-02-01", "2024-01-01")


def test_unknown_selector_is_rejected() -> None:
    with pytest.raises(ValueError):
        resolve_range("weekly", None, None)


def test_parse_boundary_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        parse_boundary("not-a-date", end=False)


def test_parse_boundary_keeps_explicit_local_time() -> None:
    assert parse_boundary("2024-03-05T14:30:00", end=True) == datetime(
        2024, 3, 5, 14, 30
    )


def test_weeks_start_on_sunday() -> None:
    wednesday = week_period(date(2024, 3, 13))
    assert wednesday.start == datetime(2024, 3, 10)
    assert wednesday.end == datetime.combine(date(2024, 3, 16), time.max)

    sunday = week_period(date(2024, 3, 10))
    assert sunday.start == datetime(2024, 3, 10)

    saturday = week_period(date(2024, 3, 16))
    assert saturday.start == datetime(2024, 3, 10)


def test_month_period_handles_december() -> None:
    december = month_period(date(2024, 12, 18))

    assert december.start == datetime(2024, 12, 1)
    assert december.end == datetime.combine(date(2024, 12, 31), time.max)


def test_budget_windows_pick_the_calendar_period() -> None:
    windows = budget_windows(datetime(2024, 3, 13, 9))

    assert windows.for_period(BudgetPeriod.weekly).start == datetime(2024, 3, 10)
    assert windows.for_period(BudgetPeriod.monthly).start == datetime(2024, 3, 1)
    assert windows.for_period(BudgetPeriod.yearly).start == datetime(2024, 1, 1)
