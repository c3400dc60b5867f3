from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import BudgetPeriod


RANGE_SELECTORS = ("monthly", "yearly", "custom")


@dataclass(frozen=True)
class Period:
    """Inclusive window: ``start`` is the first instant, ``end`` the last."""

    slug: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass(frozen=True)
class DashboardRange:
    selector: str
    current: Period
    comparison: Optional[Period]


@dataclass(frozen=True)
class BudgetWindows:
    week: Period
    month: Period
    year: Period

    def for_period(self, period: BudgetPeriod) -> Period:
        if period == BudgetPeriod.weekly:
            return self.week
        if period == BudgetPeriod.yearly:
            return self.year
        return self.month


def local_now() -> datetime:
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def to_local_naive(moment: datetime) -> datetime:
    """Offset-aware timestamps become naive wall-clock time in the configured zone."""
    if moment.tzinfo is None:
        return moment
    tz = ZoneInfo(get_settings().timezone)
    return moment.astimezone(tz).replace(tzinfo=None)


def _first_instant(d: date) -> datetime:
    return datetime.combine(d, time.min)


def _last_instant(d: date) -> datetime:
    return datetime.combine(d, time.max)


def month_period(d: date, slug: str = "month") -> Period:
    first = d.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return Period(
        slug, _first_instant(first), _last_instant(next_month - date.resolution)
    )


def year_period(d: date, slug: str = "year") -> Period:
    return Period(
        slug, _first_instant(date(d.year, 1, 1)), _last_instant(date(d.year, 12, 31))
    )


def week_period(d: date, slug: str = "week") -> Period:
    # Weeks run Sunday through Saturday.
    start = d - timedelta(days=(d.weekday() + 1) % 7)
    end = start + timedelta(days=6)
    return Period(slug, _first_instant(start), _last_instant(end))


def _previous_month(d: date) -> date:
    return d.replace(day=1) - date.resolution


def parse_boundary(value: str, *, end: bool) -> datetime:
    raw = value.strip()
    try:
        if len(raw) == 10:
            day = date.fromisoformat(raw)
            return _last_instant(day) if end else _first_instant(day)
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value}") from exc
    return to_local_naive(parsed)


def resolve_range(
    selector: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> DashboardRange:
    now = now or local_now()
    today = now.date()
    selector = selector or "monthly"

    if selector == "monthly":
        return DashboardRange(
            "monthly",
            month_period(today, "monthly"),
            month_period(_previous_month(today), "previous_month"),
        )
    if selector == "yearly":
        return DashboardRange(
            "yearly",
            year_period(today, "yearly"),
            year_period(date(today.year - 1, 1, 1), "previous_year"),
        )
    if selector == "custom":
        if not start or not end:
            raise ValueError("Custom range requires from and to dates")
        start_at = parse_boundary(start, end=False)
        end_at = parse_boundary(end, end=True)
        if start_at > end_at:
            raise ValueError("Start date must be before end date")
        return DashboardRange("custom", Period("custom", start_at, end_at), None)
    raise ValueError(f"Unknown range: {selector}")


def budget_windows(now: Optional[datetime] = None) -> BudgetWindows:
    today = (now or local_now()).date()
    return BudgetWindows(
        week=week_period(today),
        month=month_period(today),
        year=year_period(today),
    )
