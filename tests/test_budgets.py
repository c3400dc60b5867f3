from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from config import get_settings
from database import Base
from models import BudgetPeriod, CategoryType
from schemas import BudgetIn, BudgetUpdate, CategoryIn, ExpenseIn
from services import BudgetService, CategoryService, ConflictError, ExpenseService


def _category(session: Session, name: str, type: CategoryType = CategoryType.expense):
    return CategoryService(session).create(
        CategoryIn(name=name, type=type, icon="folder", color="#95A5A6")
    )


def _spend(session: Session, category_id: int, cents: int, when: datetime) -> None:
    ExpenseService(session, "user-a", "Alice").create(
        ExpenseIn(
            amount_cents=cents,
            date=when,
            payee=get_settings().payees[0],
            category_id=category_id,
        )
    )


def test_duplicate_overall_budget_for_same_period_conflicts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        travel = _category(session, "Travel")
        service = BudgetService(session, "user-a")
        service.create(BudgetIn(amount_cents=1000, period=BudgetPeriod.weekly))

        with pytest.raises(ConflictError):
            service.create(BudgetIn(amount_cents=2000, period=BudgetPeriod.weekly))

        scoped = service.create(
            BudgetIn(
                amount_cents=500, period=BudgetPeriod.weekly, category_id=travel.id
            )
        )
        assert scoped.category_id == travel.id

        # Another user has their own budget namespace.
        BudgetService(session, "user-b").create(
            BudgetIn(amount_cents=1000, period=BudgetPeriod.weekly)
        )


def test_update_into_existing_scope_conflicts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = BudgetService(session, "user-a")
        service.create(BudgetIn(amount_cents=1000, period=BudgetPeriod.weekly))
        monthly = service.create(
            BudgetIn(amount_cents=4000, period=BudgetPeriod.monthly)
        )

        with pytest.raises(ConflictError):
            service.update(monthly.id, BudgetUpdate(period=BudgetPeriod.weekly))

        updated = service.update(monthly.id, BudgetUpdate(amount_cents=4500))
        assert updated.amount_cents == 4500
        assert updated.period == BudgetPeriod.monthly


def test_budget_category_must_be_an_expense_category() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        salary = _category(session, "Salary", CategoryType.income)

        with pytest.raises(ValueError, match="type mismatch"):
            BudgetService(session, "user-a").create(
                BudgetIn(
                    amount_cents=100, period=BudgetPeriod.monthly, category_id=salary.id
                )
            )


def test_with_spent_uses_the_budget_period_and_scope() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        travel = _category(session, "Travel")
        meals = _category(session, "Meals")
        # Week of Sunday 2024-03-10 .. Saturday 2024-03-16.
        _spend(session, travel.id, 300, datetime(2024, 3, 11, 9))
        _spend(session, meals.id, 200, datetime(2024, 3, 12, 13))
        _spend(session, travel.id, 400, datetime(2024, 3, 2, 10))
        _spend(session, travel.id, 900, datetime(2023, 12, 30))

        service = BudgetService(session, "user-a")
        service.create(BudgetIn(amount_cents=500, period=BudgetPeriod.weekly))
        service.create(
            BudgetIn(
                amount_cents=1000,
                period=BudgetPeriod.monthly,
                category_id=travel.id,
            )
        )
        service.create(BudgetIn(amount_cents=1000, period=BudgetPeriod.yearly))

        rows = service.with_spent(now=datetime(2024, 3, 13, 12))
        by_period = {(row.period, row.category_id): row for row in rows}

        weekly = by_period[(BudgetPeriod.weekly, None)]
        assert weekly.spent_cents == 500
        assert weekly.utilization == 100.0
        assert weekly.status == "over"

        travel_month = by_period[(BudgetPeriod.monthly, travel.id)]
        assert travel_month.spent_cents == 700
        assert travel_month.status == "ok"

        yearly = by_period[(BudgetPeriod.yearly, None)]
        assert yearly.spent_cents == 900
        assert yearly.status == "warning"


def test_budgets_list_overall_first() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        travel = _category(session, "Travel")
        service = BudgetService(session, "user-a")
        service.create(
            BudgetIn(
                amount_cents=100,
                period=BudgetPeriod.monthly,
                category_id=travel.id,
            )
        )
        service.create(BudgetIn(amount_cents=100, period=BudgetPeriod.monthly))

        budgets = service.list_all()

        assert [b.category_id for b in budgets] == [None, travel.id]
