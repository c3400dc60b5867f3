from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session, joinedload, selectinload

from aggregation import (
    Totals,
    budget_key,
    budget_status,
    group_budgets,
    scope_category_id,
    utilization,
)
from config import get_settings
from models import (
    CATEGORY_ICONS,
    Budget,
    BudgetPeriod,
    Category,
    CategoryType,
    Expense,
    Income,
    Label,
    expense_labels,
)
from periods import Period, budget_windows
from receipts import ReceiptStorage, owns_receipt, release_quietly
from schemas import (
    BudgetIn,
    BudgetOut,
    BudgetUpdate,
    BudgetWithSpentOut,
    CategoryIn,
    CategoryUpdate,
    ExpenseIn,
    ExpenseUpdate,
    IncomeIn,
    LabelIn,
)


logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


@dataclass
class ExpenseFilters:
    category_id: Optional[int] = None
    payee: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    search: Optional[str] = None


@dataclass
class IncomeFilters:
    category_id: Optional[int] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    search: Optional[str] = None


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, type: Optional[CategoryType] = None) -> list[Category]:
        stmt = select(Category).order_by(Category.name, Category.id)
        if type:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def list_by_type(self, type: CategoryType) -> list[Category]:
        return self.list_all(type)

    def usage_counts(self) -> dict[int, tuple[int, int]]:
        expense_rows = self.session.execute(
            select(Expense.category_id, func.count(Expense.id)).group_by(
                Expense.category_id
            )
        ).all()
        income_rows = self.session.execute(
            select(Income.category_id, func.count(Income.id)).group_by(
                Income.category_id
            )
        ).all()
        counts: dict[int, tuple[int, int]] = {}
        for category_id, count in expense_rows:
            counts[category_id] = (int(count), 0)
        for category_id, count in income_rows:
            expenses, _ = counts.get(category_id, (0, 0))
            counts[category_id] = (expenses, int(count))
        return counts

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _check_icon(self, icon: str) -> None:
        if icon not in CATEGORY_ICONS:
            raise ValueError(f"Unknown icon: {icon}")

    def _check_name_free(
        self, name: str, type: CategoryType, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category).where(
            Category.type == type, func.lower(Category.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt):
            raise ConflictError("Category with this name already exists")

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")
        self._check_icon(data.icon)
        self._check_name_free(name, data.type)
        category = Category(
            name=name,
            type=data.type,
            icon=data.icon,
            color=data.color,
            is_default=False,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        if data.name is not None:
            name = data.name.strip()
            if not name:
                raise ValueError("Category name cannot be empty")
            self._check_name_free(name, category.type, exclude_id=category.id)
            category.name = name
        if data.icon is not None:
            self._check_icon(data.icon)
            category.icon = data.icon
        if data.color is not None:
            category.color = data.color
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = int(
            self.session.execute(
                select(func.count(Expense.id)).where(Expense.category_id == category.id)
            ).scalar_one()
            or 0
        ) + int(
            self.session.execute(
                select(func.count(Income.id)).where(Income.category_id == category.id)
            ).scalar_one()
            or 0
        )
        if in_use:
            raise ConflictError(
                "Cannot delete category with existing transactions. "
                "Please reassign or delete them first."
            )
        budgets = int(
            self.session.execute(
                select(func.count(Budget.id)).where(Budget.category_id == category.id)
            ).scalar_one()
            or 0
        )
        if budgets:
            raise ConflictError("Cannot delete category that is used by budgets")
        self.session.delete(category)
        self.session.commit()


class LabelService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Label]:
        return self.session.scalars(select(Label).order_by(Label.name)).all()

    def get(self, label_id: int) -> Label:
        label = self.session.get(Label, label_id)
        if not label:
            raise NotFoundError("Label not found")
        return label

    def _clean_name(self, name: str, exclude_id: Optional[int] = None) -> str:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Label name cannot be empty")
        stmt = select(Label).where(func.lower(Label.name) == clean_name.lower())
        if exclude_id is not None:
            stmt = stmt.where(Label.id != exclude_id)
        if self.session.scalar(stmt):
            raise ConflictError("Label already exists")
        return clean_name

    def create(self, data: LabelIn) -> Label:
        label = Label(name=self._clean_name(data.name), color=data.color)
        self.session.add(label)
        self.session.commit()
        self.session.refresh(label)
        return label

    def update(self, label_id: int, data: LabelIn) -> Label:
        label = self.get(label_id)
        label.name = self._clean_name(data.name, exclude_id=label.id)
        label.color = data.color
        self.session.commit()
        self.session.refresh(label)
        return label

    def delete(self, label_id: int) -> None:
        label = self.get(label_id)
        self.session.execute(
            delete(expense_labels).where(expense_labels.c.label_id == label.id)
        )
        self.session.delete(label)
        self.session.commit()

    def resolve(self, label_ids: list[int]) -> list[Label]:
        unique_ids = list(dict.fromkeys(label_ids))
        if not unique_ids:
            return []
        stmt = select(Label).where(Label.id.in_(unique_ids))
        labels = self.session.scalars(stmt).all()
        if len(labels) != len(unique_ids):
            raise ValueError("Label not found")
        by_id = {label.id: label for label in labels}
        return [by_id[label_id] for label_id in unique_ids]


def _require_category(
    session: Session, category_id: int, kind: CategoryType
) -> Category:
    category = session.get(Category, category_id)
    if not category:
        raise ValueError("Category not found")
    if category.type != kind:
        raise ValueError("Category type mismatch")
    return category


class ExpenseService:
    def __init__(
        self,
        session: Session,
        user_id: str,
        user_name: Optional[str] = None,
        receipts: Optional[ReceiptStorage] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.user_name = user_name or "Unknown"
        self.receipts = receipts

    def _base(self):
        return select(Expense).options(
            joinedload(Expense.category), selectinload(Expense.labels)
        )

    def _check_payee(self, payee: str) -> None:
        if payee not in get_settings().payees:
            raise ValueError(f"Unknown payee: {payee}")

    def _check_receipt(self, public_id: Optional[str]) -> None:
        if public_id is not None and not owns_receipt(self.user_id, public_id):
            raise ValueError("Invalid receipt")

    def _release(self, public_id: Optional[str]) -> None:
        # Only receipts issued to this user are ever removed from storage.
        if owns_receipt(self.user_id, public_id):
            release_quietly(self.receipts, public_id)

    def get(self, expense_id: int) -> Expense:
        stmt = self._base().where(
            Expense.user_id == self.user_id, Expense.id == expense_id
        )
        expense = self.session.scalar(stmt)
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    def create(self, data: ExpenseIn) -> Expense:
        _require_category(self.session, data.category_id, CategoryType.expense)
        self._check_payee(data.payee)
        self._check_receipt(data.receipt_public_id)
        labels = LabelService(self.session).resolve(data.label_ids)
        expense = Expense(
            user_id=self.user_id,
            user_name=self.user_name,
            date=data.date,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            payee=data.payee,
            description=data.description,
            receipt_url=data.receipt_url,
            receipt_public_id=data.receipt_public_id,
        )
        expense.labels = labels
        self.session.add(expense)
        self.session.commit()
        return self.get(expense.id)

    def update(self, expense_id: int, data: ExpenseUpdate) -> Expense:
        expense = self.get(expense_id)
        fields = data.model_fields_set
        released_receipt: Optional[str] = None
        if fields & {"receipt_url", "receipt_public_id"}:
            self._check_receipt(data.receipt_public_id)

        if data.category_id is not None:
            _require_category(self.session, data.category_id, CategoryType.expense)
            expense.category_id = data.category_id
        if data.payee is not None:
            self._check_payee(data.payee)
            expense.payee = data.payee
        if data.amount_cents is not None:
            expense.amount_cents = data.amount_cents
        if data.date is not None:
            expense.date = data.date
        if "description" in fields:
            expense.description = data.description
        if data.label_ids is not None:
            labels = LabelService(self.session).resolve(data.label_ids)
            self.session.execute(
                delete(expense_labels).where(expense_labels.c.expense_id == expense.id)
            )
            self.session.expire(expense, ["labels"])
            expense.labels = labels
        if fields & {"receipt_url", "receipt_public_id"}:
            if expense.receipt_public_id != data.receipt_public_id:
                released_receipt = expense.receipt_public_id
            expense.receipt_url = data.receipt_url
            expense.receipt_public_id = data.receipt_public_id

        expense.user_name = self.user_name
        self.session.commit()
        self._release(released_receipt)
        self.session.expire(expense)
        return self.get(expense.id)

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        receipt_public_id = expense.receipt_public_id
        self.session.delete(expense)
        self.session.commit()
        self._release(receipt_public_id)

    def _filtered(self, stmt, filters: ExpenseFilters):
        stmt = stmt.where(Expense.user_id == self.user_id)
        if filters.category_id:
            stmt = stmt.where(Expense.category_id == filters.category_id)
        if filters.payee and filters.payee != "all":
            stmt = stmt.where(Expense.payee == filters.payee)
        if filters.start:
            stmt = stmt.where(Expense.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Expense.date <= filters.end)
        if filters.search:
            like = f"%{filters.search.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(func.coalesce(Expense.description, "")).like(like),
                    func.lower(Expense.payee).like(like),
                )
            )
        return stmt

    def list(
        self, filters: ExpenseFilters, page: int = 1, limit: int = 20
    ) -> tuple[list[Expense], int]:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        stmt = (
            self._filtered(self._base(), filters)
            .order_by(Expense.date.desc(), Expense.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        count_stmt = self._filtered(select(func.count(Expense.id)), filters)
        total = int(self.session.execute(count_stmt).scalar_one() or 0)
        return self.session.scalars(stmt).unique().all(), total

    def query(self, window: Period, category_id: Optional[int] = None) -> list[Expense]:
        stmt = (
            self._base()
            .where(
                Expense.user_id == self.user_id,
                Expense.date.between(window.start, window.end),
            )
            .order_by(Expense.date.asc(), Expense.id.asc())
        )
        if category_id is not None:
            stmt = stmt.where(Expense.category_id == category_id)
        return self.session.scalars(stmt).unique().all()

    def aggregate(self, window: Period, category_id: Optional[int] = None) -> Totals:
        stmt = select(
            func.coalesce(func.sum(Expense.amount_cents), 0),
            func.count(Expense.id),
        ).where(
            Expense.user_id == self.user_id,
            Expense.date.between(window.start, window.end),
        )
        if category_id is not None:
            stmt = stmt.where(Expense.category_id == category_id)
        total, count = self.session.execute(stmt).one()
        return Totals(sum_cents=int(total or 0), count=int(count or 0))

    def sum_by_category(self, window: Period) -> list[tuple[int, int]]:
        stmt = (
            select(
                Expense.category_id,
                func.coalesce(func.sum(Expense.amount_cents), 0).label("total"),
            )
            .where(
                Expense.user_id == self.user_id,
                Expense.date.between(window.start, window.end),
            )
            .group_by(Expense.category_id)
        )
        return [
            (row.category_id, int(row.total or 0)) for row in self.session.execute(stmt)
        ]

    def recent(self, limit: int = 5) -> list[Expense]:
        stmt = (
            self._base()
            .where(Expense.user_id == self.user_id)
            .order_by(Expense.date.desc(), Expense.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).unique().all()


class IncomeService:
    def __init__(
        self, session: Session, user_id: str, user_name: Optional[str] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.user_name = user_name or "Unknown"

    def _base(self):
        return select(Income).options(joinedload(Income.category))

    def get(self, income_id: int) -> Income:
        stmt = self._base().where(
            Income.user_id == self.user_id, Income.id == income_id
        )
        income = self.session.scalar(stmt)
        if not income:
            raise NotFoundError("Income not found")
        return income

    def create(self, data: IncomeIn) -> Income:
        _require_category(self.session, data.category_id, CategoryType.income)
        income = Income(
            user_id=self.user_id,
            user_name=self.user_name,
            date=data.date,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            source=data.source.strip(),
            description=data.description,
        )
        self.session.add(income)
        self.session.commit()
        return self.get(income.id)

    def update(self, income_id: int, data: IncomeIn) -> Income:
        income = self.get(income_id)
        _require_category(self.session, data.category_id, CategoryType.income)
        income.date = data.date
        income.amount_cents = data.amount_cents
        income.category_id = data.category_id
        income.source = data.source.strip()
        income.description = data.description
        income.user_name = self.user_name
        self.session.commit()
        self.session.expire(income)
        return self.get(income.id)

    def delete(self, income_id: int) -> None:
        income = self.get(income_id)
        self.session.delete(income)
        self.session.commit()

    def _filtered(self, stmt, filters: IncomeFilters):
        stmt = stmt.where(Income.user_id == self.user_id)
        if filters.category_id:
            stmt = stmt.where(Income.category_id == filters.category_id)
        if filters.start:
            stmt = stmt.where(Income.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Income.date <= filters.end)
        if filters.search:
            like = f"%{filters.search.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(func.coalesce(Income.description, "")).like(like),
                    func.lower(Income.source).like(like),
                )
            )
        return stmt

    def list(
        self, filters: IncomeFilters, page: int = 1, limit: int = 50
    ) -> tuple[list[Income], int]:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        stmt = (
            self._filtered(self._base(), filters)
            .order_by(Income.date.desc(), Income.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        count_stmt = self._filtered(select(func.count(Income.id)), filters)
        total = int(self.session.execute(count_stmt).scalar_one() or 0)
        return self.session.scalars(stmt).all(), total

    def aggregate(self, window: Period, category_id: Optional[int] = None) -> Totals:
        stmt = select(
            func.coalesce(func.sum(Income.amount_cents), 0),
            func.count(Income.id),
        ).where(
            Income.user_id == self.user_id,
            Income.date.between(window.start, window.end),
        )
        if category_id is not None:
            stmt = stmt.where(Income.category_id == category_id)
        total, count = self.session.execute(stmt).one()
        return Totals(sum_cents=int(total or 0), count=int(count or 0))

    def recent(self, limit: int = 5) -> list[Income]:
        stmt = (
            self._base()
            .where(Income.user_id == self.user_id)
            .order_by(Income.date.desc(), Income.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()


def budget_with_spent(budget: BudgetOut, spent_cents: int) -> BudgetWithSpentOut:
    percent = utilization(spent_cents, budget.amount_cents)
    return BudgetWithSpentOut(
        **budget.model_dump(),
        spent_cents=spent_cents,
        utilization=percent,
        status=budget_status(percent),
    )


class BudgetService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .outerjoin(Category, Category.id == Budget.category_id)
            .where(Budget.user_id == self.user_id)
            .order_by(
                Budget.category_id.is_(None).desc(),
                Category.name.asc(),
                Budget.period.asc(),
                Budget.id.asc(),
            )
        )
        return self.session.scalars(stmt).unique().all()

    def get(self, budget_id: int) -> Budget:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id, Budget.id == budget_id)
        )
        budget = self.session.scalar(stmt)
        if not budget:
            raise NotFoundError("Budget not found")
        return budget

    def _check_scope(
        self,
        period: BudgetPeriod,
        category_id: Optional[int],
        exclude_id: Optional[int] = None,
    ) -> None:
        if category_id is not None:
            _require_category(self.session, category_id, CategoryType.expense)
        stmt = select(Budget).where(
            Budget.user_id == self.user_id,
            Budget.period == period,
            Budget.category_id.is_(None)
            if category_id is None
            else Budget.category_id == category_id,
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        if self.session.scalar(stmt):
            raise ConflictError("A budget for this category and period already exists")

    def create(self, data: BudgetIn) -> Budget:
        self._check_scope(data.period, data.category_id)
        budget = Budget(
            user_id=self.user_id,
            amount_cents=data.amount_cents,
            period=data.period,
            category_id=data.category_id,
        )
        self.session.add(budget)
        self.session.commit()
        return self.get(budget.id)

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        fields = data.model_fields_set
        period = data.period if data.period is not None else budget.period
        category_id = budget.category_id
        if "category_id" in fields:
            category_id = data.category_id
        if period != budget.period or category_id != budget.category_id:
            self._check_scope(period, category_id, exclude_id=budget.id)
        budget.period = period
        budget.category_id = category_id
        if data.amount_cents is not None:
            budget.amount_cents = data.amount_cents
        self.session.commit()
        self.session.expire(budget)
        return self.get(budget.id)

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def with_spent(self, now: Optional[datetime] = None) -> list[BudgetWithSpentOut]:
        budgets = self.list_all()
        windows = budget_windows(now)
        expenses = ExpenseService(self.session, self.user_id)
        spent_by_key: dict[object, int] = {}
        for key in group_budgets(budgets):
            period, scope = key
            totals = expenses.aggregate(
                windows.for_period(period), scope_category_id(scope)
            )
            spent_by_key[key] = totals.sum_cents
        return [
            budget_with_spent(BudgetOut.model_validate(b), spent_by_key[budget_key(b)])
            for b in budgets
        ]
