from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import BudgetPeriod, CategoryType
from periods import to_local_naive


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    icon: str = Field(..., min_length=1, max_length=40)
    color: str = Field(..., min_length=1, max_length=9)


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, min_length=1, max_length=40)
    color: Optional[str] = Field(default=None, min_length=1, max_length=9)


class LabelIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: str = Field(..., min_length=1, max_length=9)


class _LocalDate(BaseModel):
    @field_validator("date", check_fields=False)
    @classmethod
    def _date_in_local_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return value
        return to_local_naive(value)


class _ReceiptPair(_LocalDate):
    @model_validator(mode="after")
    def _receipt_fields_come_in_pairs(self):
        url = getattr(self, "receipt_url", None)
        public_id = getattr(self, "receipt_public_id", None)
        if (url is None) != (public_id is None):
            raise ValueError(
                "receipt_url and receipt_public_id must be provided together"
            )
        return self


class ExpenseIn(_ReceiptPair):
    amount_cents: int = Field(..., gt=0)
    date: datetime
    payee: str = Field(..., min_length=1, max_length=100)
    category_id: int
    description: Optional[str] = Field(default=None, max_length=500)
    label_ids: list[int] = Field(default_factory=list)
    receipt_url: Optional[str] = Field(default=None, max_length=500)
    receipt_public_id: Optional[str] = Field(default=None, max_length=200)


class ExpenseUpdate(_ReceiptPair):
    """Partial update; only fields present in the payload are applied."""

    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, gt=0)
    date: Optional[datetime] = None
    payee: Optional[str] = Field(default=None, min_length=1, max_length=100)
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)
    label_ids: Optional[list[int]] = None
    receipt_url: Optional[str] = Field(default=None, max_length=500)
    receipt_public_id: Optional[str] = Field(default=None, max_length=200)


class IncomeIn(_LocalDate):
    amount_cents: int = Field(..., gt=0)
    date: datetime
    source: str = Field(..., min_length=1, max_length=200)
    category_id: int
    description: Optional[str] = Field(default=None, max_length=500)


class BudgetIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    period: BudgetPeriod
    category_id: Optional[int] = None


class BudgetUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, gt=0)
    period: Optional[BudgetPeriod] = None
    category_id: Optional[int] = None


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: CategoryType
    icon: str
    color: str
    is_default: bool


class CategoryWithUsageOut(CategoryOut):
    expense_count: int = 0
    income_count: int = 0


class LabelOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: str


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    date: datetime
    payee: str
    description: Optional[str]
    category_id: int
    category: Optional[CategoryOut]
    labels: list[LabelOut]
    receipt_url: Optional[str]
    receipt_public_id: Optional[str]
    user_name: str
    created_at: datetime


class IncomeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    date: datetime
    source: str
    description: Optional[str]
    category_id: int
    category: Optional[CategoryOut]
    user_name: str
    created_at: datetime


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    period: BudgetPeriod
    category_id: Optional[int]
    category: Optional[CategoryOut]


class BudgetWithSpentOut(BudgetOut):
    spent_cents: int
    utilization: float
    status: Literal["ok", "warning", "over"]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class ExpensePage(BaseModel):
    expenses: list[ExpenseOut]
    pagination: Pagination


class IncomePage(BaseModel):
    incomes: list[IncomeOut]
    pagination: Pagination


class ReceiptOut(BaseModel):
    url: str
    public_id: str


class StatValue(BaseModel):
    value: int
    count: int
    change: float


class DashboardStats(BaseModel):
    income: StatValue
    expenses: StatValue
    net_balance: int
    budget_alerts: int


class ChartSlice(BaseModel):
    category_id: int
    name: str
    value: int
    color: str


class DashboardMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    range: Literal["monthly", "yearly", "custom"]
    from_: datetime = Field(..., alias="from")
    to: datetime


class DashboardOut(BaseModel):
    stats: DashboardStats
    recent_expenses: list[ExpenseOut]
    recent_incomes: list[IncomeOut]
    budgets: list[BudgetWithSpentOut]
    chart_data: list[ChartSlice]
    meta: DashboardMeta
