import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session

from auth import Identity, require_identity
from config import get_settings
from dashboard import DashboardService
from database import SessionLocal, session_scope
from models import CategoryType
from periods import local_now, parse_boundary, resolve_range
from receipts import LocalReceiptStorage, ReceiptStorage, ReceiptStorageError
from schemas import (
    BudgetIn,
    BudgetOut,
    BudgetUpdate,
    BudgetWithSpentOut,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    CategoryWithUsageOut,
    DashboardOut,
    ExpenseIn,
    ExpenseOut,
    ExpensePage,
    ExpenseUpdate,
    IncomeIn,
    IncomeOut,
    IncomePage,
    LabelIn,
    LabelOut,
    Pagination,
    ReceiptOut,
)
from seed import seed_default_categories
from services import (
    BudgetService,
    CategoryService,
    ConflictError,
    ExpenseFilters,
    ExpenseService,
    IncomeFilters,
    IncomeService,
    LabelService,
    NotFoundError,
    total_pages,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Expense Tracker")
app.mount(
    "/receipts",
    StaticFiles(directory=str(settings.receipts_dir), check_dir=False),
    name="receipts",
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    return SessionLocal


def get_receipt_storage() -> ReceiptStorage:
    return LocalReceiptStorage()


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        seed_default_categories(session)
    logger.info("Default categories ensured")


def service_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _boundary(value: Optional[str], *, end: bool) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_boundary(value, end=end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/dashboard", response_model=DashboardOut)
def api_dashboard(
    request: Request,
    identity: Identity = Depends(require_identity),
    session_factory=Depends(get_session_factory),
):
    now = local_now()
    try:
        dashboard_range = resolve_range(
            request.query_params.get("range"),
            request.query_params.get("from"),
            request.query_params.get("to"),
            now=now,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        return DashboardService(session_factory, identity.user_id).build(
            dashboard_range, now=now
        )
    except Exception as exc:
        logging.exception("Error fetching dashboard data")
        raise HTTPException(
            status_code=500, detail="Failed to fetch dashboard data"
        ) from exc


@app.get("/api/expenses", response_model=ExpensePage)
def list_expenses(
    category_id: Optional[int] = None,
    payee: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    filters = ExpenseFilters(
        category_id=category_id,
        payee=payee,
        start=_boundary(start, end=False),
        end=_boundary(end, end=True),
        search=search,
    )
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    items, total = ExpenseService(db, identity.user_id).list(filters, page, limit)
    return ExpensePage(
        expenses=[ExpenseOut.model_validate(item) for item in items],
        pagination=Pagination(
            page=page, limit=limit, total=total, total_pages=total_pages(total, limit)
        ),
    )


@app.post("/api/expenses", response_model=ExpenseOut, status_code=201)
def create_expense(
    data: ExpenseIn,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
    receipts: ReceiptStorage = Depends(get_receipt_storage),
):
    service = ExpenseService(db, identity.user_id, identity.display_name, receipts)
    try:
        return service.create(data)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.get("/api/expenses/{expense_id}", response_model=ExpenseOut)
def get_expense(
    expense_id: int,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        return ExpenseService(db, identity.user_id).get(expense_id)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.patch("/api/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense(
    expense_id: int,
    data: ExpenseUpdate,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
    receipts: ReceiptStorage = Depends(get_receipt_storage),
):
    service = ExpenseService(db, identity.user_id, identity.display_name, receipts)
    try:
        return service.update(expense_id, data)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
    receipts: ReceiptStorage = Depends(get_receipt_storage),
):
    service = ExpenseService(db, identity.user_id, receipts=receipts)
    try:
        service.delete(expense_id)
    except ValueError as exc:
        raise service_error(exc) from exc
    return {"success": True}


@app.get("/api/incomes", response_model=IncomePage)
def list_incomes(
    category_id: Optional[int] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    filters = IncomeFilters(
        category_id=category_id,
        start=_boundary(start, end=False),
        end=_boundary(end, end=True),
        search=search,
    )
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    items, total = IncomeService(db, identity.user_id).list(filters, page, limit)
    return IncomePage(
        incomes=[IncomeOut.model_validate(item) for item in items],
        pagination=Pagination(
            page=page, limit=limit, total=total, total_pages=total_pages(total, limit)
        ),
    )


@app.post("/api/incomes", response_model=IncomeOut, status_code=201)
def create_income(
    data: IncomeIn,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        return IncomeService(db, identity.user_id, identity.display_name).create(data)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.get("/api/incomes/{income_id}", response_model=IncomeOut)
def get_income(
    income_id: int,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        return IncomeService(db, identity.user_id).get(income_id)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.put("/api/incomes/{income_id}", response_model=IncomeOut)
def update_income(
    income_id: int,
    data: IncomeIn,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    service = IncomeService(db, identity.user_id, identity.display_name)
    try:
        return service.update(income_id, data)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.delete("/api/incomes/{income_id}")
def delete_income(
    income_id: int,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        IncomeService(db, identity.user_id).delete(income_id)
    except ValueError as exc:
        raise service_error(exc) from exc
    return {"success": True}


@app.get("/api/categories", response_model=list[CategoryWithUsageOut])
def list_categories(
    type: Optional[CategoryType] = None,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    service = CategoryService(db)
    usage = service.usage_counts()
    items = []
    for category in service.list_all(type):
        expense_count, income_count = usage.get(category.id, (0, 0))
        items.append(
            CategoryWithUsageOut(
                **CategoryOut.model_validate(category).model_dump(),
                expense_count=expense_count,
                income_count=income_count,
            )
        )
    return items


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db).create(data)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.get("/api/categories/{category_id}", response_model=CategoryOut)
def get_category(
    category_id: int,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db).get(category_id)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.patch("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    data: CategoryUpdate,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db).update(category_id, data)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        CategoryService(db).delete(category_id)
    except ValueError as exc:
        raise service_error(exc) from exc
    return {"success": True}


@app.get("/api/labels", response_model=list[LabelOut])
def list_labels(
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    return LabelService(db).list_all()


@app.post("/api/labels", response_model=LabelOut, status_code=201)
def create_label(
    data: LabelIn,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        return LabelService(db).create(data)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.patch("/api/labels/{label_id}", response_model=LabelOut)
def update_label(
    label_id: int,
    data: LabelIn,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        return LabelService(db).update(label_id, data)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.delete("/api/labels/{label_id}")
def delete_label(
    label_id: int,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        LabelService(db).delete(label_id)
    except ValueError as exc:
        raise service_error(exc) from exc
    return {"success": True}


@app.get("/api/budgets", response_model=list[BudgetWithSpentOut])
def list_budgets(
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    return BudgetService(db, identity.user_id).with_spent(local_now())


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    data: BudgetIn,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        return BudgetService(db, identity.user_id).create(data)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        return BudgetService(db, identity.user_id).get(budget_id)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.patch("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    data: BudgetUpdate,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        return BudgetService(db, identity.user_id).update(budget_id, data)
    except ValueError as exc:
        raise service_error(exc) from exc


@app.delete("/api/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        BudgetService(db, identity.user_id).delete(budget_id)
    except ValueError as exc:
        raise service_error(exc) from exc
    return {"success": True}


@app.post("/api/upload", response_model=ReceiptOut)
async def upload_receipt(
    file: UploadFile = File(...),
    identity: Identity = Depends(require_identity),
    receipts: ReceiptStorage = Depends(get_receipt_storage),
):
    content = await file.read()
    try:
        stored = receipts.upload(
            identity.user_id,
            file.filename or "",
            file.content_type or "",
            content,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ReceiptStorageError as exc:
        logging.exception("Error storing receipt")
        raise HTTPException(status_code=500, detail="Failed to upload file") from exc
    return ReceiptOut(url=stored.url, public_id=stored.public_id)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
