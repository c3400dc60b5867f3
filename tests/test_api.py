import pytest
from fastapi.testclient import TestClient

from auth import Identity, issue_token
from config import get_settings
from database import Base, build_engine, build_sessionmaker
from main import app, get_db, get_receipt_storage, get_session_factory
from models import CategoryType
from receipts import LocalReceiptStorage, owner_tag
from schemas import CategoryIn
from services import CategoryService


def _auth(user_id: str, name: str) -> dict[str, str]:
    token = issue_token(Identity(user_id=user_id, display_name=name))
    return {"Authorization": f"Bearer {token}"}


ALICE = _auth("user-a", "Alice")
BOB = _auth("user-b", "Bob")


@pytest.fixture
def api(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'api.db'}")
    Base.metadata.create_all(engine)
    factory = build_sessionmaker(engine)

    def override_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    storage = LocalReceiptStorage(root=tmp_path / "receipts", base_url="/receipts")
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_session_factory] = lambda: factory
    app.dependency_overrides[get_receipt_storage] = lambda: storage
    with factory() as session:
        travel = CategoryService(session).create(
            CategoryIn(
                name="Travel",
                type=CategoryType.expense,
                icon="plane",
                color="#3498DB",
            )
        )
    client = TestClient(app)
    client.travel_id = travel.id
    client.receipts_dir = storage.root
    yield client
    app.dependency_overrides.clear()


def _create_expense(client, headers, **overrides):
    payload = {
        "amount_cents": 1500,
        "date": "2024-03-05T10:00:00",
        "payee": get_settings().payees[0],
        "category_id": client.travel_id,
        "description": "Train tickets",
    }
    payload.update(overrides)
    return client.post("/api/expenses", json=payload, headers=headers)


def test_requests_without_valid_token_are_unauthorized(api) -> None:
    assert api.get("/api/dashboard").status_code == 401
    assert api.get("/api/expenses").status_code == 401
    bad = {"Authorization": "Bearer not-a-token"}
    assert api.get("/api/budgets", headers=bad).status_code == 401


def test_expense_crud_is_scoped_to_the_caller(api) -> None:
    created = _create_expense(api, ALICE)
    assert created.status_code == 201
    body = created.json()
    assert body["user_name"] == "Alice"
    assert body["category"]["name"] == "Travel"
    expense_id = body["id"]

    assert api.get(f"/api/expenses/{expense_id}", headers=BOB).status_code == 404
    assert api.delete(f"/api/expenses/{expense_id}", headers=BOB).status_code == 404

    patched = api.patch(
        f"/api/expenses/{expense_id}", json={"amount_cents": 2500}, headers=ALICE
    )
    assert patched.status_code == 200
    assert patched.json()["amount_cents"] == 2500
    assert patched.json()["description"] == "Train tickets"

    listing = api.get("/api/expenses", params={"search": "train"}, headers=ALICE)
    assert listing.json()["pagination"]["total"] == 1
    assert api.get("/api/expenses", headers=BOB).json()["expenses"] == []

    deleted = api.delete(f"/api/expenses/{expense_id}", headers=ALICE)
    assert deleted.json() == {"success": True}
    assert api.get(f"/api/expenses/{expense_id}", headers=ALICE).status_code == 404


def test_invalid_expense_payloads(api) -> None:
    assert _create_expense(api, ALICE, amount_cents=0).status_code == 422
    assert _create_expense(api, ALICE, payee="Stranger").status_code == 400
    assert _create_expense(api, ALICE, category_id=9999).status_code == 400
    assert (
        _create_expense(api, ALICE, receipt_url="/receipts/a.png").status_code == 422
    )


def test_duplicate_budget_is_a_conflict(api) -> None:
    payload = {"amount_cents": 1000, "period": "weekly"}
    assert api.post("/api/budgets", json=payload, headers=ALICE).status_code == 201
    assert api.post("/api/budgets", json=payload, headers=ALICE).status_code == 409
    assert api.post("/api/budgets", json=payload, headers=BOB).status_code == 201

    budgets = api.get("/api/budgets", headers=ALICE).json()
    assert len(budgets) == 1
    assert budgets[0]["status"] == "ok"
    assert budgets[0]["spent_cents"] == 0


def test_category_rules_over_http(api) -> None:
    patched = api.patch(
        f"/api/categories/{api.travel_id}", json={"type": "INCOME"}, headers=ALICE
    )
    assert patched.status_code == 422

    _create_expense(api, ALICE)
    deleted = api.delete(f"/api/categories/{api.travel_id}", headers=ALICE)
    assert deleted.status_code == 409

    listing = api.get("/api/categories", params={"type": "EXPENSE"}, headers=ALICE)
    assert listing.status_code == 200
    travel = listing.json()[0]
    assert travel["expense_count"] == 1
    assert travel["income_count"] == 0


def test_label_names_conflict(api) -> None:
    payload = {"name": "Client", "color": "#111111"}
    assert api.post("/api/labels", json=payload, headers=ALICE).status_code == 201
    duplicate = {"name": "client", "color": "#222222"}
    assert api.post("/api/labels", json=duplicate, headers=ALICE).status_code == 409


def test_dashboard_endpoint(api) -> None:
    _create_expense(api, ALICE)

    response = api.get(
        "/api/dashboard",
        params={"range": "custom", "from": "2024-03-01", "to": "2024-03-31"},
        headers=ALICE,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["stats"]["expenses"] == {"value": 1500, "count": 1, "change": 0.0}
    assert body["meta"]["range"] == "custom"
    assert body["meta"]["from"] == "2024-03-01T00:00:00"
    assert body["chart_data"][0]["name"] == "Travel"


def test_dashboard_rejects_bad_ranges(api) -> None:
    missing_to = api.get(
        "/api/dashboard",
        params={"range": "custom", "from": "2024-03-01"},
        headers=ALICE,
    )
    assert missing_to.status_code == 400
    unknown = api.get("/api/dashboard", params={"range": "weekly"}, headers=ALICE)
    assert unknown.status_code == 400


def test_dashboard_failure_is_a_server_error(api) -> None:
    def broken_factory():
        raise RuntimeError("database unavailable")

    app.dependency_overrides[get_session_factory] = lambda: broken_factory

    response = api.get("/api/dashboard", headers=ALICE)

    assert response.status_code == 500
    assert response.json() == {"detail": "Failed to fetch dashboard data"}


def test_upload_receipt(api) -> None:
    response = api.post(
        "/api/upload",
        files={"file": ("receipt.png", b"\x89PNG\r\n\x1a\n0000", "image/png")},
        headers=ALICE,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["url"].startswith(f"/receipts/expense-{owner_tag('user-a')}-")

    rejected = api.post(
        "/api/upload",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        headers=ALICE,
    )
    assert rejected.status_code == 400


def test_expense_cannot_claim_or_release_someone_elses_receipt(api) -> None:
    png = ("a.png", b"\x89PNG\r\n\x1a\n0000", "image/png")
    bobs = api.post("/api/upload", files={"file": png}, headers=BOB).json()

    for public_id in ("*", bobs["public_id"]):
        response = _create_expense(
            api, ALICE, receipt_url=bobs["url"], receipt_public_id=public_id
        )
        assert response.status_code == 400

    alices = api.post("/api/upload", files={"file": png}, headers=ALICE).json()
    created = _create_expense(
        api, ALICE, receipt_url=alices["url"], receipt_public_id=alices["public_id"]
    ).json()
    deleted = api.delete(f"/api/expenses/{created['id']}", headers=ALICE)
    assert deleted.status_code == 200

    assert [p.stem for p in api.receipts_dir.iterdir()] == [bobs["public_id"]]
