import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

import services
from database import Base
from main import app, get_db


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        token = test_client.get("/api/csrf-token").json()["token"]
        test_client.headers.update({"X-CSRF-Token": token})
        yield test_client
    app.dependency_overrides.clear()


def _setup(client):
    account = client.post("/api/accounts", json={"name": "Main", "balance_cents": 1000}).json()
    budget = client.post("/api/budgets/month/2025/march").json()
    category = client.post(
        f"/api/budgets/{budget['id']}/categories",
        json={"name": "Food", "type": "variable", "budget_amount_cents": 300},
    ).json()
    return account, budget, category


def test_mutations_require_csrf_header(client) -> None:
    response = client.post(
        "/api/accounts", json={"name": "Main"}, headers={"X-CSRF-Token": "forged"}
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid CSRF token"


def test_transaction_roundtrip(client) -> None:
    account, budget, category = _setup(client)

    created = client.post(
        "/api/transactions",
        json={
            "type": "expense",
            "amount_cents": 120,
            "category_id": category["id"],
            "account_id": account["id"],
            "description": "Market",
            "date": "2025-03-04",
        },
    )
    assert created.status_code == 201
    txn = created.json()

    assert client.get(f"/api/accounts/{account['id']}").json()["balance_cents"] == 880
    patched = client.patch(f"/api/transactions/{txn['id']}", json={"amount_cents": 200})
    assert patched.json()["amount_cents"] == 200
    assert client.get(f"/api/categories/{category['id']}").json()["spent_cents"] == 200

    listing = client.get("/api/transactions", params={"year": 2025, "month": "3"}).json()
    assert [item["id"] for item in listing["items"]] == [txn["id"]]
    assert listing["has_more"] is False

    assert client.delete(f"/api/transactions/{txn['id']}").status_code == 204
    assert client.get(f"/api/accounts/{account['id']}").json()["balance_cents"] == 1000
    summary = client.get(f"/api/budgets/{budget['id']}/summary").json()
    assert summary["total_spent_cents"] == 0


def test_error_mapping(client) -> None:
    account, _, category = _setup(client)

    missing = client.get("/api/transactions/999")
    assert missing.status_code == 404

    zero = client.post(
        "/api/transactions",
        json={
            "type": "expense",
            "amount_cents": 0,
            "category_id": category["id"],
            "date": "2025-03-04",
        },
    )
    assert zero.status_code == 400

    malformed = client.post(
        "/api/transactions",
        json={
            "type": "income",
            "amount_cents": 10,
            "category_id": category["id"],
            "receiving_account_id": account["id"],
            "date": "2025-03-04",
        },
    )
    assert malformed.status_code == 422

    bad_month = client.get("/api/budgets/month/2025/Brumaire")
    assert bad_month.status_code == 400


def test_partial_mutation_maps_to_conflict(client, monkeypatch) -> None:
    account, _, category = _setup(client)

    def boom(*_args, **_kwargs):
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(services, "increment_category", boom)

    response = client.post(
        "/api/transactions",
        json={
            "type": "expense",
            "amount_cents": 50,
            "category_id": category["id"],
            "account_id": account["id"],
            "date": "2025-03-04",
        },
    )

    assert response.status_code == 409
    body = response.json()
    assert body["rolled_back"] is True
    assert body["failed_step"] == f"category:{category['id']}"


def test_missing_user_is_unauthorized(client, monkeypatch) -> None:
    monkeypatch.setattr(services.get_settings(), "user_id", None)

    assert client.get("/api/accounts").status_code == 401


def test_transfer_and_reconcile_endpoints(client) -> None:
    account, budget, _ = _setup(client)
    savings = client.post("/api/accounts", json={"name": "Savings"}).json()

    transfer = client.post(
        "/api/transfers",
        json={
            "from_account_id": account["id"],
            "to_account_id": savings["id"],
            "amount_cents": 250,
            "transfer_date": "2025-03-05",
        },
    )
    assert transfer.status_code == 201

    drifts = client.post("/api/accounts/reconcile").json()["items"]
    assert {d["id"]: d["actual_cents"] for d in drifts} == {
        account["id"]: 750,
        savings["id"]: 250,
    }
    assert not any(d["corrected"] for d in drifts)

    consistency = client.get(f"/api/budgets/{budget['id']}/consistency").json()
    assert consistency["is_valid"] is False

    deleted = client.delete("/api/budgets/month/2025/3")
    assert deleted.json() == {"deleted_transactions": 0}
