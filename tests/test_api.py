from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

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
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _register(client: TestClient, email: str = "owner@example.com") -> dict:
    response = client.post(
        "/api/auth/register",
        json={
            "first_name": "Owner",
            "last_name": "Person",
            "email": email,
            "password": "correct-horse",
        },
    )
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.json()['token']}"}


def _setup_ledger(client: TestClient, headers: dict) -> tuple[int, int]:
    account = client.post(
        "/api/accounts",
        json={"name": "Checking", "type": "checking", "balance": "1000.00"},
        headers=headers,
    )
    assert account.status_code == 201
    category = client.post(
        "/api/categories", json={"name": "Food", "type": "expense"}, headers=headers
    )
    assert category.status_code == 201
    return account.json()["id"], category.json()["id"]


def _txn_body(category_id: int, account_id, amount: str, kind: str = "expense") -> dict:
    return {
        "description": "Groceries",
        "amount": amount,
        "type": kind,
        "category_id": category_id,
        "account_id": account_id,
        "date": date(2025, 3, 10).isoformat(),
    }


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_requests_without_token_are_unauthorized(client: TestClient) -> None:
    response = client.get("/api/accounts")
    assert response.status_code == 401
    assert response.json()["code"] == "unauthorized"

    response = client.get("/api/accounts", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


def test_login_and_validate(client: TestClient) -> None:
    _register(client)

    bad = client.post(
        "/api/auth/login", json={"email": "owner@example.com", "password": "wrong"}
    )
    assert bad.status_code == 401

    good = client.post(
        "/api/auth/login",
        json={"email": "Owner@Example.com", "password": "correct-horse"},
    )
    assert good.status_code == 200
    token = good.json()["token"]

    validated = client.get(
        "/api/auth/validate", headers={"Authorization": f"Bearer {token}"}
    )
    assert validated.status_code == 200
    assert validated.json()["email"] == "owner@example.com"


def test_duplicate_registration_is_rejected(client: TestClient) -> None:
    _register(client)
    response = client.post(
        "/api/auth/register",
        json={
            "first_name": "Other",
            "last_name": "Person",
            "email": "owner@example.com",
            "password": "another-pass",
        },
    )
    assert response.status_code == 400
    assert response.json()["code"] == "duplicate_email"


def test_transaction_lifecycle_moves_balance(client: TestClient) -> None:
    headers = _register(client)
    account_id, category_id = _setup_ledger(client, headers)

    created = client.post(
        "/api/transactions",
        json=_txn_body(category_id, account_id, "50.00", "Expense"),
        headers=headers,
    )
    assert created.status_code == 201
    txn_id = created.json()["id"]
    assert created.json()["category_name"] == "Food"
    assert client.get(f"/api/accounts/{account_id}", headers=headers).json()[
        "balance"
    ] == "950.00"

    updated = client.put(
        f"/api/transactions/{txn_id}",
        json=_txn_body(category_id, account_id, "70.00"),
        headers=headers,
    )
    assert updated.status_code == 200
    assert client.get(f"/api/accounts/{account_id}", headers=headers).json()[
        "balance"
    ] == "930.00"

    deleted = client.delete(f"/api/transactions/{txn_id}", headers=headers)
    assert deleted.status_code == 204
    assert client.get(f"/api/transactions/{txn_id}", headers=headers).status_code == 404

    reconcile = client.get(f"/api/accounts/{account_id}/reconcile", headers=headers)
    assert reconcile.json()["balance"] == "1000.00"
    assert reconcile.json()["drift"] == "0.00"


def test_malformed_transactions_are_rejected(client: TestClient) -> None:
    headers = _register(client)
    account_id, category_id = _setup_ledger(client, headers)

    for amount in ("0", "-3.00", "1.234"):
        response = client.post(
            "/api/transactions",
            json=_txn_body(category_id, account_id, amount),
            headers=headers,
        )
        assert response.status_code == 422

    response = client.post(
        "/api/transactions",
        json=_txn_body(category_id, account_id, "5.00", "transfer"),
        headers=headers,
    )
    assert response.status_code == 422

    response = client.post(
        "/api/transactions",
        json=_txn_body(category_id + 100, account_id, "5.00"),
        headers=headers,
    )
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_category"


def test_other_users_resources_are_not_found(client: TestClient) -> None:
    owner = _register(client)
    account_id, category_id = _setup_ledger(client, owner)
    txn_id = client.post(
        "/api/transactions",
        json=_txn_body(category_id, account_id, "10.00"),
        headers=owner,
    ).json()["id"]
    intruder = _register(client, "intruder@example.com")

    assert client.get(f"/api/accounts/{account_id}", headers=intruder).status_code == 404
    assert client.get(f"/api/transactions/{txn_id}", headers=intruder).status_code == 404
    assert client.delete(f"/api/transactions/{txn_id}", headers=intruder).status_code == 404
    assert client.get(f"/api/accounts/{account_id}", headers=owner).json()[
        "balance"
    ] == "990.00"


def test_budget_conflict_and_progress(client: TestClient) -> None:
    headers = _register(client)
    account_id, category_id = _setup_ledger(client, headers)
    client.post(
        "/api/transactions",
        json=_txn_body(category_id, account_id, "150.00"),
        headers=headers,
    )
    body = {
        "category_id": category_id,
        "amount": "200.00",
        "start_date": "2025-03-01",
        "end_date": "2025-03-31",
        "alert_threshold": 70,
    }

    created = client.post("/api/budgets", json=body, headers=headers)
    assert created.status_code == 201
    data = created.json()
    assert data["spent"] == "150.00"
    assert data["remaining"] == "50.00"
    assert data["percent_spent"] == "75.00"
    assert data["should_alert"] is True

    duplicate = client.post("/api/budgets", json=body, headers=headers)
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "duplicate_budget"

    assert client.delete(f"/api/budgets/{data['id']}", headers=headers).status_code == 204
    assert client.get("/api/budgets", headers=headers).json() == []


def test_listing_dashboard_and_csv(client: TestClient) -> None:
    headers = _register(client)
    account_id, category_id = _setup_ledger(client, headers)
    salary = client.post(
        "/api/categories", json={"name": "Salary", "type": "income"}, headers=headers
    )
    assert salary.status_code == 201
    imported = client.post(
        "/api/transactions/import",
        content=(
            "Date,Description,Amount,Category,Type,Account\n"
            "2025-03-01,Lunch,12.50,Food,expense,Checking\n"
            "2025-03-02,Payday,500.00,Salary,income,Checking\n"
            "2025-03-03,Dinner,30.00,Food,expense,\n"
        ),
        headers={**headers, "Content-Type": "text/csv"},
    )
    assert imported.status_code == 201
    assert imported.json() == {"imported": 3}

    page = client.get("/api/transactions?limit=2", headers=headers).json()
    assert [t["description"] for t in page["items"]] == ["Dinner", "Payday"]
    assert page["has_more"] is True

    expenses = client.get("/api/transactions?type=expense", headers=headers).json()
    assert {t["description"] for t in expenses["items"]} == {"Lunch", "Dinner"}

    bad_period = client.get(
        "/api/transactions?period=custom&start=2025-03-05&end=2025-03-01",
        headers=headers,
    )
    assert bad_period.status_code == 400

    summary = client.get("/api/dashboard/summary", headers=headers).json()
    assert summary == {
        "total_income": "500.00",
        "total_expenses": "42.50",
        "net_balance": "457.50",
        "total_transactions": 3,
    }
    yearly = client.get("/api/dashboard/yearly-summary?year=2025", headers=headers)
    assert yearly.json()["expenses"] == "42.50"
    recent = client.get(
        "/api/dashboard/recent-transactions?limit=1", headers=headers
    ).json()
    assert [t["description"] for t in recent] == ["Dinner"]

    assert client.get(f"/api/accounts/{account_id}", headers=headers).json()[
        "balance"
    ] == "1487.50"

    exported = client.get("/api/transactions/export.csv", headers=headers)
    assert exported.status_code == 200
    assert exported.headers["content-type"].startswith("text/csv")
    assert exported.text.splitlines()[1].startswith("2025-03-01,Lunch,12.50")
