"""
Test suite for the REST API

Exercises the endpoints through FastAPI's TestClient against an in-memory
engine.
"""

import pytest
from datetime import date
from fastapi.testclient import TestClient

from microloan import api
from microloan.api import app, MicroloanSystem
from microloan.config import MicroloanConfig
from microloan.exceptions import StorageError
from microloan.storage import InMemoryStorage


class BrokenStorage(InMemoryStorage):
    """Storage whose reads fail with an internal error"""

    def load(self, table_name, record_id):
        raise StorageError("connection to 10.0.0.5 refused for user admin password=secret")


@pytest.fixture
def system():
    original = api.microloan_system
    api.microloan_system = MicroloanSystem(InMemoryStorage(), MicroloanConfig(database_url="memory://"))
    yield api.microloan_system
    api.microloan_system = original


@pytest.fixture
def client(system):
    return TestClient(app)


def create_loan(client, **overrides):
    payload = {
        "client_id": "CLIENT001",
        "route_id": "ROUTE001",
        "collector_id": "COLLECTOR001",
        "principal": "300000",
        "flat_rate": "0.20",
        "term_count": 3,
        "periodicity": "weekly",
        "disbursement_date": date.today().isoformat(),
    }
    payload.update(overrides)
    return client.post("/loans", json=payload)


class TestLoanEndpoints:
    """Test loan endpoints"""

    def test_health(self, client):
        """Test health check"""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_create_and_fetch_loan(self, client):
        """Test a loan is created with its schedule"""
        response = create_loan(client)
        assert response.status_code == 201
        loan = response.json()["loan"]
        assert loan["total_amount"] == "360000"
        assert loan["installment_value"] == "120000"
        assert loan["status"] == "active"

        fetched = client.get(f"/loans/{loan['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["loan"]["id"] == loan["id"]

        schedule = client.get(f"/loans/{loan['id']}/schedule").json()["schedule"]
        assert [i["sequence_number"] for i in schedule] == [1, 2, 3]
        assert all(i["scheduled_value"] == "120000" for i in schedule)

    def test_invalid_loan(self, client):
        """Test validation errors map to 422"""
        response = create_loan(client, term_count=0)
        assert response.status_code == 422

    def test_unknown_loan(self, client):
        """Test missing loans map to 404"""
        assert client.get("/loans/LOAN-MISSING").status_code == 404

    def test_arrears_summary(self, client):
        """Test the arrears endpoint reports the loan summary"""
        loan_id = create_loan(client).json()["loan"]["id"]
        response = client.get(f"/loans/{loan_id}/arrears")
        assert response.status_code == 200
        body = response.json()
        assert body["overdue_count"] == 0
        assert body["summary"]["outstanding_balance"] == "360000"


class TestPaymentEndpoints:
    """Test allocation and reversal endpoints"""

    def test_allocate(self, client):
        """Test 150,000 pays the first installment and part of the second"""
        loan_id = create_loan(client).json()["loan"]["id"]

        response = client.post(f"/loans/{loan_id}/payments", json={"amount": "150000"})
        assert response.status_code == 201
        body = response.json()
        assert [i["status"] for i in body["installments"]] == ["paid", "partially_paid"]
        assert [p["amount"] for p in body["payments"]] == ["120000", "30000"]
        assert body["outstanding_balance"] == "210000"
        assert body["loan_status"] == "active"

    def test_overpayment_rejected(self, client):
        """Test an amount above the balance maps to 422"""
        loan_id = create_loan(client).json()["loan"]["id"]
        response = client.post(f"/loans/{loan_id}/payments", json={"amount": "360001"})
        assert response.status_code == 422
        assert "exceeds" in response.json()["detail"]

    @pytest.mark.parametrize("amount", ["NaN", "sNaN", "Infinity"])
    def test_non_finite_payment(self, client, amount):
        """Test NaN and infinite payments map to 422"""
        loan_id = create_loan(client).json()["loan"]["id"]
        response = client.post(f"/loans/{loan_id}/payments", json={"amount": amount})
        assert response.status_code == 422

    def test_stale_version_conflict(self, client):
        """Test a stale expected version maps to 409"""
        loan_id = create_loan(client).json()["loan"]["id"]
        response = client.post(
            f"/loans/{loan_id}/payments", json={"amount": "1000", "expected_version": 99}
        )
        assert response.status_code == 409

    def test_reversals(self, client):
        """Test both reversal endpoints"""
        loan_id = create_loan(client).json()["loan"]["id"]
        body = client.post(f"/loans/{loan_id}/payments", json={"amount": "150000"}).json()
        first_id = body["installments"][0]["id"]
        partial_payment_id = body["payments"][1]["id"]

        response = client.delete(f"/payments/{partial_payment_id}")
        assert response.status_code == 200
        assert response.json()["installment_status"] == "pending"
        assert response.json()["outstanding_balance"] == "240000"

        response = client.delete(f"/installments/{first_id}/payments")
        assert response.status_code == 200
        assert response.json()["payments_removed"] == 1
        assert response.json()["outstanding_balance"] == "360000"

        assert client.delete(f"/payments/{partial_payment_id}").status_code == 404

    def test_storage_failure_hides_internals(self, client, system):
        """Test storage failures map to 503 without leaking details"""
        system.loan_manager.storage = BrokenStorage()
        response = client.get("/loans/LOAN001")
        assert response.status_code == 503
        assert response.json()["detail"] == "Storage temporarily unavailable, please retry"
        assert "secret" not in response.text


class TestReconciliationEndpoints:
    """Test float, expense and reconciliation endpoints"""

    def test_route_day_flow(self, client):
        """Test a balanced day is reconciled once"""
        day = "2024-03-04"
        opened = client.post("/floats", json={
            "route_id": "ROUTE002", "collector_id": "COLLECTOR002",
            "float_date": day, "float_amount": "200000"
        })
        assert opened.status_code == 201
        float_id = opened.json()["float"]["id"]
        assert [f["id"] for f in client.get("/floats/pending").json()["floats"]] == [float_id]

        expense = client.post("/expenses", json={
            "route_id": "ROUTE002", "collector_id": "COLLECTOR002",
            "expense_date": day, "amount": "20000", "category": "fuel"
        })
        assert expense.status_code == 201
        expense_id = expense.json()["expense"]["id"]
        approved = client.post(f"/expenses/{expense_id}/approve", json={"reviewed_by": "SUPERVISOR"})
        assert approved.json()["expense"]["approval_status"] == "approved"

        assert client.post(f"/floats/{float_id}/finish").json()["float"]["status"] == "finished"

        request = {
            "reconciliation_date": day, "route_id": "ROUTE002",
            "collector_id": "COLLECTOR002", "actual_returned": "180000"
        }
        response = client.post("/reconciliations", json=request)
        assert response.status_code == 201
        reconciliation = response.json()["reconciliation"]
        assert reconciliation["theoretical"] == "180000"
        assert reconciliation["difference"] == "0"
        assert reconciliation["classification"] == "balanced"

        assert client.post("/reconciliations", json=request).status_code == 409
        assert client.get("/floats/pending").json()["floats"] == []

        statistics = client.get("/reconciliations/statistics").json()
        assert statistics["total"] == 1
        assert statistics["by_classification"]["balanced"] == 1

    def test_duplicate_float(self, client):
        """Test a second float for the same group maps to 409"""
        payload = {
            "route_id": "ROUTE002", "collector_id": "COLLECTOR002",
            "float_date": "2024-03-04", "float_amount": "200000"
        }
        assert client.post("/floats", json=payload).status_code == 201
        assert client.post("/floats", json=payload).status_code == 409

    def test_audit_integrity(self, client):
        """Test the audit chain verifies after API activity"""
        create_loan(client)
        body = client.get("/audit/integrity").json()
        assert body["valid"]
        assert body["total_events"] >= 1

    def test_list_and_fetch_reconciliations(self, client):
        """Test reconciliations can be listed with filters and fetched singly"""
        for route_id, returned in (("ROUTE002", "100000"), ("ROUTE003", "90000")):
            client.post("/floats", json={
                "route_id": route_id, "collector_id": "COLLECTOR002",
                "float_date": "2024-03-04", "float_amount": "100000"
            })
            client.post("/reconciliations", json={
                "reconciliation_date": "2024-03-04", "route_id": route_id,
                "collector_id": "COLLECTOR002", "actual_returned": returned
            })

        everything = client.get("/reconciliations").json()["reconciliations"]
        assert len(everything) == 2

        shortfalls = client.get("/reconciliations", params={"classification": "shortfall"})
        assert [r["route_id"] for r in shortfalls.json()["reconciliations"]] == ["ROUTE003"]

        by_route = client.get("/reconciliations", params={
            "reconciliation_date": "2024-03-04", "route_id": "ROUTE002"
        }).json()["reconciliations"]
        assert [r["classification"] for r in by_route] == ["balanced"]

        assert client.get("/reconciliations", params={"classification": "lost"}).status_code == 422

        single = client.get("/reconciliations/2024-03-04/ROUTE003/COLLECTOR002")
        assert single.status_code == 200
        assert single.json()["reconciliation"]["difference"] == "-10000"

        assert client.get("/reconciliations/2024-03-05/ROUTE003/COLLECTOR002").status_code == 404
        assert client.get("/reconciliations/statistics").json()["total"] == 2

    @pytest.mark.parametrize("amount", ["NaN", "Infinity", "500000.4"])
    def test_unusable_cash_figures(self, client, amount):
        """Test non-finite or over-precise amounts map to 422"""
        response = client.post("/reconciliations", json={
            "reconciliation_date": "2024-03-04", "route_id": "ROUTE002",
            "collector_id": "COLLECTOR002", "actual_returned": amount,
            "float_amount": "500000"
        })
        assert response.status_code == 422
