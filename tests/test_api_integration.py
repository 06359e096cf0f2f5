"""
Integration tests for the Loan Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from loan_ledger.api import create_app
from loan_ledger.api.auth import LedgerSystem, get_ledger_system, get_current_user
from loan_ledger.loans import Caller, UserRole
from loan_ledger.storage import InMemoryStorage


ADMIN = Caller(user_id="admin-1", role=UserRole.ADMIN)


@pytest.fixture
def system():
    """In-memory ledger so tests never touch the database file"""
    ledger = LedgerSystem(storage=InMemoryStorage())
    yield ledger
    ledger.close()


@pytest.fixture
def app(system):
    app = create_app()
    app.dependency_overrides[get_ledger_system] = lambda: system
    app.dependency_overrides[get_current_user] = lambda: ADMIN
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def create_customer(client, nrc="123456/10/1") -> str:
    r = client.post("/customers", json={
        "fullName": "Mutale Banda",
        "nrcNumber": nrc,
        "phoneNumber": "+260977000111",
        "city": "Lusaka"
    })
    assert r.status_code == 201
    return r.json()["customer"]["id"]


def create_loan(client, customer_id, amount=1000, period="3 Months") -> dict:
    r = client.post("/loans", json={
        "customerId": customer_id,
        "loanAmount": amount,
        "loanPeriod": period,
        "loanType": "Personal"
    })
    assert r.status_code == 201
    return r.json()["loan"]


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        data = r.json()
        assert data["name"] == "Loan Ledger API"
        assert "loans" in data["endpoints"]


class TestCustomerFlow:
    """End-to-end customer management tests"""

    def test_create_and_get_customer(self, client):
        customer_id = create_customer(client)
        create_loan(client, customer_id)

        r = client.get(f"/customers/{customer_id}")
        assert r.status_code == 200
        data = r.json()
        assert data["customer"]["full_name"] == "Mutale Banda"
        assert len(data["loans"]) == 1

    def test_duplicate_nrc(self, client):
        create_customer(client)
        r = client.post("/customers", json={
            "fullName": "Someone Else",
            "nrcNumber": "123456/10/1",
            "phoneNumber": "+260977000222"
        })
        assert r.status_code == 400

    def test_missing_name(self, client):
        r = client.post("/customers", json={"nrcNumber": "1/1/1", "phoneNumber": "0977"})
        assert r.status_code == 400
        assert r.json()["detail"] == "Full name is required"

    def test_unknown_customer(self, client):
        assert client.get("/customers/nope").status_code == 404


class TestLoanFlow:
    """Loan origination and decisions"""

    def test_create_loan(self, client):
        loan = create_loan(client, create_customer(client))

        assert loan["total_amount"] == "1300.00"
        assert loan["monthly_payment"] == "433.33"
        assert loan["remaining_balance"] == "1300.00"
        assert loan["status"] == "Not Paid"
        assert loan["completion_percentage"] == 0
        assert loan["is_overdue"] is False

    def test_missing_fields(self, client):
        r = client.post("/loans", json={"loanAmount": 1000})
        assert r.status_code == 400
        assert r.json()["detail"] == "Customer ID, loan amount, period, and type are required"

    def test_invalid_period(self, client):
        r = client.post("/loans", json={
            "customerId": create_customer(client),
            "loanAmount": 1000,
            "loanPeriod": "7 Months",
            "loanType": "Personal"
        })
        assert r.status_code == 400
        assert r.json()["detail"].startswith("Invalid loan period")

    def test_malformed_amount(self, client):
        r = client.post("/loans", json={"loanAmount": "lots"})
        assert r.status_code == 400

    def test_unknown_loan(self, client):
        assert client.get("/loans/missing").status_code == 404

    def test_subadmin_limit(self, app, client):
        customer_id = create_customer(client)
        app.dependency_overrides[get_current_user] = lambda: Caller(
            user_id="clerk", role=UserRole.SUBADMIN, max_loan_amount=Decimal("500")
        )

        r = client.post("/loans", json={
            "customerId": customer_id,
            "loanAmount": 1000,
            "loanPeriod": "1 Month",
            "loanType": "Personal"
        })
        assert r.status_code == 403

        r = client.get("/admin/jobs")
        assert r.status_code == 403

    def test_approve_emits_message(self, client):
        loan = create_loan(client, create_customer(client))

        r = client.put(f"/loans/{loan['id']}/approve")
        assert r.status_code == 200
        assert r.json()["loan"]["approval_status"] == "Approved"

        messages = client.get("/messages", params={"type": "loan_approved"}).json()
        assert messages["count"] == 1

    def test_reject_requires_reason(self, client):
        loan = create_loan(client, create_customer(client))
        assert client.put(f"/loans/{loan['id']}/reject", json={}).status_code == 400

        r = client.put(f"/loans/{loan['id']}/reject", json={"rejectionReason": "Insufficient income"})
        assert r.status_code == 200
        assert r.json()["loan"]["rejection_reason"] == "Insufficient income"

    def test_cancel_then_pay(self, client):
        loan = create_loan(client, create_customer(client))
        assert client.put(f"/loans/{loan['id']}/cancel").json()["loan"]["status"] == "Cancelled"

        r = client.post("/payments", json={"loanId": loan["id"], "paymentAmount": 100})
        assert r.status_code == 400

    def test_calculate(self, client):
        r = client.post("/loans/calculate", json={"loanAmount": 1000, "loanPeriod": "3 Months"})
        assert r.status_code == 200
        data = r.json()
        assert data["total_amount"] == "1300.00"
        assert data["monthly_payment"] == "433.33"

    def test_interest_rates(self, client):
        r = client.get("/loans/interest-rates")
        assert r.status_code == 200
        assert "interest_rates" in r.json()

    def test_list_with_bad_status(self, client):
        assert client.get("/loans", params={"status": "Sleeping"}).status_code == 400


class TestPaymentFlow:
    """Recording, reversing and settling payments"""

    def test_partial_payment_then_reversal(self, client):
        loan = create_loan(client, create_customer(client))

        r = client.post("/payments", json={
            "loanId": loan["id"],
            "paymentAmount": 500,
            "paymentMethod": "Cash"
        })
        assert r.status_code == 201
        data = r.json()
        assert data["loan_status"] == "Active"
        assert data["remaining_balance"] == "800.00"
        assert data["payment"]["receipt_number"].startswith("RCP-")
        payment_id = data["payment"]["id"]

        r = client.put(f"/payments/{payment_id}/reverse", json={"reversalReason": "Entered twice"})
        assert r.status_code == 200
        assert r.json()["loan_status"] == "Not Paid"
        assert r.json()["remaining_balance"] == "1300.00"

        r = client.put(f"/payments/{payment_id}/reverse", json={"reversalReason": "Again"})
        assert r.status_code == 400
        assert r.json()["detail"] == "Payment already reversed"

    def test_overpayment_rejected(self, client):
        loan = create_loan(client, create_customer(client))
        r = client.post("/payments", json={"loanId": loan["id"], "paymentAmount": "1300.01"})
        assert r.status_code == 400
        assert r.json()["detail"] == "Payment amount cannot exceed remaining balance"

    def test_missing_payment_fields(self, client):
        r = client.post("/payments", json={})
        assert r.status_code == 400

    def test_payment_for_unknown_loan(self, client):
        r = client.post("/payments", json={"loanId": "missing", "paymentAmount": 10})
        assert r.status_code == 404

    def test_full_payment_completes_and_notifies(self, client):
        loan = create_loan(client, create_customer(client))
        r = client.post("/payments", json={"loanId": loan["id"], "paymentAmount": 1300})
        assert r.json()["loan_status"] == "Completed"

        messages = client.get("/messages").json()
        assert messages["count"] == 1
        assert messages["unread_count"] == 1
        message = messages["messages"][0]
        assert message["title"] == "Loan Completed"

        r = client.put(f"/messages/{message['id']}/read")
        assert r.status_code == 200
        assert client.get("/messages").json()["unread_count"] == 0
        assert client.put("/messages/missing/read").status_code == 404

    def test_mobile_money_pending_then_confirmed(self, client):
        loan = create_loan(client, create_customer(client))
        r = client.post("/payments", json={
            "loanId": loan["id"],
            "paymentAmount": 300,
            "paymentMethod": "Mobile Money",
            "mobileMoneyDetails": {"provider": "Airtel", "phone": "0977000111"}
        })
        payment = r.json()["payment"]
        assert payment["status"] == "Pending"
        assert r.json()["remaining_balance"] == "1000.00"

        r = client.put(f"/payments/{payment['id']}/confirm")
        assert r.status_code == 200
        assert r.json()["payment"]["status"] == "Completed"

    def test_failed_payment_restores_balance(self, client):
        loan = create_loan(client, create_customer(client))
        payment = client.post("/payments", json={
            "loanId": loan["id"],
            "paymentAmount": 300,
            "paymentMethod": "Bank Transfer"
        }).json()["payment"]

        r = client.put(f"/payments/{payment['id']}/fail", json={"failureReason": "Bounced"})
        assert r.status_code == 200
        assert r.json()["remaining_balance"] == "1300.00"

    def test_receipt_and_history(self, client):
        loan = create_loan(client, create_customer(client))
        payment = client.post("/payments", json={"loanId": loan["id"], "paymentAmount": 500}).json()["payment"]

        receipt = client.get(f"/payments/{payment['id']}/receipt").json()["receipt"]
        assert receipt["amount"] == "K500.00"
        assert receipt["balance_after"] == "K800.00"

        history = client.get(f"/loans/{loan['id']}/payments").json()
        assert history["count"] == 1

        summary = client.get(f"/loans/{loan['id']}/summary").json()["summary"]
        assert summary["completed_payments"] == 1

        assert client.get("/payments/stats").status_code == 200


class TestAdminEndpoints:

    def test_jobs_listing_and_run(self, client):
        jobs = client.get("/admin/jobs").json()["jobs"]
        assert sorted(j["name"] for j in jobs) == ["due_soon_reminders", "monthly_summary", "overdue_sweep"]

        r = client.post("/admin/jobs/monthly_summary/run")
        assert r.status_code == 200
        assert r.json()["job"]["last_status"] == "success"
        assert client.get("/messages", params={"type": "system_alert"}).json()["count"] == 1

        assert client.post("/admin/jobs/unknown/run").status_code == 404

    def test_audit_verify(self, client):
        loan = create_loan(client, create_customer(client))
        client.post("/payments", json={"loanId": loan["id"], "paymentAmount": 100})

        result = client.get("/admin/audit/verify").json()
        assert result["valid"]
        assert result["total_events"] >= 3

        events = client.get(f"/admin/audit/loan/{loan['id']}").json()["events"]
        assert events[0]["event_type"] == "loan_created"
