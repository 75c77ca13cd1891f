"""Tests for the settlement API endpoints."""

import pytest
from fastapi.testclient import TestClient

from backoffice.database import get_db
from backoffice.domain.settlement.router import get_settlement_orchestrator
from backoffice.main import app
from backoffice.services.billcom_service import BillingPlatformError


@pytest.fixture
def test_client(db, orchestrator) -> TestClient:
    """FastAPI test client wired to the test session and fake platform."""
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settlement_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides = {}


class TestApproveEndpoint:
    """Test suite for POST /proposals/{id}/approve."""

    def test_approve_settles(self, test_client: TestClient, make_customer, make_proposal) -> None:
        proposal = make_proposal(make_customer())

        response = test_client.post(f"/proposals/{proposal.id}/approve")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["outcome"] == "settled"
        assert data["invoiceId"] == "00e01INV001"
        assert isinstance(data["jobId"], str)
        assert data["jobNumber"] == "JOB-20250114-001"
        assert data["merged"] is False
        assert data["error"] is None

    def test_failure_is_structured(self, test_client: TestClient, platform, make_customer, make_proposal) -> None:
        platform.create_invoice.side_effect = BillingPlatformError("Bill.com invoice creation failed: down")
        proposal = make_proposal(make_customer())

        response = test_client.post(f"/proposals/{proposal.id}/approve")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["outcome"] == "not_invoiced"
        assert "down" in data["error"]

    def test_unknown_proposal(self, test_client: TestClient) -> None:
        response = test_client.post("/proposals/9999/approve")

        assert response.status_code == 404
        assert response.json()["detail"] == "Proposal not found"


class TestStageInvoiceEndpoint:
    """Test suite for POST /proposals/{id}/stage-invoices/{stage}."""

    def test_final_invoice(self, test_client: TestClient, make_customer, make_proposal) -> None:
        proposal = make_proposal(make_customer())
        test_client.post(f"/proposals/{proposal.id}/approve")

        response = test_client.post(f"/proposals/{proposal.id}/stage-invoices/final")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["stage"] == "final"
        assert data["invoiceLink"].startswith("https://app.bill.com/Invoice/")

    def test_invalid_stage(self, test_client: TestClient, make_customer, make_proposal) -> None:
        proposal = make_proposal(make_customer())

        response = test_client.post(f"/proposals/{proposal.id}/stage-invoices/closing")

        assert response.status_code == 400

    def test_unknown_proposal(self, test_client: TestClient) -> None:
        response = test_client.post("/proposals/9999/stage-invoices/deposit")

        assert response.status_code == 404


class TestSettlementStatusEndpoint:
    """Test suite for GET /proposals/{id}/settlement."""

    def test_status_after_approval(self, test_client: TestClient, make_customer, make_proposal) -> None:
        proposal = make_proposal(make_customer())
        approved = test_client.post(f"/proposals/{proposal.id}/approve").json()

        response = test_client.get(f"/proposals/{proposal.id}/settlement")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "approved"
        assert data["stages"]["deposit"]["status"] == "SENT"
        assert data["stages"]["roughin"]["invoiceId"] is None
        assert data["jobId"] == approved["jobId"]
        assert data["jobNumber"] == "JOB-20250114-001"
        assert data["jobAutoCreated"] is True

    def test_unknown_proposal(self, test_client: TestClient) -> None:
        assert test_client.get("/proposals/9999/settlement").status_code == 404


def test_health(test_client: TestClient) -> None:
    response = test_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
