from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from app.core.exceptions import (
    DatabaseError,
    NoOperatorsAvailableError,
    NotFoundError,
    PayoutValidationError,
    StaleStateError,
)
from app.schemas.responses import PayoutStatusResponse
from app.services.proof_storage import ProofStorage

TX_ID = "TX_3f2a9c1e-7b4d-4e8a-9f00-1234567890ab"


class TestHealth:
    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "active"

    def test_api_root(self, client):
        assert client.get("/api/").json() == {"status": "ok"}


class TestAuthentication:
    def test_missing_token(self, client, create_body):
        response = client.post("/api/payout/create", json=create_body)

        assert response.status_code == 401
        assert response.json()["error"] == "SecurityError"

    def test_wrong_token(self, client, create_body):
        response = client.post("/api/payout/create", json=create_body, headers={"token": "nope"})

        assert response.status_code == 401


class TestCreatePayout:
    def test_success_envelope(self, client, auth_headers, create_body, mock_payout_service):
        mock_payout_service.create = AsyncMock(return_value=SimpleNamespace(tx_id=TX_ID))

        response = client.post("/api/payout/create", json=create_body, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"external_id": TX_ID, "status": 1, "reason": "", "code": 0}
        request = mock_payout_service.create.call_args.args[0]
        assert request.wallet_id == "sberbank"
        assert request.expired_offer_time == create_body["expiredOfferTime"]

    def test_business_validation_envelope(self, client, auth_headers, create_body, mock_payout_service):
        mock_payout_service.create = AsyncMock(
            side_effect=PayoutValidationError("Amount is out of bounds", field="amount")
        )

        response = client.post("/api/payout/create", json=create_body, headers=auth_headers)

        assert response.status_code == 400
        assert response.json() == {
            "external_id": "",
            "status": 2,
            "reason": "Amount is out of bounds",
            "code": 400,
        }

    def test_malformed_body_uses_envelope(self, client, auth_headers, create_body, mock_payout_service):
        del create_body["walletId"]

        response = client.post("/api/payout/create", json=create_body, headers=auth_headers)

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == 2
        assert body["code"] == 400
        assert "walletId" in body["reason"]
        mock_payout_service.create.assert_not_called()

    def test_no_operators(self, client, auth_headers, create_body, mock_payout_service):
        mock_payout_service.create = AsyncMock(side_effect=NoOperatorsAvailableError(TX_ID, 1500))

        response = client.post("/api/payout/create", json=create_body, headers=auth_headers)

        assert response.status_code == 503
        body = response.json()
        assert body["external_id"] == TX_ID
        assert body["status"] == 2
        assert body["code"] == 503

    def test_internal_error(self, client, auth_headers, create_body, mock_payout_service):
        mock_payout_service.create = AsyncMock(
            side_effect=DatabaseError("Failed to create payout", operation="create_transaction")
        )

        response = client.post("/api/payout/create", json=create_body, headers=auth_headers)

        assert response.status_code == 500
        assert response.json() == {
            "external_id": "",
            "status": 2,
            "reason": "Internal server error",
            "code": 500,
        }


class TestPayoutStatus:
    def test_completed(self, client, auth_headers, mock_payout_service):
        mock_payout_service.get_status = AsyncMock(
            return_value=PayoutStatusResponse(
                client_unique_id=TX_ID,
                status=2,
                amount=1500.0,
                amount_paid=1500.0,
                screenshot=f"1700000000000_{TX_ID}.jpg",
            )
        )

        response = client.post("/api/payout/status", json={"clientUniqueId": TX_ID}, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["clientUniqueId"] == TX_ID
        assert body["status"] == 2
        assert body["amountPaid"] == 1500.0
        assert body["screenshot"].endswith(".jpg")

    def test_unknown_transaction(self, client, auth_headers, mock_payout_service):
        mock_payout_service.get_status = AsyncMock(side_effect=NotFoundError("Transaction", TX_ID))

        response = client.post("/api/payout/status", json={"clientUniqueId": TX_ID}, headers=auth_headers)

        assert response.status_code == 404
        body = response.json()
        assert body["status"] == 3
        assert body["reason"] == "Transaction not found"
        assert body["code"] == 404

    def test_invalid_identifier(self, client, auth_headers):
        response = client.post("/api/payout/status", json={"clientUniqueId": "a b"}, headers=auth_headers)

        assert response.status_code == 422


class TestCancelPayout:
    def test_cancel(self, client, auth_headers, mock_payout_service):
        mock_payout_service.cancel = AsyncMock(
            return_value=SimpleNamespace(tx_id=TX_ID, status="CANCELLED")
        )

        response = client.post("/api/payout/cancel", json={"clientUniqueId": TX_ID}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"clientUniqueId": TX_ID, "status": 3, "state": "CANCELLED"}
        mock_payout_service.cancel.assert_awaited_once_with(TX_ID)

    def test_cancel_with_reason(self, client, auth_headers, mock_payout_service):
        mock_payout_service.cancel = AsyncMock(
            return_value=SimpleNamespace(tx_id=TX_ID, status="CANCELLED")
        )

        client.post(
            "/api/payout/cancel",
            json={"clientUniqueId": TX_ID, "reason": "Merchant request"},
            headers=auth_headers,
        )

        mock_payout_service.cancel.assert_awaited_once_with(TX_ID, reason="Merchant request")

    def test_cancel_terminal_is_conflict(self, client, auth_headers, mock_payout_service):
        mock_payout_service.cancel = AsyncMock(side_effect=StaleStateError(TX_ID, "PENDING", "COMPLETED"))

        response = client.post("/api/payout/cancel", json={"clientUniqueId": TX_ID}, headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["tx_id"] == TX_ID


class TestScreenshot:
    @pytest.fixture
    def stored_proof(self, tmp_path, mock_proof_storage, mock_payout_store):
        storage = ProofStorage(str(tmp_path), max_size=1024, allowed_types=["image/jpeg"])
        filename = f"1700000000000_{TX_ID}.jpg"
        (tmp_path / filename).write_bytes(b"\xff\xd8image")
        mock_proof_storage.resolve.side_effect = storage.resolve
        mock_proof_storage.read = storage.read
        return filename

    def test_served_when_proof_exists(self, client, auth_headers, stored_proof, mock_payout_store):
        mock_payout_store.get_proof_by_path = AsyncMock(return_value=SimpleNamespace(path=stored_proof))

        response = client.get(f"/api/payout/screenshot/{stored_proof}", headers=auth_headers)

        assert response.status_code == 200
        assert response.content == b"\xff\xd8image"
        assert response.headers["content-type"] == "image/jpeg"
        mock_payout_store.get_proof_by_path.assert_awaited_once_with(stored_proof, TX_ID)

    def test_file_without_proof_row(self, client, auth_headers, stored_proof, mock_payout_store):
        mock_payout_store.get_proof_by_path = AsyncMock(return_value=None)

        response = client.get(f"/api/payout/screenshot/{stored_proof}", headers=auth_headers)

        assert response.status_code == 404

    def test_bad_filename(self, client, auth_headers, stored_proof):
        response = client.get("/api/payout/screenshot/notes.txt", headers=auth_headers)

        assert response.status_code == 400

    def test_requires_token(self, client, stored_proof):
        response = client.get(f"/api/payout/screenshot/{stored_proof}")

        assert response.status_code == 401


class TestRateAndBalance:
    def test_rate(self, client, mock_rate_aggregator):
        mock_rate_aggregator.get_rate.return_value = (92.5, 1735732800000)

        response = client.get("/api/rate")

        assert response.status_code == 200
        assert response.json() == {"rate": 92.5, "timestamp": 1735732800000}

    def test_rate_not_available(self, client, mock_rate_aggregator):
        mock_rate_aggregator.get_rate.side_effect = NotFoundError("Exchange rate", "USDT/RUB")

        response = client.get("/api/rate")

        assert response.status_code == 404

    def test_balance(self, client, mock_payout_store):
        mock_payout_store.total_operator_balance = AsyncMock(return_value=(55100.0, 4))

        response = client.get("/balance")

        assert response.status_code == 200
        assert response.json() == {"total": 55100.0, "users": 4}

    def test_balance_database_failure(self, client, mock_payout_store):
        mock_payout_store.total_operator_balance = AsyncMock(side_effect=RuntimeError("db down"))

        response = client.get("/balance")

        assert response.status_code == 500
        assert response.json()["error"] == "DatabaseError"


class TestMonitoring:
    def test_requires_key(self, client):
        assert client.get("/monitoring/errors").status_code == 401

    def test_summary(self, client):
        response = client.get("/monitoring/errors", headers={"X-Monitoring-Key": "test_monitoring_key"})

        assert response.status_code == 200
        assert "total_errors" in response.json()
