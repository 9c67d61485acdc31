from decimal import Decimal

import pytest
from pydantic import ValidationError

from app.schemas.payout import PayoutCancelRequest, PayoutCreateRequest, PayoutStatusRequest
from app.schemas.responses import PayoutStatusResponse
from tests.conftest import NOW_TS, make_payout_request


class TestPayoutCreateRequest:
    def test_camel_case_aliases(self):
        request = make_payout_request()

        assert request.wallet_id == "sberbank"
        assert request.expired_offer_time == NOW_TS + 600
        assert request.amount == Decimal("1500.00")

    def test_snake_case_names_accepted(self):
        request = PayoutCreateRequest(
            destination="2202206123456789",
            amount="250",
            wallet_id="sbp",
            expired_time=NOW_TS,
            expired_offer_time=NOW_TS + 60,
        )

        assert request.callback_url is None

    def test_destination_is_stripped(self):
        assert make_payout_request(destination="  2202 2061  ").destination == "2202 2061"

    def test_blank_destination(self):
        with pytest.raises(ValidationError):
            make_payout_request(destination="   ")

    @pytest.mark.parametrize("amount", ["0", "-5", "10.001"])
    def test_bad_amount(self, amount):
        with pytest.raises(ValidationError):
            make_payout_request(amount=amount)

    def test_callback_url_must_be_http(self):
        with pytest.raises(ValidationError):
            make_payout_request(callback_url="ftp://merchant.example/cb")

    def test_empty_callback_url_is_none(self):
        assert make_payout_request(callback_url="").callback_url is None


class TestIdentifierRequests:
    def test_status_alias(self):
        assert PayoutStatusRequest(clientUniqueId="TX_abc-123").client_unique_id == "TX_abc-123"

    def test_rejects_unsafe_id(self):
        with pytest.raises(ValidationError):
            PayoutStatusRequest(clientUniqueId="TX_abc; drop")

    def test_cancel_reason_optional(self):
        assert PayoutCancelRequest(clientUniqueId="TX_abc").reason is None


class TestResponses:
    def test_status_response_serializes_camel_case(self):
        response = PayoutStatusResponse(
            client_unique_id="TX_abc",
            status=2,
            amount=1500.0,
            amount_paid=1500.0,
            receipt="",
            reason="",
            code=0,
            screenshot="1700000000000_TX_abc.jpg",
        )

        data = response.model_dump(by_alias=True)

        assert data["clientUniqueId"] == "TX_abc"
        assert data["amountPaid"] == 1500.0
