import json

from app.core.middleware import REDACTED, redact_body, redact_headers


class TestRedaction:
    def test_payee_fields_masked(self):
        body = json.dumps({
            "destination": "2202206123456789",
            "amount": 1500,
            "walletId": "sbp",
            "sbp_bank": "tinkoff",
            "callback_url": "https://merchant.example/callback",
        }).encode()

        fields = redact_body(body)

        assert fields["destination"] == REDACTED
        assert fields["sbp_bank"] == REDACTED
        assert fields["callback_url"] == REDACTED
        assert fields["amount"] == 1500
        assert fields["walletId"] == "sbp"

    def test_transaction_id_kept(self):
        assert redact_body(b'{"clientUniqueId": "TX_abc"}') == {"clientUniqueId": "TX_abc"}

    def test_non_object_bodies_ignored(self):
        assert redact_body(b"") is None
        assert redact_body(b"[1, 2]") is None
        assert redact_body(b"\xff\xfe") is None

    def test_credential_headers_masked(self):
        headers = redact_headers({"token": "secret", "X-Monitoring-Key": "k", "content-type": "application/json"})

        assert headers == {"token": REDACTED, "X-Monitoring-Key": REDACTED, "content-type": "application/json"}


def test_responses_carry_request_id(client):
    response = client.get("/api/")

    assert response.headers["X-Request-ID"].startswith("req_")
