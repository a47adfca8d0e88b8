"""HTTP surface of the plug-in, running on the demo gateway and in-memory stores."""
import pytest
from fastapi.testclient import TestClient

from main import app


PREFIX = "/api/v1/gateway"


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def _card_request(ref_no: str, amount: str = "100.00", **extra) -> dict:
    body = {
        "ref_no": ref_no,
        "amount": amount,
        "currency": "USD",
        "payment_method": {"token": "tok_api", "paymethod_name": "VISA *0000"},
    }
    body.update(extra)
    return body


def test_routes_registered():
    paths = set(app.openapi()["paths"])
    for path in (
        "/config",
        "/config/validate",
        "/config/3dsecure",
        "/currencies",
        "/connection/test",
        "/transactions/redirect",
        "/transactions/sell",
        "/transactions/auth",
        "/transactions/capture",
        "/transactions/refund",
        "/transactions/refund-partial",
        "/transactions/void",
        "/transactions/{ref_no}/status",
        "/callbacks",
    ):
        assert PREFIX + path in paths


def test_health_and_request_id(client):
    resp = client.get("/health", headers={"X-Request-ID": "req-1"})
    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "healthy"}
    assert resp.headers["X-Request-ID"] == "req-1"


def test_auth_capture_refund_over_http(client):
    resp = client.post(f"{PREFIX}/transactions/auth", json=_card_request("API1"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["code"] == 0
    assert body["data"]["status"] == "APPROVED"
    assert body["data"]["state"] == "AUTHORIZED"

    resp = client.post(f"{PREFIX}/transactions/capture", json={"ref_no": "API1", "amount": "60"})
    assert resp.json()["data"]["transaction_details"]["captured_amount"] == "60"

    resp = client.post(f"{PREFIX}/transactions/refund", json={"ref_no": "API1", "amount": "60"})
    assert resp.json()["data"]["state"] == "REFUNDED"

    resp = client.post(f"{PREFIX}/transactions/refund", json={"ref_no": "API1", "amount": "1"})
    assert resp.status_code == 422
    assert resp.json()["code"] == 20104
    assert resp.json()["error"]["type"] == "InvalidAmount"


def test_capture_above_amount_is_422(client):
    client.post(f"{PREFIX}/transactions/auth", json=_card_request("API2"))
    resp = client.post(f"{PREFIX}/transactions/capture", json={"ref_no": "API2", "amount": "150"})
    assert resp.status_code == 422
    assert resp.json()["code"] == 20104


def test_invalid_transition_is_409(client):
    client.post(f"{PREFIX}/transactions/auth", json=_card_request("API3"))
    client.post(f"{PREFIX}/transactions/void", json={"ref_no": "API3"})
    resp = client.post(f"{PREFIX}/transactions/capture", json={"ref_no": "API3"})
    assert resp.status_code == 409
    assert resp.json()["error"]["type"] == "InvalidTransition"


def test_unknown_transaction_status_is_404(client):
    resp = client.get(f"{PREFIX}/transactions/NOPE/status")
    assert resp.status_code == 404
    assert resp.json()["code"] == 20100


def test_malformed_request_is_rejected(client):
    resp = client.post(f"{PREFIX}/transactions/auth", json=_card_request("API4", currency="US1"))
    assert resp.status_code == 422
    assert resp.json()["code"] == 10003


def test_redirect_then_callback(client):
    resp = client.post(f"{PREFIX}/transactions/redirect", json={"ref_no": "API5", "amount": "20", "currency": "EUR"})
    data = resp.json()["data"]
    assert data["status"] == "REDIRECT"
    correlation_id = data["redirect"]["form_attributes"]["correlation_id"]

    resp = client.post(f"{PREFIX}/callbacks", json={"external_ref": correlation_id, "returnResult": "ok"})
    assert resp.status_code == 200
    assert resp.json()["message"] == "Callback applied"
    assert resp.json()["data"]["state"] == "AUTHORIZED"

    resp = client.get(f"{PREFIX}/transactions/API5/status")
    assert resp.json()["data"]["state"] == "AUTHORIZED"


def test_unknown_callback_is_acknowledged(client):
    resp = client.post(f"{PREFIX}/callbacks", json={"external_ref": "ghost", "result": "ok"})
    assert resp.status_code == 200
    assert resp.json()["message"] == "Callback ignored"
    assert resp.json()["data"]["ignored"] is True


def test_config_routes(client):
    resp = client.get(f"{PREFIX}/config")
    assert set(resp.json()["data"]["options"]) == {"enable_tokens", "enable_3dsecure"}

    resp = client.post(f"{PREFIX}/config/3dsecure", json={"3dsecure": True})
    assert resp.json()["data"]["status"] == "APPROVED"

    resp = client.post(f"{PREFIX}/config/validate", json={"enable_tokens": "perhaps"})
    assert resp.status_code == 422

    resp = client.get(f"{PREFIX}/currencies")
    assert "USD" in resp.json()["data"]

    resp = client.post(f"{PREFIX}/connection/test")
    assert resp.json()["data"]["status"] == "APPROVED"
