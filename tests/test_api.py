import importlib
import json

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from conftest import (
    JWT_SECRET,
    as_body,
    signed_momo_ipn,
    signed_payos_webhook,
    signed_zalopay_callback,
    stripe_event,
    stripe_signature_header,
)
from payment_service import main as main_module
from payment_service.auth import verify_token
from payment_service.gateways.card import CardGateway
from payment_service.gateways.momo import MomoGateway
from payment_service.gateways.payos import PayOSGateway
from payment_service.gateways.zalopay import ZaloPayGateway
from payment_service.main import create_app
from payment_service.models import PaymentStatus


@pytest.fixture
def client(settings, upstream):
    fastapi_app = create_app(settings, transport=upstream.transport())
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[verify_token] = lambda: True
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def ledger_of(client):
    return client.app.state.ledger


def momo_accepts(upstream):
    def momo(request):
        sent = json.loads(request.content)
        return httpx.Response(200, json={
            "resultCode": 0,
            "message": "Thành công.",
            "orderId": sent["orderId"],
            "payUrl": "https://test-payment.momo.vn/v2/gateway/pay?t=abc",
        })

    upstream.routes["momo.test"] = momo


def post_webhook(client, gateway, payload, headers=None):
    return client.post(f"/payments/webhooks/{gateway}", content=as_body(payload), headers=headers or {})


def test_momo_success_end_to_end(client, upstream, ledger_of):
    momo_accepts(upstream)

    created = client.post("/payments", json={
        "paymentMethod": "momo", "amount": 100000, "bookingId": "B1", "description": "Ve xe B1",
    })
    assert created.status_code == 200
    assert created.json()["paymentUrl"] == "https://test-payment.momo.vn/v2/gateway/pay?t=abc"
    payment_id = created.json()["paymentId"]
    order_id = created.json()["orderRef"]
    assert ledger_of.get(payment_id).status == "PENDING"

    response = post_webhook(client, "momo", signed_momo_ipn(orderId=order_id, requestId=order_id))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    stored = client.get(f"/payments/{payment_id}").json()
    assert stored["status"] == "SUCCESS"
    assert stored["providerTransactionId"] == "T1"
    assert stored["confirmed"] is True
    assert len(upstream.confirm_calls) == 1
    path, body = upstream.confirm_calls[0]
    assert path == "/internal/B1/confirm-payment"
    assert (body["provider"], body["providerTransactionId"], body["status"]) == ("momo", "T1", "SUCCESS")


def test_momo_cancellation(client, upstream, ledger_of):
    response = post_webhook(client, "momo", signed_momo_ipn(resultCode=1006, transId="T2"))

    assert response.status_code == 200
    assert ledger_of.find_by_transaction("momo", "T2").status == PaymentStatus.CANCELLED.value
    assert upstream.confirm_calls[0][1]["status"] == "CANCELLED"


def test_payos_tampered_payload_is_rejected(client, upstream, ledger_of):
    payload = signed_payos_webhook()
    payload["data"]["amount"] = 1000000

    response = post_webhook(client, "payos", payload)

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "InvalidSignature"}
    assert ledger_of.find_by_transaction("payos", "TX9") is None
    assert upstream.confirm_calls == []


def test_zalopay_replay_confirms_once(client, upstream):
    payload = signed_zalopay_callback()

    first = post_webhook(client, "zalopay", payload)
    second = post_webhook(client, "zalopay", payload)

    assert first.status_code == second.status_code == 200
    assert len(upstream.confirm_calls) == 1
    assert upstream.confirm_calls[0][0] == "/internal/B7/confirm-payment"


def test_conflicting_delivery_keeps_success(client, upstream, ledger_of):
    ledger_of.upsert(
        "pay-tx9", booking_id="123", provider="payos", status=PaymentStatus.SUCCESS, gateway_ref="TX9"
    )

    response = post_webhook(client, "payos", signed_payos_webhook(status="CANCELLED"))

    assert response.status_code == 409
    assert response.json()["error"] == "StatusConflict"
    assert ledger_of.get("pay-tx9").status == "SUCCESS"
    assert upstream.confirm_calls == []


def test_unknown_gateway_webhook_touches_no_adapter(client, mocker):
    spies = [mocker.spy(cls, "parse_webhook") for cls in (MomoGateway, PayOSGateway, ZaloPayGateway, CardGateway)]

    response = client.post("/payments/webhooks/unknown-provider", content=b"{}")

    assert response.status_code == 400
    assert response.json()["error"] == "UnsupportedGateway"
    for spy in spies:
        spy.assert_not_called()


def test_webhook_without_booking_reference(client, upstream, ledger_of):
    response = post_webhook(client, "momo", signed_momo_ipn(extraData=""))

    assert response.status_code == 400
    assert response.json()["error"] == "MissingBookingReference"
    assert ledger_of.find_by_transaction("momo", "T1") is None


def test_booking_outage_answers_502_then_replay_is_idempotent(client, upstream, ledger_of):
    upstream.booking_response = lambda request: httpx.Response(503)

    failed = post_webhook(client, "momo", signed_momo_ipn())
    assert failed.status_code == 502
    assert ledger_of.find_by_transaction("momo", "T1").status == "SUCCESS"

    upstream.booking_response = lambda request: httpx.Response(200, json={"success": True})
    retried = post_webhook(client, "momo", signed_momo_ipn())
    assert retried.status_code == 200
    assert len(upstream.confirm_calls) == 1

    redriven = client.post("/payments/internal/redrive")
    assert redriven.json() == {"success": True, "confirmed": 1}
    assert len(upstream.confirm_calls) == 2


def test_card_webhook_end_to_end(client, upstream, ledger_of):
    body = as_body(stripe_event(intent_id="pi_e2e", booking_id="B5"))

    response = client.post(
        "/payments/webhooks/card", content=body, headers={"stripe-signature": stripe_signature_header(body)}
    )

    assert response.status_code == 200
    assert ledger_of.find_by_transaction("card", "pi_e2e").status == "SUCCESS"
    assert upstream.confirm_calls[0][0] == "/internal/B5/confirm-payment"


def test_card_webhook_for_unrelated_event_is_acknowledged(client, upstream):
    body = as_body(stripe_event("customer.created"))

    response = client.post(
        "/payments/webhooks/card", content=body, headers={"stripe-signature": stripe_signature_header(body)}
    )

    assert response.status_code == 200
    assert upstream.confirm_calls == []


def test_create_payment_unknown_method(client):
    response = client.post("/payments", json={"paymentMethod": "paypal", "amount": 1000, "bookingId": "B1"})

    assert response.status_code == 400
    assert response.json()["error"] == "UnsupportedGateway"


def test_create_payment_validation_error(client):
    response = client.post("/payments", json={"paymentMethod": "momo", "amount": -5, "bookingId": "B1"})

    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"


def test_create_payment_relays_provider_error(client, upstream):
    refusal = {"resultCode": 22, "message": "Số tiền không hợp lệ"}
    upstream.routes["momo.test"] = lambda request: httpx.Response(200, json=refusal)

    response = client.post("/payments", json={"paymentMethod": "momo", "amount": 100000, "bookingId": "B1"})

    assert response.status_code == 400
    assert response.json()["error"] == "ProviderRejected"
    assert response.json()["provider"] == refusal


def test_create_payment_accepts_numeric_booking_id(client, upstream):
    momo_accepts(upstream)

    response = client.post("/payments", json={"paymentMethod": "momo", "amount": 100000, "bookingId": 42})

    assert response.status_code == 200


def test_zalopay_booking_lookup(client, upstream):
    upstream.routes["zalopay.test"] = lambda request: httpx.Response(200, json={
        "return_code": 1, "order_url": "https://qcgateway.zalopay.vn/pay/v2?order=abc",
    })
    created = client.post("/payments", json={"paymentMethod": "zalopay", "amount": 150000, "bookingId": "B7"})
    app_trans_id = created.json()["orderRef"]

    found = client.get("/payments/zalopay/booking-id", params={"apptransid": app_trans_id})
    missing = client.get("/payments/zalopay/booking-id", params={"app_trans_id": "000000_1"})
    no_ref = client.get("/payments/zalopay/booking-id")

    assert found.json() == {"success": True, "bookingId": "B7"}
    assert missing.status_code == 404
    assert no_ref.status_code == 400


def test_get_unknown_payment(client):
    response = client.get("/payments/does-not-exist")
    assert response.status_code == 404
    assert response.json()["error"] == "PaymentNotFound"


def test_create_payment_requires_bearer_token(settings, upstream):
    momo_accepts(upstream)
    fastapi_app = create_app(settings, transport=upstream.transport())
    body = {"paymentMethod": "momo", "amount": 100000, "bookingId": "B1"}

    with TestClient(fastapi_app) as c:
        anonymous = c.post("/payments", json=body)
        forged = c.post("/payments", json=body, headers={
            "Authorization": "Bearer " + jwt.encode({"sub": "u1"}, "wrong-secret", algorithm="HS256"),
        })
        allowed = c.post("/payments", json=body, headers={
            "Authorization": "Bearer " + jwt.encode({"sub": "u1"}, JWT_SECRET, algorithm="HS256"),
        })

    assert anonymous.status_code == 401
    assert forged.status_code == 401
    assert allowed.status_code == 200


def test_importing_main_creates_no_database(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    importlib.reload(main_module)

    assert list(tmp_path.iterdir()) == []


def test_create_app_reads_settings_from_environment(tmp_path, monkeypatch):
    database = tmp_path / "env.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{database}")

    fastapi_app = create_app()

    assert fastapi_app.state.settings.database_url == f"sqlite:///{database}"
    assert database.exists()
