import base64
import hashlib
import hmac
import json
import time

import httpx
import pytest

from payment_service.config import Settings
from payment_service.database import Base, create_db_engine
from payment_service.ledger import PaymentLedger

MOMO_ACCESS_KEY = "F8BBA842ECF85"
MOMO_SECRET_KEY = "momo-test-secret"
PAYOS_CHECKSUM_KEY = "payos-test-checksum"
ZALOPAY_KEY1 = "zalopay-test-key1"
ZALOPAY_KEY2 = "zalopay-test-key2"
STRIPE_WEBHOOK_SECRET = "whsec_test"
JWT_SECRET = "jwt-test-secret"

BOOKING_HOST = "booking.test"


def hmac_hex(key, message):
    return hmac.new(key.encode(), message.encode(), hashlib.sha256).hexdigest()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'payments.db'}",
        booking_service_url=f"http://{BOOKING_HOST}",
        jwt_secret=JWT_SECRET,
        momo_partner_code="MOMO",
        momo_access_key=MOMO_ACCESS_KEY,
        momo_secret_key=MOMO_SECRET_KEY,
        momo_endpoint="https://momo.test",
        payos_client_id="payos-client",
        payos_api_key="payos-api-key",
        payos_checksum_key=PAYOS_CHECKSUM_KEY,
        payos_endpoint="https://payos.test",
        zalopay_app_id="2553",
        zalopay_key1=ZALOPAY_KEY1,
        zalopay_key2=ZALOPAY_KEY2,
        zalopay_create_url="https://zalopay.test/v2/create",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
    )


class FakeUpstream:
    """Answers for the payment providers and the booking service.

    ``routes`` maps a host to a handler returning an ``httpx.Response``;
    the booking service records every confirm-payment call it receives.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []
        self.confirm_calls = []
        self.booking_response = lambda request: httpx.Response(200, json={"success": True})

    def handler(self, request):
        self.requests.append(request)
        if request.url.host == BOOKING_HOST:
            self.confirm_calls.append((request.url.path, json.loads(request.content)))
            return self.booking_response(request)
        return self.routes[request.url.host](request)

    def transport(self):
        return httpx.MockTransport(self.handler)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def http_client(upstream):
    return httpx.AsyncClient(transport=upstream.transport())


@pytest.fixture
def ledger(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield PaymentLedger(engine)
    engine.dispose()


def signed_momo_ipn(**overrides):
    payload = {
        "partnerCode": "MOMO",
        "orderId": "MOMO1700000000000",
        "requestId": "MOMO1700000000000",
        "amount": 100000,
        "orderInfo": "Bus ticket B1",
        "orderType": "momo_wallet",
        "transId": "T1",
        "resultCode": 0,
        "message": "Successful.",
        "payType": "qr",
        "responseTime": 1700000000123,
        "extraData": base64.b64encode(json.dumps({"bookingId": "B1"}).encode()).decode(),
    }
    payload.update(overrides)
    raw = (
        f"accessKey={MOMO_ACCESS_KEY}&amount={payload['amount']}&extraData={payload['extraData']}"
        f"&message={payload['message']}&orderId={payload['orderId']}&orderInfo={payload['orderInfo']}"
        f"&orderType={payload['orderType']}&partnerCode={payload['partnerCode']}&payType={payload['payType']}"
        f"&requestId={payload['requestId']}&responseTime={payload['responseTime']}"
        f"&resultCode={payload['resultCode']}&transId={payload['transId']}"
    )
    payload["signature"] = hmac_hex(MOMO_SECRET_KEY, raw)
    return payload


def signed_payos_webhook(**overrides):
    data = {
        "orderCode": 123,
        "amount": 3000,
        "description": "VQRIO123",
        "accountNumber": "12345678",
        "reference": "TX9",
        "transactionDateTime": "2024-01-01 10:00:00",
        "currency": "VND",
        "paymentLinkId": "plink-123",
        "code": "00",
        "desc": "success",
        "status": "PAID",
    }
    data.update(overrides)
    return {
        "code": "00",
        "desc": "success",
        "success": True,
        "data": data,
        "signature": payos_signature(data),
    }


def payos_signature(data):
    canonical = "&".join(f"{key}={data[key]}" for key in sorted(data))
    return hmac_hex(PAYOS_CHECKSUM_KEY, canonical)


def signed_zalopay_callback(**overrides):
    data = {
        "app_id": 2553,
        "app_trans_id": "240101_1700000000000",
        "app_time": 1700000000000,
        "app_user": "guest",
        "amount": 150000,
        "embed_data": json.dumps({"bookingId": "B7", "redirecturl": "http://localhost:5173/payment-result"}),
        "item": "[]",
        "zp_trans_id": 240101000000123,
        "server_time": 1700000001000,
        "channel": 38,
        "merchant_user_id": "guest",
        "user_fee_amount": 0,
        "discount_amount": 0,
    }
    data.update(overrides)
    data_str = json.dumps(data)
    return {"data": data_str, "mac": hmac_hex(ZALOPAY_KEY2, data_str), "type": 1}


def stripe_event(event_type="payment_intent.succeeded", intent_id="pi_123", booking_id="B5", amount=250000):
    return {
        "id": "evt_test",
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": intent_id,
                "object": "payment_intent",
                "amount": amount,
                "currency": "vnd",
                "metadata": {"bookingId": booking_id} if booking_id else {},
            }
        },
    }


def stripe_signature_header(payload: bytes, secret=STRIPE_WEBHOOK_SECRET, timestamp=None):
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}"
    return f"t={timestamp},v1={hmac_hex(secret, signed)}"


def as_body(payload) -> bytes:
    return json.dumps(payload).encode()
