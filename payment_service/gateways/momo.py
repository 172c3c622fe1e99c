import logging
import time
from typing import Any, Mapping, Optional, Sequence

import httpx

from payment_service.errors import InvalidSignature, MalformedWebhook, ProviderRejected
from payment_service.gateways.base import (
    HttpGateway,
    PaymentCreation,
    WebhookEvent,
    check_payment_request,
    load_json_body,
)
from payment_service.models import PaymentStatus, Provider
from payment_service.signatures import (
    canonical_value,
    decode_side_channel,
    encode_side_channel,
    hmac_sha256_hex,
    payload_excerpt,
    signatures_match,
)

logger = logging.getLogger(__name__)

# MoMo signs fields in these exact orders. They are not alphabetical sorts of
# the payload, do not replace them with one.
CREATE_SIGNATURE_FIELDS = (
    "accessKey",
    "amount",
    "extraData",
    "ipnUrl",
    "orderId",
    "orderInfo",
    "partnerCode",
    "redirectUrl",
    "requestId",
    "requestType",
)
IPN_SIGNATURE_FIELDS = (
    "accessKey",
    "amount",
    "extraData",
    "message",
    "orderId",
    "orderInfo",
    "orderType",
    "partnerCode",
    "payType",
    "requestId",
    "responseTime",
    "resultCode",
    "transId",
)

RESULT_SUCCESS = 0
RESULT_USER_CANCELLED = 1006


def signature_string(field_order: Sequence[str], values: Mapping[str, Any]) -> str:
    return "&".join(f"{name}={canonical_value(values.get(name))}" for name in field_order)


def status_from_result_code(result_code: Any) -> PaymentStatus:
    try:
        code = int(result_code)
    except (TypeError, ValueError):
        return PaymentStatus.FAILED
    if code == RESULT_SUCCESS:
        return PaymentStatus.SUCCESS
    if code == RESULT_USER_CANCELLED:
        return PaymentStatus.CANCELLED
    return PaymentStatus.FAILED


class MomoGateway(HttpGateway):
    provider = Provider.MOMO

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        partner_code: str,
        access_key: str,
        secret_key: str,
        endpoint: str,
        redirect_url: str,
        ipn_url: str,
        timeout: float = 30.0,
    ):
        super().__init__(client, timeout)
        self.partner_code = partner_code
        self.access_key = access_key
        self.secret_key = secret_key
        self.endpoint = endpoint.rstrip("/")
        self.redirect_url = redirect_url
        self.ipn_url = ipn_url

    def sign(self, field_order: Sequence[str], values: Mapping[str, Any]) -> str:
        return hmac_sha256_hex(self.secret_key, signature_string(field_order, values))

    async def create_payment(self, amount, booking_id, description, currency="VND") -> PaymentCreation:
        check_payment_request(amount, booking_id)
        request_id = f"{self.partner_code}{int(time.time() * 1000)}"
        params = {
            "partnerCode": self.partner_code,
            "accessKey": self.access_key,
            "requestId": request_id,
            "amount": str(amount),
            "orderId": request_id,
            "orderInfo": description or "Thanh toán MoMo",
            "redirectUrl": self.redirect_url,
            "ipnUrl": self.ipn_url,
            "extraData": encode_side_channel({"bookingId": booking_id}),
            "requestType": "captureWallet",
        }
        params["signature"] = self.sign(CREATE_SIGNATURE_FIELDS, params)
        params["lang"] = "vi"

        logger.info("Creating MoMo payment orderId=%s bookingId=%s amount=%s", request_id, booking_id, amount)
        data = await self._send(f"{self.endpoint}/v2/gateway/api/create", json=params)
        if status_from_result_code(data.get("resultCode")) is not PaymentStatus.SUCCESS or not data.get("payUrl"):
            raise ProviderRejected(data.get("message") or "MoMo payment failed", payload=data)
        return PaymentCreation(payment_url=data["payUrl"], order_ref=request_id, data=data)

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[WebhookEvent]:
        payload = load_json_body(self.provider, body)
        # the access key is not echoed in the IPN, MoMo signs our configured one
        expected = self.sign(IPN_SIGNATURE_FIELDS, {**payload, "accessKey": self.access_key})
        if not signatures_match(expected, payload.get("signature")):
            logger.warning("Rejected MoMo IPN with bad signature: %s", payload_excerpt(body))
            raise InvalidSignature(self.provider.value)

        transaction_id = payload.get("transId") or payload.get("orderId")
        if transaction_id in (None, ""):
            raise MalformedWebhook("MoMo IPN carries neither transId nor orderId")

        booking_id = decode_side_channel(payload.get("extraData")).get("bookingId")
        amount = payload.get("amount")
        order_id = payload.get("orderId")
        return WebhookEvent(
            booking_id=str(booking_id) if booking_id else None,
            provider=self.provider,
            provider_transaction_id=str(transaction_id),
            status=status_from_result_code(payload.get("resultCode")),
            raw=payload,
            amount=amount if isinstance(amount, int) else None,
            order_ref=str(order_id) if order_id else None,
        )
