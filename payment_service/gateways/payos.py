import logging
from typing import Mapping, Optional

import httpx

from payment_service.errors import InvalidSignature, MalformedWebhook, ProviderRejected, ValidationError
from payment_service.gateways.base import (
    HttpGateway,
    PaymentCreation,
    WebhookEvent,
    check_payment_request,
    load_json_body,
    lower_headers,
)
from payment_service.models import PaymentStatus, Provider
from payment_service.signatures import hmac_sha256_hex, payload_excerpt, signatures_match, sorted_query_string

logger = logging.getLogger(__name__)

DESCRIPTION_LIMIT = 25
SUCCESS_CODE = "00"


class PayOSGateway(HttpGateway):
    provider = Provider.PAYOS

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        client_id: str,
        api_key: str,
        checksum_key: str,
        endpoint: str,
        return_url: str,
        timeout: float = 30.0,
    ):
        super().__init__(client, timeout)
        self.client_id = client_id
        self.api_key = api_key
        self.checksum_key = checksum_key
        self.endpoint = endpoint.rstrip("/")
        self.return_url = return_url

    def sign(self, data: Mapping) -> str:
        return hmac_sha256_hex(self.checksum_key, sorted_query_string(data))

    async def create_payment(self, amount, booking_id, description, currency="VND") -> PaymentCreation:
        check_payment_request(amount, booking_id)
        if not str(booking_id).isdigit():
            raise ValidationError("PayOS requires a numeric bookingId, it is used as the orderCode")

        # the truncated description must be the one that is signed
        data = {
            "orderCode": int(booking_id),
            "amount": amount,
            "description": (description or "")[:DESCRIPTION_LIMIT],
            "cancelUrl": self.return_url,
            "returnUrl": self.return_url,
        }
        payload = {**data, "signature": self.sign(data)}

        logger.info("Creating PayOS payment orderCode=%s amount=%s", data["orderCode"], amount)
        response = await self._send(
            f"{self.endpoint}/v2/payment-requests",
            json=payload,
            headers={"x-client-id": self.client_id, "x-api-key": self.api_key},
        )
        if str(response.get("code")) != SUCCESS_CODE:
            raise ProviderRejected(response.get("desc") or "PayOS payment failed", payload=response)

        link = response.get("data") or {}
        return PaymentCreation(
            payment_url=link.get("checkoutUrl") or link.get("paymentUrl"),
            order_ref=str(data["orderCode"]),
            data=link,
        )

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[WebhookEvent]:
        payload = load_json_body(self.provider, body)
        supplied = lower_headers(headers).get("x-payos-signature") or payload.get("signature")

        if isinstance(payload.get("data"), dict):
            signed = payload["data"]
        else:
            signed = {k: v for k, v in payload.items() if k != "signature"}

        if not signatures_match(self.sign(signed), supplied):
            logger.warning("Rejected PayOS webhook with bad signature: %s", payload_excerpt(body))
            raise InvalidSignature(self.provider.value)

        # only signed fields decide the outcome, the envelope's code is not covered
        if "status" in signed:
            paid = signed["status"] == "PAID"
        else:
            paid = "code" in signed and str(signed["code"]) == SUCCESS_CODE

        order_code = signed.get("orderCode")
        transaction_id = signed.get("reference") or signed.get("paymentLinkId") or order_code
        if transaction_id in (None, ""):
            raise MalformedWebhook("PayOS webhook carries no transaction reference")

        amount = signed.get("amount")
        order_ref = str(order_code) if order_code not in (None, "") else None
        return WebhookEvent(
            booking_id=order_ref,
            provider=self.provider,
            provider_transaction_id=str(transaction_id),
            status=PaymentStatus.SUCCESS if paid else PaymentStatus.FAILED,
            raw=payload,
            amount=amount if isinstance(amount, int) else None,
            order_ref=order_ref,
        )
