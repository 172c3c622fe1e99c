import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

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
from payment_service.signatures import decode_side_channel, hmac_sha256_hex, payload_excerpt, signatures_match

logger = logging.getLogger(__name__)

# app_trans_id must be prefixed with the date in Vietnam time
VIETNAM_TZ = timezone(timedelta(hours=7))

# outbound MAC input, joined with "|" in this order
ORDER_MAC_FIELDS = ("app_id", "app_trans_id", "app_user", "amount", "app_time", "embed_data", "item")


def generate_app_trans_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(VIETNAM_TZ)
    return f"{now:%y%m%d}_{int(now.timestamp() * 1000)}"


def order_mac_input(order: Mapping[str, Any]) -> str:
    return "|".join(str(order[name]) for name in ORDER_MAC_FIELDS)


def _return_code(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ZaloPayGateway(HttpGateway):
    provider = Provider.ZALOPAY

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        app_id: str,
        key1: str,
        key2: str,
        create_url: str,
        redirect_url: str,
        callback_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        super().__init__(client, timeout)
        self.app_id = app_id
        self.key1 = key1
        self.key2 = key2
        self.create_url = create_url
        self.redirect_url = redirect_url
        self.callback_url = callback_url

    async def create_payment(self, amount, booking_id, description, currency="VND") -> PaymentCreation:
        check_payment_request(amount, booking_id)
        order = {
            "app_id": self.app_id,
            "app_trans_id": generate_app_trans_id(),
            "app_user": "guest",
            "amount": amount,
            "app_time": int(time.time() * 1000),
            "embed_data": json.dumps({"bookingId": booking_id, "redirecturl": self.redirect_url}),
            "item": json.dumps([{"bookingId": booking_id, "amount": amount}]),
        }
        # sign only once the order fields are final
        order["mac"] = hmac_sha256_hex(self.key1, order_mac_input(order))
        order["description"] = description or "Thanh toán ZaloPay"
        order["redirect_url"] = f"{self.redirect_url}?bookingId={booking_id}"
        if self.callback_url:
            order["callback_url"] = self.callback_url

        logger.info("Creating ZaloPay order app_trans_id=%s bookingId=%s", order["app_trans_id"], booking_id)
        data = await self._send(self.create_url, data=order)
        if _return_code(data.get("return_code")) != 1:
            raise ProviderRejected(data.get("return_message") or "ZaloPay create order failed", payload=data)

        pay_url = data.get("order_url")
        if pay_url and "/openinapp?" in pay_url:
            # web checkout instead of the app deeplink
            pay_url = pay_url.replace("/openinapp?", "/pay/v2?")
        return PaymentCreation(
            payment_url=pay_url,
            order_ref=order["app_trans_id"],
            data=data,
            provider_transaction_id=order["app_trans_id"],
        )

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[WebhookEvent]:
        payload = load_json_body(self.provider, body)
        data = payload.get("data")
        if not isinstance(data, str):
            raise MalformedWebhook("ZaloPay callback is missing its data field")

        # the MAC covers the data string exactly as delivered
        if not signatures_match(hmac_sha256_hex(self.key2, data), payload.get("mac")):
            logger.warning("Rejected ZaloPay callback with bad mac: %s", payload_excerpt(body))
            raise InvalidSignature(self.provider.value)

        try:
            callback = json.loads(data)
        except ValueError as exc:
            raise MalformedWebhook("ZaloPay callback data is not valid JSON") from exc
        if isinstance(callback.get("data"), str):
            nested = decode_side_channel(callback["data"])
            if nested:
                callback = nested

        transaction_id = callback.get("app_trans_id")
        if not transaction_id:
            raise MalformedWebhook("ZaloPay callback carries no app_trans_id")

        # callbacks are only sent for paid orders unless they say otherwise
        return_code = _return_code(callback.get("return_code", 1))
        booking_id = decode_side_channel(callback.get("embed_data")).get("bookingId")
        amount = callback.get("amount")
        return WebhookEvent(
            booking_id=str(booking_id) if booking_id else None,
            provider=self.provider,
            provider_transaction_id=str(transaction_id),
            status=PaymentStatus.SUCCESS if return_code == 1 else PaymentStatus.FAILED,
            raw=callback,
            amount=amount if isinstance(amount, int) else None,
            order_ref=str(transaction_id),
        )
