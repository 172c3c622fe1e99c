import json
import logging
from typing import Mapping, Optional

import stripe
from starlette.concurrency import run_in_threadpool

from payment_service.errors import GatewayUnavailable, InvalidSignature, MalformedWebhook, ProviderRejected
from payment_service.gateways.base import (
    PaymentCreation,
    PaymentGateway,
    WebhookEvent,
    check_payment_request,
    lower_headers,
)
from payment_service.models import PaymentStatus, Provider

logger = logging.getLogger(__name__)

EVENT_STATUSES = {
    "payment_intent.succeeded": PaymentStatus.SUCCESS,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELLED,
}


class CardGateway(PaymentGateway):
    """Card payments through Stripe PaymentIntents.

    Webhooks are verified by the Stripe SDK from the raw body and the
    ``Stripe-Signature`` header, not by a hand-built canonical string.
    """

    provider = Provider.CARD

    def __init__(self, *, secret_key: str, webhook_secret: str):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    async def create_payment(self, amount, booking_id, description, currency="VND") -> PaymentCreation:
        check_payment_request(amount, booking_id)
        try:
            intent = await run_in_threadpool(
                stripe.PaymentIntent.create,
                amount=amount,
                currency=currency.lower(),
                description=description or None,
                metadata={"bookingId": booking_id},
                payment_method_types=["card"],
                api_key=self.secret_key,
            )
        except stripe.APIConnectionError as exc:
            logger.error("Stripe unreachable creating intent for bookingId=%s: %s", booking_id, exc)
            raise GatewayUnavailable("card provider is unreachable") from exc
        except stripe.StripeError as exc:
            raise ProviderRejected(exc.user_message or str(exc), payload=exc.json_body) from exc

        return PaymentCreation(
            payment_url=None,
            order_ref=intent.id,
            data={"id": intent.id, "clientSecret": intent.client_secret},
            provider_transaction_id=intent.id,
        )

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[WebhookEvent]:
        signature = lower_headers(headers).get("stripe-signature")
        if not signature:
            raise InvalidSignature(self.provider.value)
        try:
            event = stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except ValueError as exc:
            raise MalformedWebhook("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            logger.warning("Rejected Stripe event with bad signature: %s", exc)
            raise InvalidSignature(self.provider.value) from exc

        status = EVENT_STATUSES.get(event["type"])
        if status is None:
            logger.info("Ignoring Stripe event type %s", event["type"])
            return None

        # StripeObject is not a dict, read the verified body instead
        raw = json.loads(body)
        intent = raw["data"]["object"]
        booking_id = (intent.get("metadata") or {}).get("bookingId")
        amount = intent.get("amount")
        return WebhookEvent(
            booking_id=str(booking_id) if booking_id else None,
            provider=self.provider,
            provider_transaction_id=intent["id"],
            status=status,
            raw=raw,
            amount=amount if isinstance(amount, int) else None,
            order_ref=intent["id"],
        )
