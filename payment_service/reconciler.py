"""
Payment status reconciler. Applies verified webhook outcomes exactly once.

The ledger transition is committed before the booking service is called, so
a crash in between leaves a terminal-but-unconfirmed intent that ``redrive``
can finish later, never a confirmed booking without a local record.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict

from starlette.concurrency import run_in_threadpool

from payment_service.booking_client import BookingServiceClient
from payment_service.errors import GatewayUnavailable, MissingBookingReference, ProviderRejected, StatusConflict
from payment_service.gateways.base import PaymentCreation, WebhookEvent
from payment_service.ledger import PaymentLedger
from payment_service.models import PaymentIntent, PaymentStatus, Provider

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    APPLIED = "applied"
    REPLAYED = "replayed"


@dataclass(frozen=True)
class ReconciliationOutcome:
    outcome: Outcome
    payment_id: str
    booking_id: str
    status: PaymentStatus


class PaymentReconciler:
    def __init__(self, ledger: PaymentLedger, booking_client: BookingServiceClient):
        self.ledger = ledger
        self.booking_client = booking_client

    async def register_payment(
        self,
        provider: Provider,
        booking_id: str,
        amount: int,
        currency: str,
        creation: PaymentCreation,
    ) -> PaymentIntent:
        intent = await run_in_threadpool(
            self.ledger.record_intent,
            booking_id=booking_id,
            provider=provider.value,
            amount=amount,
            currency=currency,
            order_ref=creation.order_ref,
            gateway_ref=creation.provider_transaction_id,
            metadata=creation.data,
        )
        logger.info(
            "Recorded %s payment %s for booking %s (orderRef=%s)",
            provider.value, intent.payment_id, booking_id, creation.order_ref,
        )
        return intent

    async def handle_payment_result(self, event: WebhookEvent) -> ReconciliationOutcome:
        provider = event.provider.value
        if not event.booking_id:
            logger.error(
                "Cannot attribute %s transaction %s to a booking",
                provider, event.provider_transaction_id,
            )
            raise MissingBookingReference(
                f"{provider} transaction {event.provider_transaction_id} carries no booking reference"
            )

        intent, applied = await run_in_threadpool(self.ledger.apply_result, event)
        if intent.booking_id != event.booking_id:
            logger.warning(
                "%s transaction %s names booking %s but the ledger has %s",
                provider, event.provider_transaction_id, event.booking_id, intent.booking_id,
            )

        if not applied:
            if intent.status == event.status.value:
                logger.info(
                    "Replay of %s transaction %s (booking %s, %s), nothing to do",
                    provider, event.provider_transaction_id, intent.booking_id, intent.status,
                )
                return ReconciliationOutcome(Outcome.REPLAYED, intent.payment_id, intent.booking_id, event.status)
            logger.error(
                "Status conflict on %s transaction %s (booking %s): stored %s, incoming %s",
                provider, event.provider_transaction_id, intent.booking_id, intent.status, event.status.value,
            )
            raise StatusConflict(provider, event.provider_transaction_id, intent.status, event.status.value)

        logger.info(
            "Payment %s for booking %s is now %s (%s %s)",
            intent.payment_id, intent.booking_id, intent.status, provider, event.provider_transaction_id,
        )
        await self._confirm(intent, event.raw)
        return ReconciliationOutcome(Outcome.APPLIED, intent.payment_id, intent.booking_id, event.status)

    async def redrive(self) -> int:
        """Confirm every terminal intent the booking service has not acknowledged."""
        confirmed = 0
        for intent in await run_in_threadpool(self.ledger.unconfirmed):
            try:
                await self._confirm(intent, intent.raw_provider_payload or {})
            except (GatewayUnavailable, ProviderRejected) as exc:
                logger.warning("Payment %s still unconfirmed: %s", intent.payment_id, exc.message)
                continue
            confirmed += 1
        return confirmed

    async def _confirm(self, intent: PaymentIntent, raw: Dict[str, Any]) -> None:
        await self.booking_client.confirm_payment(
            intent.booking_id,
            provider=intent.provider,
            provider_transaction_id=intent.provider_transaction_id,
            status=PaymentStatus(intent.status),
            raw=raw,
        )
        await run_in_threadpool(self.ledger.mark_confirmed, intent.payment_id)
