"""Payment gateway port.

Every provider adapter implements the same two operations: build and send a
payment-creation request, and verify and normalize an inbound webhook into a
provider-neutral ``WebhookEvent``. Adapters never persist anything.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx

from payment_service.errors import GatewayUnavailable, MalformedWebhook, ProviderRejected, ValidationError
from payment_service.models import PaymentStatus, Provider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookEvent:
    """Verified, provider-neutral outcome of a payment."""

    booking_id: Optional[str]
    provider: Provider
    provider_transaction_id: str
    status: PaymentStatus
    raw: Dict[str, Any] = field(default_factory=dict)
    amount: Optional[int] = None
    # merchant-side order id, ties the webhook to the attempt that created it
    order_ref: Optional[str] = None


@dataclass(frozen=True)
class PaymentCreation:
    """What a provider handed back for a new payment."""

    payment_url: Optional[str]
    order_ref: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)
    provider_transaction_id: Optional[str] = None


class PaymentGateway(ABC):
    provider: Provider

    @abstractmethod
    async def create_payment(
        self,
        amount: int,
        booking_id: str,
        description: str,
        currency: str = "VND",
    ) -> PaymentCreation:
        """Ask the provider to start collecting ``amount`` for ``booking_id``."""
        ...

    @abstractmethod
    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[WebhookEvent]:
        """Verify the raw webhook and normalize it.

        Returns None for provider notifications that carry no payment outcome.
        """
        ...


def check_payment_request(amount: Any, booking_id: Any) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive integer in the smallest currency unit")
    if not booking_id or not str(booking_id).strip():
        raise ValidationError("bookingId is required")


def lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def load_json_body(provider: Provider, body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise MalformedWebhook(f"{provider.value} webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedWebhook(f"{provider.value} webhook body must be a JSON object")
    return payload


class HttpGateway(PaymentGateway):
    """Gateway that talks to its provider over plain HTTPS."""

    def __init__(self, client: httpx.AsyncClient, timeout: float = 30.0):
        self.client = client
        self.timeout = timeout

    async def _send(self, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.client.post(url, timeout=self.timeout, **kwargs)
        except httpx.TransportError as exc:
            logger.error("%s request to %s failed: %s", self.provider.value, url, exc)
            raise GatewayUnavailable(f"{self.provider.value} is unreachable") from exc

        if response.status_code >= 500:
            logger.error("%s answered %s", self.provider.value, response.status_code)
            raise GatewayUnavailable(f"{self.provider.value} answered {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayUnavailable(f"{self.provider.value} returned a non-JSON response") from exc
        if response.status_code >= 400:
            raise ProviderRejected(f"{self.provider.value} rejected the request", payload=data)
        return data
