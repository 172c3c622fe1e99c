import logging
from typing import Any, Dict

import httpx

from payment_service.errors import GatewayUnavailable, ProviderRejected
from payment_service.models import PaymentStatus

logger = logging.getLogger(__name__)


class BookingServiceClient:
    """Calls the booking service's internal confirm-payment endpoint.

    A timeout, a transport error or a 5xx answer is a failure, never a
    success: the caller must surface it so the webhook gets re-delivered.
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = 10.0):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def confirm_payment(
        self,
        booking_id: str,
        *,
        provider: str,
        provider_transaction_id: str,
        status: PaymentStatus,
        raw: Dict[str, Any],
    ) -> Any:
        url = f"{self.base_url}/internal/{booking_id}/confirm-payment"
        body = {
            "provider": provider,
            "providerTransactionId": provider_transaction_id,
            "status": status.value,
            "raw": raw,
        }
        try:
            response = await self.client.post(url, json=body, timeout=self.timeout)
        except httpx.TransportError as exc:
            logger.error("Confirm-payment for booking %s failed: %s", booking_id, exc)
            raise GatewayUnavailable("booking service is unreachable") from exc

        if response.status_code >= 500:
            logger.error("Booking service answered %s confirming booking %s", response.status_code, booking_id)
            raise GatewayUnavailable(f"booking service answered {response.status_code}")
        if response.status_code >= 400:
            logger.error("Booking service refused confirmation of booking %s: %s", booking_id, response.text)
            raise ProviderRejected("booking service refused the confirmation", payload=_body(response))

        logger.info("Booking %s confirmed as %s (%s %s)", booking_id, status.value, provider, provider_transaction_id)
        return _body(response)


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text
