"""Error taxonomy for payment creation and webhook ingestion.

Every error carries the HTTP status the dispatch layer answers with and a
stable ``code`` that ends up in the response envelope.
"""
from typing import Any, Optional


class PaymentError(Exception):
    status_code = 500
    code = "PaymentError"

    def __init__(self, message: str, *, payload: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.payload = payload


class ValidationError(PaymentError):
    status_code = 400
    code = "ValidationError"


class UnsupportedGateway(PaymentError):
    status_code = 400
    code = "UnsupportedGateway"

    def __init__(self, gateway: str):
        super().__init__(f"Unsupported payment gateway: {gateway}")
        self.gateway = gateway


class InvalidSignature(PaymentError):
    status_code = 400
    code = "InvalidSignature"

    def __init__(self, provider: str):
        super().__init__(f"Invalid {provider} signature")
        self.provider = provider


class MalformedWebhook(PaymentError):
    status_code = 400
    code = "MalformedWebhook"


class MissingBookingReference(PaymentError):
    status_code = 400
    code = "MissingBookingReference"


class StatusConflict(PaymentError):
    status_code = 409
    code = "StatusConflict"

    def __init__(self, provider: str, transaction_id: str, current: str, incoming: str):
        super().__init__(
            f"{provider} transaction {transaction_id} is already {current}, refusing {incoming}"
        )
        self.provider = provider
        self.transaction_id = transaction_id
        self.current = current
        self.incoming = incoming


class GatewayUnavailable(PaymentError):
    status_code = 502
    code = "GatewayUnavailable"


class ProviderRejected(PaymentError):
    """The remote side answered, but refused the request.

    ``payload`` is the remote error body, unchanged, so callers can relay it.
    """

    status_code = 400
    code = "ProviderRejected"


class PaymentNotFound(PaymentError):
    status_code = 404
    code = "PaymentNotFound"
