import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field, field_validator

from payment_service.auth import verify_token
from payment_service.errors import PaymentNotFound, ValidationError
from payment_service.gateways.registry import GatewayRegistry
from payment_service.ledger import PaymentLedger
from payment_service.models import Provider
from payment_service.reconciler import PaymentReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments")


class PaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_method: str = Field(alias="paymentMethod")
    amount: int = Field(gt=0)
    booking_id: str = Field(alias="bookingId", min_length=1)
    description: str = ""
    currency: str = "VND"

    @field_validator("booking_id", mode="before")
    @classmethod
    def booking_id_as_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


def get_gateways(request: Request) -> GatewayRegistry:
    return request.app.state.gateways


def get_reconciler(request: Request) -> PaymentReconciler:
    return request.app.state.reconciler


def get_ledger(request: Request) -> PaymentLedger:
    return request.app.state.ledger


@router.post("")
async def create_payment_api(
    request: PaymentRequest,
    auth=Depends(verify_token),
    gateways: GatewayRegistry = Depends(get_gateways),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    gateway = gateways.resolve(request.payment_method)
    creation = await gateway.create_payment(
        request.amount, request.booking_id, request.description, request.currency
    )
    intent = await reconciler.register_payment(
        gateway.provider, request.booking_id, request.amount, request.currency, creation
    )
    return {
        "success": True,
        "paymentId": intent.payment_id,
        "provider": gateway.provider.value,
        "paymentUrl": creation.payment_url,
        "orderRef": creation.order_ref,
        "data": creation.data,
    }


@router.post("/webhooks/{gateway}")
async def payment_webhook(
    gateway: str,
    request: Request,
    gateways: GatewayRegistry = Depends(get_gateways),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    adapter = gateways.resolve(gateway)
    # signatures are checked against the bytes exactly as delivered
    payload = await request.body()
    event = adapter.parse_webhook(payload, request.headers)
    if event is not None:
        await reconciler.handle_payment_result(event)
    return {"received": True}


@router.post("/internal/redrive")
async def redrive_confirmations(
    auth=Depends(verify_token),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    confirmed = await reconciler.redrive()
    return {"success": True, "confirmed": confirmed}


@router.get("/zalopay/booking-id")
def zalopay_booking_id(
    apptransid: Optional[str] = None,
    app_trans_id: Optional[str] = None,
    ledger: PaymentLedger = Depends(get_ledger),
):
    reference = apptransid or app_trans_id
    if not reference:
        raise ValidationError("Missing apptransid")
    intent = ledger.find_by_order_ref(Provider.ZALOPAY.value, reference)
    if intent is None:
        raise PaymentNotFound(f"No ZaloPay payment for {reference}")
    return {"success": True, "bookingId": intent.booking_id}


@router.get("/{payment_id}")
def get_payment(
    payment_id: str,
    auth=Depends(verify_token),
    ledger: PaymentLedger = Depends(get_ledger),
):
    intent = ledger.get(payment_id)
    if intent is None:
        raise PaymentNotFound(f"Payment {payment_id} not found")
    return intent.to_dict()
