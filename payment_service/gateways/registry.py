from typing import Dict, Iterable, Optional

import httpx

from payment_service.config import Settings
from payment_service.errors import UnsupportedGateway
from payment_service.gateways.base import PaymentGateway
from payment_service.gateways.card import CardGateway
from payment_service.gateways.momo import MomoGateway
from payment_service.gateways.payos import PayOSGateway
from payment_service.gateways.zalopay import ZaloPayGateway
from payment_service.models import Provider


class GatewayRegistry:
    """Adapters keyed by provider, one instance each per process."""

    def __init__(self, gateways: Iterable[PaymentGateway]):
        self._gateways: Dict[Provider, PaymentGateway] = {g.provider: g for g in gateways}

    def resolve(self, key: Optional[str]) -> PaymentGateway:
        try:
            return self._gateways[Provider(key)]
        except (KeyError, ValueError):
            raise UnsupportedGateway(str(key))


def build_registry(settings: Settings, client: httpx.AsyncClient) -> GatewayRegistry:
    return GatewayRegistry([
        MomoGateway(
            client,
            partner_code=settings.momo_partner_code,
            access_key=settings.momo_access_key,
            secret_key=settings.momo_secret_key,
            endpoint=settings.momo_endpoint,
            redirect_url=settings.payment_result_url,
            ipn_url=settings.momo_ipn_url,
            timeout=settings.provider_timeout,
        ),
        PayOSGateway(
            client,
            client_id=settings.payos_client_id,
            api_key=settings.payos_api_key,
            checksum_key=settings.payos_checksum_key,
            endpoint=settings.payos_endpoint,
            return_url=settings.payment_result_url,
            timeout=settings.provider_timeout,
        ),
        ZaloPayGateway(
            client,
            app_id=settings.zalopay_app_id,
            key1=settings.zalopay_key1,
            key2=settings.zalopay_key2,
            create_url=settings.zalopay_create_url,
            redirect_url=settings.payment_result_url,
            callback_url=settings.zalopay_callback_url,
            timeout=settings.provider_timeout,
        ),
        CardGateway(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
        ),
    ])
