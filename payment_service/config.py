import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"


def _float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once at startup."""

    database_url: str = "sqlite:///./payments.db"
    booking_service_url: str = "http://booking-service:3004"
    frontend_base_url: str = "http://localhost:5173"
    provider_timeout: float = 30.0
    booking_timeout: float = 10.0
    log_level: str = "INFO"
    jwt_secret: Optional[str] = field(default=None, metadata={"secret": True})

    momo_partner_code: str = "MOMO"
    momo_access_key: str = ""
    momo_secret_key: str = field(default="", metadata={"secret": True})
    momo_endpoint: str = "https://test-payment.momo.vn"
    momo_ipn_url: str = "http://localhost:3005/payments/webhooks/momo"

    payos_client_id: str = ""
    payos_api_key: str = field(default="", metadata={"secret": True})
    payos_checksum_key: str = field(default="", metadata={"secret": True})
    payos_endpoint: str = "https://api-merchant.payos.vn"

    zalopay_app_id: str = ""
    zalopay_key1: str = field(default="", metadata={"secret": True})
    zalopay_key2: str = field(default="", metadata={"secret": True})
    zalopay_create_url: str = "https://sb-openapi.zalopay.vn/v2/create"
    zalopay_callback_url: Optional[str] = None

    stripe_secret_key: str = field(default="", metadata={"secret": True})
    stripe_webhook_secret: str = field(default="", metadata={"secret": True})

    def __repr__(self) -> str:
        shown = []
        for f in fields(self):
            value = getattr(self, f.name)
            if f.metadata.get("secret") and value:
                value = "***"
            shown.append(f"{f.name}={value!r}")
        return f"Settings({', '.join(shown)})"

    @property
    def payment_result_url(self) -> str:
        return f"{self.frontend_base_url.rstrip('/')}/payment-result"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(dotenv_path=ENV_PATH)
        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL") or defaults.database_url,
            booking_service_url=os.getenv("BOOKING_SERVICE_URL") or defaults.booking_service_url,
            frontend_base_url=os.getenv("FRONTEND_BASE_URL") or defaults.frontend_base_url,
            provider_timeout=_float("PROVIDER_TIMEOUT_SECONDS", defaults.provider_timeout),
            booking_timeout=_float("BOOKING_TIMEOUT_SECONDS", defaults.booking_timeout),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
            jwt_secret=os.getenv("JWT_SECRET"),
            momo_partner_code=os.getenv("MOMO_PARTNER_CODE", defaults.momo_partner_code),
            momo_access_key=os.getenv("MOMO_ACCESS_KEY", ""),
            momo_secret_key=os.getenv("MOMO_SECRET_KEY", ""),
            momo_endpoint=os.getenv("MOMO_ENDPOINT", defaults.momo_endpoint),
            momo_ipn_url=os.getenv("MOMO_IPN_URL", defaults.momo_ipn_url),
            payos_client_id=os.getenv("PAYOS_CLIENT_ID", ""),
            payos_api_key=os.getenv("PAYOS_API_KEY", ""),
            payos_checksum_key=os.getenv("PAYOS_CHECKSUM_KEY", ""),
            payos_endpoint=os.getenv("PAYOS_ENDPOINT", defaults.payos_endpoint),
            zalopay_app_id=os.getenv("ZALOPAY_APP_ID", ""),
            zalopay_key1=os.getenv("ZALOPAY_KEY1", ""),
            zalopay_key2=os.getenv("ZALOPAY_KEY2", ""),
            zalopay_create_url=os.getenv("ZALOPAY_CREATE_URL", defaults.zalopay_create_url),
            zalopay_callback_url=os.getenv("ZALOPAY_CALLBACK_URL"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        )
