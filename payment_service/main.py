import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from payment_service.booking_client import BookingServiceClient
from payment_service.config import Settings
from payment_service.database import Base, create_db_engine
from payment_service.errors import PaymentError, ProviderRejected
from payment_service.gateways.registry import build_registry
from payment_service.ledger import PaymentLedger
from payment_service.reconciler import PaymentReconciler
from payment_service.routes import router

logger = logging.getLogger(__name__)

WEBHOOK_PATH_PREFIX = "/payments/webhooks/"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def payment_error_handler(request: Request, exc: PaymentError):
    if request.url.path.startswith(WEBHOOK_PATH_PREFIX):
        # providers only get the status and a code
        logger.warning("Webhook %s answered %s: %s", request.url.path, exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.code})

    content = {"success": False, "error": exc.code, "message": exc.message}
    if isinstance(exc, ProviderRejected) and exc.payload is not None:
        content["provider"] = exc.payload
    return JSONResponse(status_code=exc.status_code, content=content)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in error['loc'][1:])}: {error['msg']}" for error in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "ValidationError", "message": problems or "Invalid request"},
    )


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the service once per process.

    Serve it with ``uvicorn --factory payment_service.main:create_app``;
    importing this module creates nothing. ``transport`` replaces the network layer of the shared HTTP client, which
    is how tests stand in for payment providers and the booking service.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    engine = create_db_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    ledger = PaymentLedger(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with httpx.AsyncClient(transport=transport, timeout=settings.provider_timeout) as client:
            booking_client = BookingServiceClient(client, settings.booking_service_url, settings.booking_timeout)
            app.state.gateways = build_registry(settings, client)
            app.state.reconciler = PaymentReconciler(ledger, booking_client)
            logger.info("Payment service ready (booking service at %s)", settings.booking_service_url)
            yield
        engine.dispose()

    app = FastAPI(title="Bus Ticket Payment Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.ledger = ledger
    app.include_router(router)
    app.add_exception_handler(PaymentError, payment_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    return app
