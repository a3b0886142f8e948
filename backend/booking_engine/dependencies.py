from fastapi import Request

from booking_engine.domain.checkout.service import CheckoutOrchestrator
from booking_engine.infra.db import get_db_session  # noqa: F401
from booking_engine.infra.payment_gateway import PaymentGateway
from booking_engine.services import AppServices, resolve_services
from booking_engine.settings import Settings, settings


def get_services(request: Request) -> AppServices:
    services = resolve_services(request.app)
    if services is None:
        raise RuntimeError("app.state.services is not configured")
    return services


def get_checkout(request: Request) -> CheckoutOrchestrator:
    return get_services(request).checkout


def get_gateway(request: Request) -> PaymentGateway:
    return get_services(request).gateway


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "app_settings", None) or settings
