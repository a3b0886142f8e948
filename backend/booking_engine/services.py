from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from booking_engine.domain.checkout.service import CheckoutOrchestrator
from booking_engine.domain.outbox.notifier import Notifier, resolve_notifier
from booking_engine.infra.metrics import Metrics, configure_metrics
from booking_engine.infra.payment_gateway import PaymentGateway, build_payment_gateway


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    gateway: PaymentGateway
    notifier: Notifier
    checkout: CheckoutOrchestrator
    metrics: Metrics


def build_app_services(
    app_settings,
    *,
    metrics: Metrics | None = None,
    gateway: PaymentGateway | None = None,
    notifier: Notifier | None = None,
) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    payment_gateway = gateway or build_payment_gateway(app_settings)
    return AppServices(
        gateway=payment_gateway,
        notifier=notifier or resolve_notifier(app_settings),
        checkout=CheckoutOrchestrator.from_settings(payment_gateway, app_settings),
        metrics=metrics_client,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
