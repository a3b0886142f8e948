"""Payment Gateway collaborator.

The engine only asks whether a payment is verified and for how much, and asks
for payouts. ``StripePaymentGateway`` is the production adapter. Anything with
the same async methods can be injected (tests use an in-memory fake).
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import anyio

from booking_engine.domain.errors import UpstreamFailure
from booking_engine.infra.metrics import metrics
from booking_engine.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUCCEEDED = "succeeded"
PROCESSING = "processing"
FAILED = "failed"


class GatewayError(Exception):
    """A gateway call did not produce an answer (network, decline, provider outage)."""


@dataclass(frozen=True)
class PaymentResult:
    status: str
    provider_ref: str
    amount_cents: int
    currency: str
    client_secret: str | None = None

    @property
    def verified(self) -> bool:
        return self.status == SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == FAILED


@dataclass(frozen=True)
class RefundResult:
    completed: bool
    provider_ref: str


class PaymentGateway(Protocol):
    async def charge(
        self, amount_cents: int, currency: str, booking_id: str, *, idempotency_key: str
    ) -> PaymentResult:
        ...

    async def verify_payment(self, provider_ref: str) -> PaymentResult:
        ...

    async def refund(self, amount_cents: int, provider_ref: str, *, idempotency_key: str) -> RefundResult:
        ...


_INTENT_STATUS = {
    "succeeded": SUCCEEDED,
    "canceled": FAILED,
    "requires_payment_method": PROCESSING,
    "requires_confirmation": PROCESSING,
    "requires_action": PROCESSING,
    "requires_capture": PROCESSING,
    "processing": PROCESSING,
}


class StripePaymentGateway:
    def __init__(
        self,
        *,
        secret_key: str | None,
        circuit: CircuitBreaker,
        stripe_sdk: Any | None = None,
    ) -> None:
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key
        self.circuit = circuit

    async def _call(self, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        if not self.secret_key:
            raise GatewayError("Stripe secret key not configured")
        self.stripe.api_key = self.secret_key
        if getattr(self.stripe, "max_network_retries", None) is not None:
            self.stripe.max_network_retries = 0

        def _sync_call() -> Any:
            return fn(*args, **kwargs)

        try:
            return await self.circuit.call(lambda: anyio.to_thread.run_sync(_sync_call))
        except self._stripe_error_types() as exc:
            raise GatewayError(f"{type(exc).__name__}: {getattr(exc, 'user_message', None) or exc}") from exc

    def _stripe_error_types(self) -> tuple[type[BaseException], ...]:
        error_cls = getattr(getattr(self.stripe, "error", None), "StripeError", None)
        if error_cls is None:
            error_cls = getattr(self.stripe, "StripeError", None)
        return (error_cls,) if isinstance(error_cls, type) else ()

    @staticmethod
    def _to_payment(intent: Any) -> PaymentResult:
        amount = intent.get("amount_received") or 0
        status = _INTENT_STATUS.get(intent.get("status"), PROCESSING)
        if status != SUCCEEDED:
            amount = 0
        return PaymentResult(
            status=status,
            provider_ref=intent["id"],
            amount_cents=int(amount),
            currency=str(intent.get("currency", "")).upper(),
            client_secret=intent.get("client_secret"),
        )

    async def charge(
        self, amount_cents: int, currency: str, booking_id: str, *, idempotency_key: str
    ) -> PaymentResult:
        intent = await self._call(
            self.stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=currency.lower(),
            metadata={"booking_id": booking_id},
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        return self._to_payment(intent)

    async def verify_payment(self, provider_ref: str) -> PaymentResult:
        intent = await self._call(self.stripe.PaymentIntent.retrieve, provider_ref)
        return self._to_payment(intent)

    async def refund(self, amount_cents: int, provider_ref: str, *, idempotency_key: str) -> RefundResult:
        refund = await self._call(
            self.stripe.Refund.create,
            payment_intent=provider_ref,
            amount=amount_cents,
            idempotency_key=idempotency_key,
        )
        status = refund.get("status")
        if status in {"failed", "canceled"}:
            raise GatewayError(f"refund_{status}")
        return RefundResult(completed=status == "succeeded", provider_ref=refund["id"])


async def call_gateway(
    operation: str,
    fn: Callable[..., Awaitable[T] | T],
    *args,
    max_attempts: int = 3,
    backoff_seconds: float = 0.5,
    **kwargs,
) -> T:
    """Run a gateway call with bounded exponential backoff.

    Exhausting the attempts raises ``UpstreamFailure``.
    """
    attempts = max(1, max_attempts)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except (GatewayError, CircuitBreakerOpenError, TimeoutError) as exc:
            last_error = exc
            metrics.record_gateway_call(operation, "error")
            logger.warning(
                "gateway_call_failed",
                extra={
                    "extra": {
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "error": type(exc).__name__,
                    }
                },
            )
            if attempt < attempts:
                await anyio.sleep(backoff_seconds * (2 ** (attempt - 1)))
            continue
        metrics.record_gateway_call(operation, "ok")
        return result  # type: ignore[return-value]
    raise UpstreamFailure(
        detail=f"Payment gateway {operation} failed after {attempts} attempts",
        errors=[{"field": "gateway", "message": str(last_error) if last_error else "unknown"}],
    )


def build_payment_gateway(app_settings) -> StripePaymentGateway:
    return StripePaymentGateway(
        secret_key=app_settings.stripe_secret_key,
        circuit=CircuitBreaker.from_settings("stripe", app_settings),
    )
