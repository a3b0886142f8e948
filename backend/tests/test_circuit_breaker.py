import asyncio
import time

import anyio
import pytest

from booking_engine.infra.payment_gateway import PROCESSING, SUCCEEDED, GatewayError, StripePaymentGateway
from booking_engine.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError


@pytest.mark.anyio
async def test_circuit_opens_after_failures():
    breaker = CircuitBreaker(name="stripe", failure_threshold=2, recovery_time=0.1, window_seconds=10)

    with pytest.raises(RuntimeError):
        await breaker.call(lambda: (_ for _ in ()).throw(RuntimeError("fail")))
    with pytest.raises(RuntimeError):
        await breaker.call(lambda: (_ for _ in ()).throw(RuntimeError("fail")))

    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(lambda: "ok")

    await anyio.sleep(0.11)
    with pytest.raises(RuntimeError):
        await breaker.call(lambda: (_ for _ in ()).throw(RuntimeError("fail")))
    assert breaker.state == "open"


@pytest.mark.anyio
async def test_circuit_half_open_allows_success_and_closes():
    breaker = CircuitBreaker(name="stripe", failure_threshold=1, recovery_time=0.05)

    with pytest.raises(RuntimeError):
        await breaker.call(lambda: (_ for _ in ()).throw(RuntimeError("fail")))

    await anyio.sleep(0.12)
    result = await breaker.call(lambda: "success")

    assert result == "success"
    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_failures_outside_window_do_not_open():
    now = [0.0]
    breaker = CircuitBreaker(name="stripe", failure_threshold=2, window_seconds=10, clock=lambda: now[0])

    with pytest.raises(RuntimeError):
        await breaker.call(lambda: (_ for _ in ()).throw(RuntimeError("fail")))
    now[0] = 11.0
    with pytest.raises(RuntimeError):
        await breaker.call(lambda: (_ for _ in ()).throw(RuntimeError("fail")))

    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_circuit_timeout_marks_failure_and_opens():
    breaker = CircuitBreaker(
        name="stripe-timeout",
        failure_threshold=1,
        recovery_time=1.0,
        window_seconds=10,
        timeout_seconds=0.01,
    )

    with pytest.raises(TimeoutError):
        await breaker.call(lambda: anyio.to_thread.run_sync(lambda: time.sleep(0.05)))

    assert breaker.state == "open"
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(lambda: "ok")


@pytest.mark.anyio
async def test_circuit_timeout_applies_to_task_returned_by_function():
    breaker = CircuitBreaker(
        name="stripe-task-timeout",
        failure_threshold=1,
        recovery_time=1.0,
        window_seconds=10,
        timeout_seconds=0.01,
    )

    task = asyncio.create_task(anyio.sleep(0.05))

    with pytest.raises(TimeoutError):
        await breaker.call(lambda: task)

    assert breaker.state == "open"


class _StripeError(Exception):
    user_message = "card declined"


class _FakeStripe:
    StripeError = _StripeError

    def __init__(self, intent_status: str = "succeeded", fail: bool = False) -> None:
        self.api_key = None
        self.max_network_retries = 2
        self.created: list[dict] = []
        self.intent_status = intent_status
        self.fail = fail
        stripe = self

        class PaymentIntent:
            @staticmethod
            def create(**kwargs):
                if stripe.fail:
                    raise _StripeError("declined")
                stripe.created.append(kwargs)
                return {
                    "id": "pi_123",
                    "status": stripe.intent_status,
                    "amount_received": kwargs["amount"] if stripe.intent_status == "succeeded" else 0,
                    "currency": kwargs["currency"],
                    "client_secret": "pi_123_secret",
                }

        self.PaymentIntent = PaymentIntent


@pytest.mark.anyio
async def test_stripe_gateway_maps_intents():
    stripe = _FakeStripe()
    gateway = StripePaymentGateway(
        secret_key="sk_test_123", circuit=CircuitBreaker(name="stripe-test"), stripe_sdk=stripe
    )

    result = await gateway.charge(34500, "usd", "b-1", idempotency_key="key-1")

    assert result.status == SUCCEEDED
    assert result.amount_cents == 34500
    assert result.currency == "USD"
    assert stripe.created[0]["idempotency_key"] == "key-1"
    assert stripe.max_network_retries == 0

    stripe.intent_status = "requires_action"
    pending = await gateway.charge(34500, "usd", "b-2", idempotency_key="key-2")
    assert pending.status == PROCESSING
    assert pending.amount_cents == 0


@pytest.mark.anyio
async def test_stripe_errors_become_gateway_errors():
    gateway = StripePaymentGateway(
        secret_key="sk_test_123", circuit=CircuitBreaker(name="stripe-errors"), stripe_sdk=_FakeStripe(fail=True)
    )
    with pytest.raises(GatewayError):
        await gateway.charge(100, "usd", "b-1", idempotency_key="key-1")

    unconfigured = StripePaymentGateway(
        secret_key=None, circuit=CircuitBreaker(name="stripe-unset"), stripe_sdk=_FakeStripe()
    )
    with pytest.raises(GatewayError):
        await unconfigured.charge(100, "usd", "b-1", idempotency_key="key-1")
