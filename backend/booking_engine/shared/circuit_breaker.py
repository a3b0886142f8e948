from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Generic, TypeVar

from booking_engine.infra.metrics import metrics


logger = logging.getLogger("booking_engine.circuit")

T = TypeVar("T")


class CircuitBreakerOpenError(RuntimeError):
    pass


class CircuitBreaker(Generic[T]):
    """Closed → open after ``failure_threshold`` failures inside ``window_seconds``.

    After ``recovery_time`` the breaker lets ``half_open_max_calls`` probes through;
    one success closes it again.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        half_open_max_calls: int = 1,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.half_open_max_calls = max(1, half_open_max_calls)
        self.timeout_seconds = None if timeout_seconds is None else max(0.01, timeout_seconds)
        self._clock = clock
        self._state: str = "closed"
        self._opened_at: float = 0.0
        self._failures: Deque[float] = deque()
        self._half_open_calls: int = 0
        self._lock = asyncio.Lock()
        metrics.record_circuit_state(self.name, self._state)

    @classmethod
    def from_settings(cls, name: str, app_settings) -> "CircuitBreaker":
        return cls(
            name=name,
            failure_threshold=app_settings.gateway_circuit_failure_threshold,
            recovery_time=app_settings.gateway_circuit_recovery_seconds,
            window_seconds=app_settings.gateway_circuit_window_seconds,
            half_open_max_calls=app_settings.gateway_circuit_half_open_max_calls,
            timeout_seconds=app_settings.gateway_timeout_seconds,
        )

    async def call(self, fn: Callable[..., T | Awaitable[T]], *args, **kwargs) -> T:
        await self._ensure_available()
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                if self.timeout_seconds is None:
                    result = await result
                else:
                    result = await asyncio.wait_for(result, timeout=self.timeout_seconds)
        except Exception as exc:  # noqa: BLE001
            await self._record_failure()
            logger.warning(
                "circuit_failure",
                extra={"extra": {"name": self.name, "state": self._state, "error": type(exc).__name__}},
            )
            raise
        await self._record_success()
        return result  # type: ignore[return-value]

    async def _ensure_available(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._state == "open":
                if now - self._opened_at >= self.recovery_time:
                    self._set_state("half_open")
                    self._half_open_calls = 0
                else:
                    raise CircuitBreakerOpenError(f"circuit_open:{self.name}")
            if self._state == "half_open":
                if self._half_open_calls >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError(f"circuit_half_open_limit:{self.name}")
                self._half_open_calls += 1

    async def _record_failure(self) -> None:
        async with self._lock:
            now = self._clock()
            self._failures.append(now)
            window_start = now - self.window_seconds
            while self._failures and self._failures[0] < window_start:
                self._failures.popleft()
            if self._state == "half_open" or len(self._failures) >= self.failure_threshold:
                self._opened_at = now
                self._half_open_calls = 0
                if self._state != "open":
                    logger.warning("circuit_opened", extra={"extra": {"name": self.name}})
                self._set_state("open")

    async def _record_success(self) -> None:
        async with self._lock:
            self._failures.clear()
            if self._state != "closed":
                logger.info("circuit_closed", extra={"extra": {"name": self.name}})
            self._set_state("closed")
            self._half_open_calls = 0

    def _set_state(self, state: str) -> None:
        self._state = state
        metrics.record_circuit_state(self.name, state)

    @property
    def state(self) -> str:
        return self._state
