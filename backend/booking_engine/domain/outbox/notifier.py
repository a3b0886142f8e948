"""Notification collaborator adapters used by outbox delivery."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def deliver(self, kind: str, payload: dict) -> tuple[bool, str | None]:
        ...


class NoopNotifier:
    async def deliver(self, kind: str, payload: dict) -> tuple[bool, str | None]:
        return True, None


class LogNotifier:
    async def deliver(self, kind: str, payload: dict) -> tuple[bool, str | None]:
        logger.info("notification", extra={"extra": {"kind": kind, "payload": payload}})
        return True, None


class WebhookNotifier:
    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def deliver(self, kind: str, payload: dict) -> tuple[bool, str | None]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(self.url, json={"kind": kind, "payload": payload})
            if 200 <= response.status_code < 300:
                return True, None
            return False, f"status_{response.status_code}"
        except httpx.HTTPError as exc:
            return False, type(exc).__name__


def resolve_notifier(app_settings) -> Notifier:
    mode = getattr(app_settings, "notification_mode", "log")
    if mode == "webhook":
        url = getattr(app_settings, "notification_webhook_url", None)
        if not url:
            raise RuntimeError("notification_mode=webhook requires NOTIFICATION_WEBHOOK_URL")
        return WebhookNotifier(url, timeout_seconds=app_settings.notification_webhook_timeout_seconds)
    if mode == "off":
        return NoopNotifier()
    return LogNotifier()
