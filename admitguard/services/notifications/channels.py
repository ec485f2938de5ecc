from __future__ import annotations

import logging
from typing import Protocol

import httpx

from admitguard.core.config import get_settings


logger = logging.getLogger(__name__)

CHANNEL_SMS = "sms"
CHANNEL_EMAIL = "email"


class NotificationChannel(Protocol):
    name: str

    async def send(self, recipient: str, message: str) -> bool: ...


class HttpNotificationChannel:
    """Posts alert messages to an SMS or email gateway over HTTP.

    A channel without a configured gateway URL is disabled and reports every
    send as failed.
    """

    def __init__(
        self,
        name: str,
        gateway_url: str | None,
        *,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_ms: int | None = None,
    ) -> None:
        self.name = name
        self._gateway_url = gateway_url
        self._token = token
        self._client = client
        self._timeout_ms = timeout_ms if timeout_ms is not None else get_settings().notify_timeout_ms

    @property
    def enabled(self) -> bool:
        return bool(self._gateway_url)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per channel for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._timeout_ms / 1000.0)
        return self._client

    async def send(self, recipient: str, message: str) -> bool:
        if not self.enabled:
            logger.warning("notification_channel_disabled channel=%s", self.name)
            return False
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            response = await self._get_client().post(
                self._gateway_url,
                json={"channel": self.name, "recipient": recipient, "message": message},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            logger.warning("notification_send_failed channel=%s", self.name, exc_info=exc)
            return False
        if response.status_code >= 400:
            logger.warning("notification_send_rejected channel=%s status=%s", self.name, response.status_code)
            return False
        return True

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_default_channels() -> tuple[HttpNotificationChannel, HttpNotificationChannel]:
    settings = get_settings()
    sms = HttpNotificationChannel(
        CHANNEL_SMS,
        settings.notify_sms_gateway_url,
        token=settings.notify_gateway_token,
    )
    email = HttpNotificationChannel(
        CHANNEL_EMAIL,
        settings.notify_email_gateway_url,
        token=settings.notify_gateway_token,
    )
    return sms, email
