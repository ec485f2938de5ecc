from __future__ import annotations

import asyncio
import logging
from typing import Any

from admitguard.domain.events import SECURITY_ALERT, Severity
from admitguard.services.audit import AuditSink
from admitguard.services.identity.allowlist import IdentityAllowlist
from admitguard.services.notifications.channels import NotificationChannel
from admitguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _format_message(alert_type: str, message: str) -> str:
    return f"SECURITY ALERT [{alert_type}]: {message}"


class AlertDispatcher:
    """Delivers security alerts to every allowlisted operator contact.

    SMS goes to each allowlisted identifier and email to each allowlisted
    contact. One channel failing never stops the other, and nothing is raised
    to the caller.
    """

    def __init__(
        self,
        allowlist: IdentityAllowlist,
        *,
        sms_channel: NotificationChannel,
        email_channel: NotificationChannel,
        audit: AuditSink,
    ) -> None:
        self._allowlist = allowlist
        self._sms = sms_channel
        self._email = email_channel
        self._audit = audit
        self._pending: set[asyncio.Task[bool]] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def send_alert(self, alert_type: str, message: str, details: dict[str, Any] | None = None) -> bool:
        identifiers, contacts = self._allowlist.contacts()
        text = _format_message(alert_type, message)
        attempts = [(self._sms, recipient) for recipient in identifiers]
        attempts += [(self._email, recipient) for recipient in contacts]

        delivered = 0
        failed = 0
        for channel, recipient in attempts:
            try:
                ok = await channel.send(recipient, text)
            except Exception as exc:  # noqa: BLE001 - one channel must not block the rest
                logger.warning("alert_channel_error channel=%s alert_type=%s", channel.name, alert_type, exc_info=exc)
                ok = False
            if ok:
                delivered += 1
            else:
                failed += 1

        if failed:
            increment_counter("alert_delivery_failures_total", failed)
        if delivered == 0:
            logger.error("alert_delivery_failed alert_type=%s attempts=%s", alert_type, len(attempts))
        else:
            logger.info("alert_sent alert_type=%s delivered=%s failed=%s", alert_type, delivered, failed)

        await self._audit.record(
            SECURITY_ALERT,
            success=delivered > 0,
            resource_accessed=alert_type,
            action_performed="alert",
            failure_reason=None if delivered > 0 else "no channel accepted the alert",
            severity=Severity.CRITICAL,
            details={
                "alert_type": alert_type,
                "message": message,
                "delivered": delivered,
                "failed": failed,
                **(details or {}),
            },
        )
        return delivered > 0

    def dispatch(self, alert_type: str, message: str, details: dict[str, Any] | None = None) -> asyncio.Task[bool]:
        # Fire-and-forget from request paths; flush() settles these at shutdown.
        task = asyncio.create_task(self._send_safely(alert_type, message, details))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def flush(self, timeout: float) -> int:
        # Wait for pending alerts; anything unfinished after the timeout is abandoned.
        if not self._pending:
            return 0
        pending = list(self._pending)
        _, unfinished = await asyncio.wait(pending, timeout=max(timeout, 0))
        for task in unfinished:
            task.cancel()
        if unfinished:
            increment_counter("alerts_abandoned_total", len(unfinished))
            logger.error("alerts_abandoned count=%s", len(unfinished))
        return len(unfinished)

    async def _send_safely(self, alert_type: str, message: str, details: dict[str, Any] | None) -> bool:
        try:
            return await self.send_alert(alert_type, message, details)
        except Exception as exc:  # noqa: BLE001 - alert failures are logged, never raised
            logger.error("alert_dispatch_failed alert_type=%s", alert_type, exc_info=exc)
            return False
