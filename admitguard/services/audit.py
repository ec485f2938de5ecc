from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable

from admitguard.core.config import get_settings
from admitguard.domain.access import Principal
from admitguard.domain.events import (
    LOGIN_EVENT_TYPES,
    LOGIN_FAILED,
    LOGIN_SUCCESS,
    UNAUTHORIZED_DATA_ACCESS,
    AuditRecord,
    SecurityMetrics,
)
from admitguard.persistence.store import SecurityStore
from admitguard.services.resilience import bounded_store_call
from admitguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["otp", "authorization", "token", "secret", "password", "code", "pin"]
_REDACTED_VALUE = "[REDACTED]"

AUDIT_MODE_INLINE = "inline"
AUDIT_MODE_QUEUE = "queue"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_details(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_details(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_details(item) for item in value]
    return value


class AuditSink:
    """Append-only audit journal writer.

    In queue mode one worker task drains a bounded queue; a producer waits up to
    the enqueue timeout for space and then drops the event. Inline mode writes
    before returning. Either way ``record`` never raises to the caller.
    """

    def __init__(
        self,
        store: SecurityStore,
        *,
        mode: str | None = None,
        max_size: int | None = None,
        enqueue_timeout_ms: int | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._mode = (mode or settings.audit_write_mode).strip().lower()
        if self._mode not in {AUDIT_MODE_INLINE, AUDIT_MODE_QUEUE}:
            raise ValueError(f"unknown audit write mode: {self._mode}")
        self._max_size = max(1, int(max_size if max_size is not None else settings.audit_queue_max_size))
        self._enqueue_timeout_s = (
            enqueue_timeout_ms if enqueue_timeout_ms is not None else settings.audit_enqueue_timeout_ms
        ) / 1000.0
        self._time = time_provider or _utc_now
        self._queue: asyncio.Queue[AuditRecord] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def mode(self) -> str:
        return self._mode

    def now(self) -> datetime:
        return self._time()

    async def start(self) -> None:
        if self._mode != AUDIT_MODE_QUEUE or self._worker is not None:
            return
        self._stopped = False
        self._queue = asyncio.Queue(maxsize=self._max_size)
        self._worker = asyncio.create_task(self._run(), name="admitguard-audit-worker")
        logger.info("audit_worker_started max_size=%s", self._max_size)

    async def stop(self, *, flush: bool = True, timeout_s: float = 5.0) -> None:
        if self._worker is None:
            return
        if flush and self._queue is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout_s)
            except asyncio.TimeoutError:
                pending = self._queue.qsize()
                increment_counter("audit_events_dropped_total", pending)
                logger.error("audit_flush_timeout pending=%s", pending)
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._queue = None
        self._stopped = True
        logger.info("audit_worker_stopped")

    async def security_metrics(self, *, window: timedelta = timedelta(hours=24)) -> SecurityMetrics:
        # Summarize the trailing window of the journal for operator dashboards.
        window_start = self._time() - window
        events = await bounded_store_call(
            self._store.query_audit_events(since=window_start), operation="security_metrics"
        )
        failed_logins = sum(1 for event in events if event.event_type == LOGIN_FAILED)
        successful_logins = sum(1 for event in events if event.event_type == LOGIN_SUCCESS)
        total_logins = sum(1 for event in events if event.event_type in LOGIN_EVENT_TYPES)
        score = 100.0
        if total_logins:
            score = round(max(0.0, 100.0 - failed_logins / total_logins * 100.0), 2)
        return SecurityMetrics(
            window_start=window_start,
            total_login_attempts=total_logins,
            failed_login_attempts=failed_logins,
            successful_logins=successful_logins,
            unauthorized_access_attempts=sum(
                1 for event in events if event.event_type == UNAUTHORIZED_DATA_ACCESS
            ),
            failed_events=sum(1 for event in events if not event.success),
            security_score=score,
        )

    async def drain(self) -> None:
        # Wait until every queued event has been written or dropped.
        if self._queue is not None:
            await self._queue.join()

    async def record(
        self,
        event_type: str,
        *,
        success: bool,
        principal: Principal | None = None,
        principal_id: str | None = None,
        principal_identifier: str | None = None,
        tenant_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        resource_accessed: str | None = None,
        action_performed: str | None = None,
        failure_reason: str | None = None,
        severity: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        # Principal fields fill the actor columns unless overridden explicitly.
        record = AuditRecord(
            event_type=event_type,
            occurred_at=self._time(),
            success=success,
            principal_id=principal_id or (principal.id if principal is not None else None),
            principal_identifier=principal_identifier
            or (principal.identifier if principal is not None else None),
            principal_role=principal.role if principal is not None else None,
            tenant_id=tenant_id or (principal.tenant_id if principal is not None else None),
            ip_address=ip_address or (principal.ip_address if principal is not None else None),
            user_agent=user_agent or (principal.user_agent if principal is not None else None),
            resource_accessed=resource_accessed,
            action_performed=action_performed,
            failure_reason=failure_reason,
            severity=getattr(severity, "value", severity),
            details=sanitize_details(details or {}),
        )
        await self.emit(record)

    async def emit(self, record: AuditRecord) -> None:
        if self._mode == AUDIT_MODE_INLINE:
            await self._write(record)
            return
        if self._worker is None:
            if self._stopped:
                # Only an explicit start() brings the worker back after shutdown.
                increment_counter("audit_events_dropped_total")
                logger.error("audit_event_dropped_after_stop event_type=%s", record.event_type)
                return
            await self.start()
        assert self._queue is not None
        try:
            await asyncio.wait_for(self._queue.put(record), timeout=self._enqueue_timeout_s)
        except asyncio.TimeoutError:
            increment_counter("audit_events_dropped_total")
            logger.error(
                "audit_event_dropped event_type=%s queue_size=%s", record.event_type, self._queue.qsize()
            )

    async def _run(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            record = await queue.get()
            try:
                await self._write(record)
            finally:
                queue.task_done()

    async def _write(self, record: AuditRecord) -> None:
        # Audit writes are best-effort; a failed write never blocks the business operation.
        try:
            await self._store.append_audit_event(record)
        except Exception as exc:  # noqa: BLE001 - observability writes fail open
            increment_counter("audit_write_failures_total")
            logger.warning("audit_event_write_failed event_type=%s", record.event_type, exc_info=exc)
