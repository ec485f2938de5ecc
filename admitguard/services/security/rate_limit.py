from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, Deque

from admitguard.core.config import Settings, get_settings
from admitguard.domain.events import RATE_LIMIT_EXCEEDED, Severity
from admitguard.services.audit import AuditSink
from admitguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

OP_LOGIN = "login"
OP_OTP_REQUEST = "otp_request"
OP_UPLOAD = "upload"
OP_PLATFORM_OPERATOR_ACCESS = "platform_operator_access"
OP_PASSWORD_RESET = "password_reset"


@dataclass(frozen=True)
class WindowLimit:
    max_count: int
    window_s: float


@dataclass(frozen=True)
class RateLimitDecision:
    # Outcome of one sliding-window check plus retry hints for the caller.
    allowed: bool
    key: str
    operation: str
    remaining: int
    retry_after_s: int


def limits_from_settings(settings: Settings | None = None) -> tuple[dict[str, WindowLimit], WindowLimit]:
    settings = settings or get_settings()
    limits = {
        OP_LOGIN: WindowLimit(settings.rl_login_max, settings.rl_login_window_s),
        OP_OTP_REQUEST: WindowLimit(settings.rl_otp_request_max, settings.rl_otp_request_window_s),
        OP_UPLOAD: WindowLimit(settings.rl_upload_max, settings.rl_upload_window_s),
        OP_PLATFORM_OPERATOR_ACCESS: WindowLimit(
            settings.rl_platform_operator_access_max, settings.rl_platform_operator_access_window_s
        ),
        OP_PASSWORD_RESET: WindowLimit(settings.rl_password_reset_max, settings.rl_password_reset_window_s),
    }
    default = WindowLimit(settings.rl_default_max, settings.rl_default_window_s)
    return limits, default


class RateLimiter:
    """Sliding-window limiter keyed by (identifier or ip, operation).

    State lives in process memory and is lost on restart. Each bucket has its
    own lock so the evict, compare and record steps happen as one unit.
    Rejected attempts are not added to the window but are written to the audit
    journal.
    """

    def __init__(
        self,
        audit: AuditSink | None = None,
        *,
        limits: dict[str, WindowLimit] | None = None,
        default_limit: WindowLimit | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        configured, configured_default = limits_from_settings()
        self._limits = limits if limits is not None else configured
        self._default = default_limit or configured_default
        self._audit = audit
        self._time = time_source or time.monotonic
        self._windows: dict[tuple[str, str], Deque[float]] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def limit_for(self, operation: str) -> WindowLimit:
        return self._limits.get(operation.strip().lower(), self._default)

    def _lock_for(self, bucket: tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(bucket)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[bucket] = lock
        return lock

    async def check(
        self,
        key: str,
        operation: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RateLimitDecision:
        normalized_op = operation.strip().lower()
        limit = self.limit_for(normalized_op)
        bucket = (key, normalized_op)
        async with self._lock_for(bucket):
            now = self._time()
            window = self._windows.setdefault(bucket, deque())
            cutoff = now - limit.window_s
            while window and window[0] < cutoff:
                window.popleft()
            if len(window) >= limit.max_count:
                retry_after = max(1, int(math.ceil(window[0] + limit.window_s - now))) if window else 1
                decision = RateLimitDecision(False, key, normalized_op, 0, retry_after)
            else:
                window.append(now)
                decision = RateLimitDecision(True, key, normalized_op, limit.max_count - len(window), 0)

        if not decision.allowed:
            increment_counter(f"rate_limit_rejections_total.{normalized_op}")
            logger.warning(
                "rate_limit_exceeded key=%s operation=%s retry_after_s=%s", key, normalized_op, decision.retry_after_s
            )
            if self._audit is not None:
                await self._audit.record(
                    RATE_LIMIT_EXCEEDED,
                    success=False,
                    principal_identifier=key,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    resource_accessed=normalized_op,
                    action_performed="rate_limit_check",
                    failure_reason="rate limit exceeded",
                    severity=Severity.MEDIUM,
                    details={
                        "max_count": limit.max_count,
                        "window_s": limit.window_s,
                        "retry_after_s": decision.retry_after_s,
                    },
                )
        return decision

    async def is_rate_limited(self, key: str, operation: str) -> bool:
        decision = await self.check(key, operation)
        return not decision.allowed

    async def reset(self, key: str, operation: str) -> None:
        bucket = (key, operation.strip().lower())
        async with self._lock_for(bucket):
            self._windows.pop(bucket, None)

    def prune_idle(self) -> int:
        # Drop buckets whose newest attempt has aged out and whose lock is free.
        now = self._time()
        removed = 0
        for bucket in list(self._windows):
            lock = self._locks.get(bucket)
            if lock is not None and lock.locked():
                continue
            window = self._windows[bucket]
            limit = self.limit_for(bucket[1])
            if not window or window[-1] < now - limit.window_s:
                self._windows.pop(bucket, None)
                self._locks.pop(bucket, None)
                removed += 1
        return removed

    def tracked_buckets(self) -> int:
        return len(self._windows)
