from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
from typing import Callable

from admitguard.core.config import Settings, get_settings
from admitguard.domain.access import Principal
from admitguard.domain.events import (
    ACCOUNT_LOCKED,
    ACCOUNT_UNLOCKED,
    BLACKLIST_EVENT_TYPES,
    IP_BLACKLISTED,
    LOGIN_FAILED,
    Severity,
)
from admitguard.persistence.store import SecurityStore
from admitguard.services.audit import AuditSink
from admitguard.services.resilience import bounded_store_call
from admitguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LockoutState(str, Enum):
    NORMAL = "normal"
    WARNED = "warned"
    LOCKED = "locked"


@dataclass(frozen=True)
class LockoutPolicy:
    # Tiers are (minimum cumulative failures, lockout seconds), highest first.
    tiers: tuple[tuple[int, int], ...]
    terminal_failures: int
    terminal_s: int
    warn_threshold: int
    window_s: int

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "LockoutPolicy":
        settings = settings or get_settings()
        tiers = sorted(
            [
                (settings.lockout_tier1_failures, settings.lockout_tier1_s),
                (settings.lockout_tier2_failures, settings.lockout_tier2_s),
                (settings.lockout_tier3_failures, settings.lockout_tier3_s),
            ],
            reverse=True,
        )
        return cls(
            tiers=tuple(tiers),
            terminal_failures=settings.lockout_terminal_failures,
            terminal_s=settings.lockout_terminal_s,
            warn_threshold=settings.lockout_warn_threshold,
            window_s=settings.brute_force_window_s,
        )

    def is_terminal(self, failed_count: int) -> bool:
        return failed_count >= self.terminal_failures

    def duration_for(self, failed_count: int) -> timedelta | None:
        # Duration grows with the cumulative counter, never with the recent window.
        if self.is_terminal(failed_count):
            return timedelta(seconds=self.terminal_s)
        for threshold, seconds in self.tiers:
            if failed_count >= threshold:
                return timedelta(seconds=seconds)
        return None


def lockout_duration(failed_count: int, policy: LockoutPolicy | None = None) -> timedelta | None:
    return (policy or LockoutPolicy.from_settings()).duration_for(failed_count)


@dataclass(frozen=True)
class LockoutStatus:
    state: LockoutState
    failed_attempts: int
    locked_until: datetime | None = None
    terminal: bool = False
    recent_failures: int = 0

    @property
    def locked(self) -> bool:
        return self.state == LockoutState.LOCKED

    def remaining_seconds(self, now: datetime) -> int | None:
        if not self.locked or self.locked_until is None:
            return None
        return max(0, int((self.locked_until - now).total_seconds()))


class BruteForceDetector:
    """Failed-login detection, the suspicious IP set and the lockout state machine.

    Detection reads the audit journal and fails open when the store is
    unavailable. The suspicious IP set is process memory warmed from blacklist
    audit events.
    """

    def __init__(
        self,
        store: SecurityStore,
        audit: AuditSink,
        *,
        policy: LockoutPolicy | None = None,
        block_threshold: int | None = None,
        blacklist_threshold: int | None = None,
        window_s: int | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._audit = audit
        self._policy = policy or LockoutPolicy.from_settings(settings)
        self._block_threshold = block_threshold or settings.brute_force_block_threshold
        self._blacklist_threshold = blacklist_threshold or settings.brute_force_blacklist_threshold
        self._window = timedelta(seconds=window_s or settings.brute_force_window_s)
        self._retention = timedelta(days=settings.audit_retention_days)
        self._time = time_provider or _utc_now
        self._suspicious_ips: set[str] = set()
        self._suspicious_lock = asyncio.Lock()

    @property
    def policy(self) -> LockoutPolicy:
        return self._policy

    @property
    def suspicious_ips(self) -> frozenset[str]:
        return frozenset(self._suspicious_ips)

    async def load_suspicious_ips(self) -> int:
        # Warm the in-memory set from prior blacklist events at startup.
        try:
            events = await bounded_store_call(
                self._store.query_audit_events(
                    since=self._time() - self._retention,
                    event_types=BLACKLIST_EVENT_TYPES,
                ),
                operation="load_suspicious_ips",
            )
        except Exception as exc:  # noqa: BLE001 - startup proceeds with an empty set
            logger.warning("suspicious_ip_load_failed", exc_info=exc)
            return 0
        async with self._suspicious_lock:
            before = len(self._suspicious_ips)
            self._suspicious_ips.update(event.ip_address for event in events if event.ip_address)
            loaded = len(self._suspicious_ips) - before
        logger.info("suspicious_ips_loaded count=%s", loaded)
        return loaded

    async def is_suspicious_ip(self, ip: str | None) -> bool:
        if not ip:
            return False
        if ip in self._suspicious_ips:
            return True
        try:
            events = await bounded_store_call(
                self._store.query_audit_events(
                    since=self._time() - self._retention,
                    event_types=BLACKLIST_EVENT_TYPES,
                    ip_address=ip,
                ),
                operation="is_suspicious_ip",
            )
        except Exception as exc:  # noqa: BLE001 - detection fails open
            logger.warning("suspicious_ip_lookup_failed ip=%s", ip, exc_info=exc)
            return False
        if events:
            async with self._suspicious_lock:
                self._suspicious_ips.add(ip)
            return True
        return False

    async def blacklist_ip(self, ip: str, *, reason: str, failed_count: int | None = None) -> bool:
        async with self._suspicious_lock:
            if ip in self._suspicious_ips:
                return False
            self._suspicious_ips.add(ip)
        increment_counter("ip_blacklisted_total")
        logger.critical("ip_blacklisted ip=%s reason=%s", ip, reason)
        await self._audit.record(
            IP_BLACKLISTED,
            success=False,
            ip_address=ip,
            action_performed="blacklist_ip",
            failure_reason=reason,
            severity=Severity.HIGH,
            details={"failed_count": failed_count} if failed_count is not None else None,
        )
        return True

    async def count_recent_failures(self, *, identifier: str | None = None, ip: str | None = None) -> int:
        # Failures matching either key count once each.
        if not identifier and not ip:
            return 0
        events = await bounded_store_call(
            self._store.query_audit_events(
                since=self._time() - self._window,
                event_types=[LOGIN_FAILED],
                success=False,
            ),
            operation="count_recent_failures",
        )
        return sum(
            1
            for event in events
            if (identifier and event.principal_identifier == identifier) or (ip and event.ip_address == ip)
        )

    async def is_under_brute_force_attack(self, identifier: str | None, ip: str | None) -> bool:
        try:
            failures = await self.count_recent_failures(identifier=identifier, ip=ip)
        except Exception as exc:  # noqa: BLE001 - detection fails open
            logger.warning("brute_force_check_failed identifier=%s ip=%s", identifier, ip, exc_info=exc)
            return False
        if failures >= self._blacklist_threshold:
            if ip:
                await self.blacklist_ip(ip, reason="brute force threshold reached", failed_count=failures)
            return True
        if failures >= self._block_threshold:
            logger.warning(
                "brute_force_suspected identifier=%s ip=%s failures=%s", identifier, ip, failures
            )
            return True
        return False

    def evaluate_lockout(self, principal: Principal, *, recent_failures: int = 0) -> LockoutStatus:
        now = self._time()
        failed = int(principal.failed_attempts or 0)
        if self._policy.is_terminal(failed):
            # Terminal lockouts hold until a manual unlock, whatever locked_until says.
            return LockoutStatus(LockoutState.LOCKED, failed, principal.locked_until, True, recent_failures)
        if principal.locked_until is not None and principal.locked_until > now:
            return LockoutStatus(LockoutState.LOCKED, failed, principal.locked_until, False, recent_failures)
        if recent_failures >= self._policy.warn_threshold:
            return LockoutStatus(LockoutState.WARNED, failed, None, False, recent_failures)
        return LockoutStatus(LockoutState.NORMAL, failed, None, False, recent_failures)

    async def lockout_status(self, principal: Principal) -> LockoutStatus:
        try:
            recent = await self.count_recent_failures(identifier=principal.identifier)
        except Exception as exc:  # noqa: BLE001 - warned state is advisory
            logger.warning("lockout_recent_failures_failed principal_id=%s", principal.id, exc_info=exc)
            recent = 0
        return self.evaluate_lockout(principal, recent_failures=recent)

    async def record_failed_login(self, principal_id: str) -> LockoutStatus | None:
        try:
            count = await bounded_store_call(
                self._store.record_failed_login(principal_id), operation="record_failed_login"
            )
        except Exception as exc:  # noqa: BLE001 - lockout bookkeeping fails open
            logger.warning("failed_login_record_failed principal_id=%s", principal_id, exc_info=exc)
            return None
        if count is None:
            return None
        duration = self._policy.duration_for(count)
        if duration is None:
            return LockoutStatus(LockoutState.NORMAL, count)

        locked_until = self._time() + duration
        terminal = self._policy.is_terminal(count)
        try:
            await bounded_store_call(
                self._store.lock_principal(principal_id, locked_until), operation="lock_principal"
            )
        except Exception as exc:  # noqa: BLE001 - lockout bookkeeping fails open
            logger.warning("lockout_write_failed principal_id=%s", principal_id, exc_info=exc)
            return LockoutStatus(LockoutState.NORMAL, count)

        increment_counter("account_lockouts_total")
        logger.warning(
            "account_locked principal_id=%s failed_attempts=%s lockout_s=%s terminal=%s",
            principal_id,
            count,
            int(duration.total_seconds()),
            terminal,
        )
        await self._audit.record(
            ACCOUNT_LOCKED,
            success=False,
            principal_id=principal_id,
            action_performed="lockout",
            failure_reason="too many failed logins",
            severity=Severity.HIGH if terminal else Severity.MEDIUM,
            details={
                "principal_id": principal_id,
                "failed_attempts": count,
                "lockout_s": int(duration.total_seconds()),
                "terminal": terminal,
            },
        )
        return LockoutStatus(LockoutState.LOCKED, count, locked_until, terminal)

    async def unlock(self, principal_id: str, *, actor: str | None = None) -> bool:
        # Manual reset; the only way out of a terminal lockout.
        unlocked = await self._store.reset_failed_logins(principal_id)
        if unlocked:
            logger.info("account_unlocked principal_id=%s actor=%s", principal_id, actor)
            await self._audit.record(
                ACCOUNT_UNLOCKED,
                success=True,
                principal_id=principal_id,
                action_performed="manual_unlock",
                severity=Severity.LOW,
                details={"principal_id": principal_id, "actor": actor},
            )
        return unlocked

    async def clear_expired_lockouts(self) -> list[str]:
        cleared = await self._store.clear_expired_lockouts(
            self._time(), terminal_failures=self._policy.terminal_failures
        )
        for principal_id in cleared:
            await self._audit.record(
                ACCOUNT_UNLOCKED,
                success=True,
                principal_id=principal_id,
                action_performed="lockout_expired",
                severity=Severity.LOW,
                details={"principal_id": principal_id},
            )
        if cleared:
            logger.info("expired_lockouts_cleared count=%s", len(cleared))
        return cleared
