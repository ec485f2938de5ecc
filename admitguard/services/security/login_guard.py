from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable

from admitguard.domain.access import Principal
from admitguard.domain.events import (
    BLOCKED_SUSPICIOUS_IP,
    BRUTE_FORCE_DETECTED,
    GEOGRAPHIC_ANOMALY,
    LOGIN_FAILED,
    LOGIN_SUCCESS,
    PLATFORM_OPERATOR_LOGIN_ATTEMPT,
    UNKNOWN_DEVICE_LOGIN,
    Severity,
)
from admitguard.persistence.store import SecurityStore
from admitguard.services.audit import AuditSink
from admitguard.services.identity.allowlist import IdentityAllowlist
from admitguard.services.notifications.alerts import AlertDispatcher
from admitguard.services.resilience import bounded_store_call
from admitguard.services.security.brute_force import BruteForceDetector, LockoutStatus
from admitguard.services.security.rate_limit import OP_LOGIN, RateLimiter


logger = logging.getLogger(__name__)

BLOCK_SUSPICIOUS_IP = "suspicious_ip"
BLOCK_BRUTE_FORCE = "brute_force"
BLOCK_RATE_LIMITED = "rate_limited"
BLOCK_LOCKED_OUT = "locked_out"

# Known IPs and devices come from successful logins inside the lookback; IPs from the latest few.
_KNOWN_IP_SAMPLE = 5
_KNOWN_LOOKBACK = timedelta(days=90)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LoginDecision:
    # block_reason is for logs and audit only; callers show a generic message.
    allowed: bool
    block_reason: str | None = None
    requires_mfa: bool = False
    retry_after_s: int | None = None
    lockout_seconds: int | None = None
    new_location: bool = False
    requires_device_verification: bool = False
    # Allowlisted contact that receives the operator verification code.
    verification_contact: str | None = None


class LoginGuard:
    """Pre-authentication checks for a login attempt, run in a fixed order.

    Suspicious IP, brute force, rate limit and lockout each block on their own.
    Allowlisted operator identifiers additionally require MFA and raise an
    alert. A known principal on a device fingerprint absent from its recent
    successful logins must verify the device. An IP not seen in recent
    successful logins is recorded as a location anomaly. Neither blocks.
    """

    def __init__(
        self,
        allowlist: IdentityAllowlist,
        store: SecurityStore,
        audit: AuditSink,
        rate_limiter: RateLimiter,
        detector: BruteForceDetector,
        alerts: AlertDispatcher | None = None,
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._allowlist = allowlist
        self._store = store
        self._audit = audit
        self._rate_limiter = rate_limiter
        self._detector = detector
        self._alerts = alerts
        self._time = time_provider or _utc_now

    async def evaluate(
        self,
        identifier: str,
        ip: str | None,
        user_agent: str | None = None,
        device_fingerprint: str | None = None,
    ) -> LoginDecision:
        if await self._detector.is_suspicious_ip(ip):
            logger.warning("login_blocked_suspicious_ip identifier=%s ip=%s", identifier, ip)
            await self._audit.record(
                BLOCKED_SUSPICIOUS_IP,
                success=False,
                principal_identifier=identifier,
                ip_address=ip,
                user_agent=user_agent,
                action_performed="login",
                failure_reason="login from suspicious ip",
                severity=Severity.HIGH,
            )
            return LoginDecision(False, BLOCK_SUSPICIOUS_IP)

        if await self._detector.is_under_brute_force_attack(identifier, ip):
            logger.warning("login_blocked_brute_force identifier=%s ip=%s", identifier, ip)
            await self._audit.record(
                BRUTE_FORCE_DETECTED,
                success=False,
                principal_identifier=identifier,
                ip_address=ip,
                user_agent=user_agent,
                action_performed="login",
                failure_reason="brute force detected",
                severity=Severity.HIGH,
            )
            return LoginDecision(False, BLOCK_BRUTE_FORCE)

        rate = await self._rate_limiter.check(
            f"{identifier}:{ip or '-'}", OP_LOGIN, ip_address=ip, user_agent=user_agent
        )
        if not rate.allowed:
            return LoginDecision(False, BLOCK_RATE_LIMITED, retry_after_s=rate.retry_after_s)

        principal = await self._lookup(identifier)
        if principal is not None:
            status = self._detector.evaluate_lockout(principal)
            if status.locked:
                logger.warning(
                    "login_blocked_locked_out principal_id=%s terminal=%s", principal.id, status.terminal
                )
                return LoginDecision(
                    False,
                    BLOCK_LOCKED_OUT,
                    lockout_seconds=status.remaining_seconds(self._time()),
                )

        requires_mfa = False
        verification_contact: str | None = None
        if self._allowlist.is_authorized(identifier):
            requires_mfa = True
            verification_contact = self._verification_contact(identifier, principal)
            await self._audit.record(
                PLATFORM_OPERATOR_LOGIN_ATTEMPT,
                success=True,
                principal_identifier=identifier,
                ip_address=ip,
                user_agent=user_agent,
                action_performed="login",
                severity=Severity.MEDIUM,
            )
            if self._alerts is not None:
                self._alerts.dispatch(
                    "PLATFORM_OPERATOR_LOGIN",
                    f"login attempt for platform operator account from ip {ip or 'unknown'}",
                    {"user_agent": user_agent},
                )

        requires_device_verification = False
        if principal is not None and not await self._is_known_device(principal, device_fingerprint):
            requires_device_verification = True
            logger.info("login_unknown_device principal_id=%s ip=%s", principal.id, ip)
            await self._audit.record(
                UNKNOWN_DEVICE_LOGIN,
                success=True,
                principal=principal,
                ip_address=ip,
                user_agent=user_agent,
                action_performed="login",
                severity=Severity.MEDIUM,
                details={"fingerprint_supplied": bool(device_fingerprint)},
            )

        new_location = await self._detect_new_location(identifier, ip, user_agent)
        return LoginDecision(
            True,
            requires_mfa=requires_mfa,
            new_location=new_location,
            requires_device_verification=requires_device_verification,
            verification_contact=verification_contact,
        )

    async def record_result(
        self,
        identifier: str,
        ip: str | None,
        user_agent: str | None,
        *,
        success: bool,
        failure_reason: str | None = None,
        device_fingerprint: str | None = None,
    ) -> LockoutStatus | None:
        principal = await self._lookup(identifier)
        # Successful logins remember the device so later logins from it skip verification.
        details = {"device_fingerprint": device_fingerprint} if success and device_fingerprint else None
        await self._audit.record(
            LOGIN_SUCCESS if success else LOGIN_FAILED,
            success=success,
            principal=principal,
            principal_identifier=identifier,
            ip_address=ip,
            user_agent=user_agent,
            action_performed="login",
            failure_reason=None if success else (failure_reason or "invalid credentials"),
            severity=None if success else Severity.LOW,
            details=details,
        )
        if success or principal is None:
            return None
        return await self._detector.record_failed_login(principal.id)

    async def _lookup(self, identifier: str) -> Principal | None:
        try:
            return await bounded_store_call(
                self._store.get_principal_by_identifier(identifier), operation="get_principal_by_identifier"
            )
        except Exception as exc:  # noqa: BLE001 - lookup failures fail open for login checks
            logger.warning("principal_lookup_failed identifier=%s", identifier, exc_info=exc)
            return None

    def _verification_contact(self, identifier: str, principal: Principal | None) -> str | None:
        contact = principal.contact if principal is not None else None
        valid, _, canonical_contact = self._allowlist.validate_credentials(identifier, contact)
        if not valid:
            logger.warning("operator_contact_not_allowlisted identifier=%s", identifier)
            return None
        return canonical_contact

    async def _is_known_device(self, principal: Principal, device_fingerprint: str | None) -> bool:
        if not device_fingerprint:
            return False
        try:
            events = await bounded_store_call(
                self._store.query_audit_events(
                    since=self._time() - _KNOWN_LOOKBACK,
                    event_types=[LOGIN_SUCCESS],
                    success=True,
                    principal_identifier=principal.identifier,
                ),
                operation="known_devices",
            )
        except Exception as exc:  # noqa: BLE001 - an unverifiable device is treated as unknown
            logger.warning("device_check_failed principal_id=%s", principal.id, exc_info=exc)
            return False
        return any(event.details.get("device_fingerprint") == device_fingerprint for event in events)

    async def _detect_new_location(self, identifier: str, ip: str | None, user_agent: str | None) -> bool:
        if not ip:
            return False
        try:
            events = await bounded_store_call(
                self._store.query_audit_events(
                    since=self._time() - _KNOWN_LOOKBACK,
                    event_types=[LOGIN_SUCCESS],
                    success=True,
                    principal_identifier=identifier,
                ),
                operation="recent_login_ips",
            )
        except Exception as exc:  # noqa: BLE001 - anomaly detection is advisory
            logger.warning("location_check_failed identifier=%s", identifier, exc_info=exc)
            return False
        recent = sorted(events, key=lambda event: event.occurred_at, reverse=True)[:_KNOWN_IP_SAMPLE]
        known_ips = {event.ip_address for event in recent if event.ip_address}
        if not known_ips or ip in known_ips:
            return False
        logger.info("login_new_location identifier=%s ip=%s", identifier, ip)
        await self._audit.record(
            GEOGRAPHIC_ANOMALY,
            success=True,
            principal_identifier=identifier,
            ip_address=ip,
            user_agent=user_agent,
            action_performed="login",
            severity=Severity.MEDIUM,
            details={"known_ip_count": len(known_ips)},
        )
        return True
