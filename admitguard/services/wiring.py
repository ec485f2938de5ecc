from __future__ import annotations

from dataclasses import dataclass
import logging

from admitguard.core.config import get_settings
from admitguard.persistence.store import SecurityStore
from admitguard.services.audit import AuditSink
from admitguard.services.authz.roles import RoleValidator
from admitguard.services.authz.scope import AccessScopeResolver
from admitguard.services.identity.allowlist import IdentityAllowlist
from admitguard.services.notifications.alerts import AlertDispatcher
from admitguard.services.notifications.channels import NotificationChannel, build_default_channels
from admitguard.services.resilience import get_coordination_redis
from admitguard.services.security.brute_force import BruteForceDetector
from admitguard.services.security.login_guard import LoginGuard
from admitguard.services.security.monitor import RedisGetter, SecurityMonitor
from admitguard.services.security.rate_limit import RateLimiter


logger = logging.getLogger(__name__)


@dataclass
class SecurityCore:
    # One instance per process; every component shares the allowlist, store and audit sink.
    allowlist: IdentityAllowlist
    store: SecurityStore
    audit: AuditSink
    alerts: AlertDispatcher
    roles: RoleValidator
    scopes: AccessScopeResolver
    rate_limiter: RateLimiter
    detector: BruteForceDetector
    login_guard: LoginGuard
    monitor: SecurityMonitor

    async def startup(self, *, run_monitor: bool | None = None) -> None:
        await self.audit.start()
        await self.detector.load_suspicious_ips()
        if run_monitor if run_monitor is not None else get_settings().security_monitor_enabled:
            self.monitor.start()
        logger.info("security_core_started audit_mode=%s", self.audit.mode)

    async def shutdown(self) -> None:
        # Stop the monitor first so its last tick can still audit and alert.
        await self.monitor.shutdown()
        await self.alerts.flush(get_settings().alert_flush_timeout_s)
        await self.audit.stop(flush=True)
        logger.info("security_core_stopped")


def build_security_core(
    store: SecurityStore,
    *,
    allowlist: IdentityAllowlist | None = None,
    sms_channel: NotificationChannel | None = None,
    email_channel: NotificationChannel | None = None,
    audit: AuditSink | None = None,
    redis_getter: RedisGetter | None = get_coordination_redis,
) -> SecurityCore:
    # Loading the allowlist raises AllowlistConfigError, which must abort startup.
    allowlist = allowlist or IdentityAllowlist.from_settings()
    if sms_channel is None or email_channel is None:
        default_sms, default_email = build_default_channels()
        sms_channel = sms_channel or default_sms
        email_channel = email_channel or default_email
    audit = audit or AuditSink(store)
    alerts = AlertDispatcher(allowlist, sms_channel=sms_channel, email_channel=email_channel, audit=audit)
    rate_limiter = RateLimiter(audit)
    detector = BruteForceDetector(store, audit)
    return SecurityCore(
        allowlist=allowlist,
        store=store,
        audit=audit,
        alerts=alerts,
        roles=RoleValidator(allowlist, store, audit, alerts),
        scopes=AccessScopeResolver(allowlist, store, audit, alerts),
        rate_limiter=rate_limiter,
        detector=detector,
        login_guard=LoginGuard(allowlist, store, audit, rate_limiter, detector, alerts),
        monitor=SecurityMonitor(store, audit, alerts, detector, rate_limiter, redis_getter=redis_getter),
    )
