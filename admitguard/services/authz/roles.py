from __future__ import annotations

import logging

from admitguard.core.config import get_settings
from admitguard.domain.access import Principal, Role
from admitguard.domain.events import (
    INVALID_ROLE_ASSIGNMENT,
    PRIVILEGE_ESCALATION_ATTEMPT,
    ROLE_CHANGE,
    Severity,
)
from admitguard.persistence.store import SecurityStore
from admitguard.services.audit import AuditSink
from admitguard.services.identity.allowlist import IdentityAllowlist
from admitguard.services.notifications.alerts import AlertDispatcher
from admitguard.services.resilience import bounded_store_call


logger = logging.getLogger(__name__)

# Keys carry no separators; legacy role names still appear in older principal rows.
_ROLE_ALIASES = {
    "platformoperator": Role.PLATFORM_OPERATOR,
    "platformadmin": Role.PLATFORM_OPERATOR,
    "superadmin": Role.PLATFORM_OPERATOR,
    "tenantadmin": Role.TENANT_ADMIN,
    "schooladmin": Role.TENANT_ADMIN,
    "individual": Role.INDIVIDUAL,
    "parent": Role.INDIVIDUAL,
}

_DISPLAY_NAMES = {
    Role.PLATFORM_OPERATOR: "Platform Operator",
    Role.TENANT_ADMIN: "School Administrator",
    Role.INDIVIDUAL: "Parent",
}

_DASHBOARD_ROUTES = {
    Role.PLATFORM_OPERATOR: "/dashboard",
    Role.TENANT_ADMIN: "/admin/dashboard",
    Role.INDIVIDUAL: "/parent/home",
}


def normalize_role(value: str | Role | None) -> Role | None:
    # Unknown values map to None so callers can fail closed.
    if value is None:
        return None
    if isinstance(value, Role):
        return value
    key = str(value).strip().lower()
    for separator in (" ", "-", "_"):
        key = key.replace(separator, "")
    return _ROLE_ALIASES.get(key)


def display_name(role: str | Role | None) -> str:
    return _DISPLAY_NAMES.get(normalize_role(role), "Unknown")


def dashboard_route(role: str | Role | None) -> str:
    resolved = normalize_role(role)
    if resolved is None:
        return get_settings().anonymous_landing_route
    return _DASHBOARD_ROUTES[resolved]


class RoleValidator:
    def __init__(
        self,
        allowlist: IdentityAllowlist,
        store: SecurityStore,
        audit: AuditSink,
        alerts: AlertDispatcher | None = None,
    ) -> None:
        self._allowlist = allowlist
        self._store = store
        self._audit = audit
        self._alerts = alerts

    def dashboard_route(self, role: str | Role | None) -> str:
        return dashboard_route(role)

    async def validate_role_assignment(self, identifier: str, role: str | Role | None, tenant_id: str | None = None) -> bool:
        resolved = normalize_role(role)
        if resolved is None:
            logger.warning("invalid_role_assignment role=%s identifier=%s", role, identifier)
            await self._reject(identifier, role, tenant_id, "unknown role", Severity.MEDIUM)
            return False

        if resolved == Role.PLATFORM_OPERATOR:
            if not self._allowlist.is_authorized(identifier):
                logger.critical("unauthorized_platform_operator_assignment identifier=%s", identifier)
                await self._reject(identifier, role, tenant_id, "identifier not allowlisted", Severity.CRITICAL)
                return False
            return True

        if resolved == Role.TENANT_ADMIN:
            if not tenant_id:
                logger.warning("tenant_admin_missing_tenant identifier=%s", identifier)
                await self._reject(identifier, role, tenant_id, "tenant required", Severity.MEDIUM)
                return False
            try:
                active = await bounded_store_call(
                    self._store.is_active_tenant(tenant_id), operation="is_active_tenant"
                )
            except Exception as exc:  # noqa: BLE001 - validation fails closed on store errors
                logger.warning("tenant_lookup_failed tenant_id=%s identifier=%s", tenant_id, identifier, exc_info=exc)
                return False
            if not active:
                logger.warning("tenant_admin_invalid_tenant tenant_id=%s identifier=%s", tenant_id, identifier)
                await self._reject(identifier, role, tenant_id, "tenant missing or inactive", Severity.MEDIUM)
                return False
            return True

        return True

    async def validate_role_change(self, principal: Principal, new_role: str | Role | None) -> bool:
        resolved = normalize_role(new_role)
        if resolved is None:
            logger.warning("invalid_role_change role=%s principal_id=%s", new_role, principal.id)
            return False
        if resolved == Role.PLATFORM_OPERATOR and not self._allowlist.is_authorized(principal.identifier):
            logger.critical("unauthorized_platform_operator_assignment principal_id=%s", principal.id)
            await self._audit.record(
                INVALID_ROLE_ASSIGNMENT,
                success=False,
                principal=principal,
                action_performed="role_change",
                failure_reason="identifier not allowlisted",
                severity=Severity.CRITICAL,
                details={"requested_role": resolved.value},
            )
            return False
        logger.info(
            "role_change principal_id=%s from=%s to=%s", principal.id, principal.role, resolved.value
        )
        await self._audit.record(
            ROLE_CHANGE,
            success=True,
            principal=principal,
            action_performed="role_change",
            severity=Severity.LOW,
            details={"from_role": principal.role, "to_role": resolved.value},
        )
        return True

    async def is_privilege_escalation(self, principal: Principal, requested_role: str | Role | None) -> bool:
        # Advisory only; the caller decides whether to deny.
        requested = normalize_role(requested_role)
        if requested == Role.PLATFORM_OPERATOR and not self._allowlist.is_authorized(principal.identifier):
            logger.critical(
                "privilege_escalation_attempt principal_id=%s requested=%s", principal.id, requested.value
            )
            await self._audit.record(
                PRIVILEGE_ESCALATION_ATTEMPT,
                success=False,
                principal=principal,
                action_performed="role_request",
                failure_reason="platform operator requested by non-allowlisted identity",
                severity=Severity.CRITICAL,
                details={"requested_role": requested.value},
            )
            if self._alerts is not None:
                self._alerts.dispatch(
                    PRIVILEGE_ESCALATION_ATTEMPT,
                    f"principal {principal.id} requested platform operator privilege",
                    {"principal_id": principal.id},
                )
            return True
        if requested == Role.TENANT_ADMIN and normalize_role(principal.role) == Role.INDIVIDUAL:
            logger.warning(
                "privilege_escalation_attempt principal_id=%s requested=%s", principal.id, requested.value
            )
            await self._audit.record(
                PRIVILEGE_ESCALATION_ATTEMPT,
                success=False,
                principal=principal,
                action_performed="role_request",
                failure_reason="individual requested tenant admin",
                severity=Severity.HIGH,
                details={"requested_role": requested.value},
            )
            return True
        return False

    async def _reject(
        self,
        identifier: str,
        role: str | Role | None,
        tenant_id: str | None,
        reason: str,
        severity: Severity,
    ) -> None:
        await self._audit.record(
            INVALID_ROLE_ASSIGNMENT,
            success=False,
            principal_identifier=identifier,
            tenant_id=tenant_id,
            action_performed="role_assignment",
            failure_reason=reason,
            severity=severity,
            details={"requested_role": getattr(role, "value", role)},
        )
