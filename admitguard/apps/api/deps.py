from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status

from admitguard.core.errors import (
    AuthorizationDenied,
    IdentityIntegrityViolation,
    InvalidRoleAssignment,
    LockedOut,
    RateLimitExceeded,
)
from admitguard.domain.access import DataScope, EntityKind, Operation, Principal, Role
from admitguard.services.authz.roles import normalize_role
from admitguard.services.wiring import SecurityCore


logger = logging.getLogger(__name__)


def get_security_core(request: Request) -> SecurityCore:
    return request.app.state.security_core


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


async def get_current_principal(request: Request) -> Principal:
    # The upstream authentication layer stores the principal on request.state.
    principal: Principal | None = getattr(request.state, "principal", None)
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    updates: dict[str, str | None] = {}
    if principal.ip_address is None:
        updates["ip_address"] = _client_ip(request)
    if principal.user_agent is None:
        updates["user_agent"] = request.headers.get("user-agent")
    return principal.model_copy(update=updates) if updates else principal


def require_operation(operation: Operation, kind: EntityKind = EntityKind.APPLICATION):
    # Dependency factory that enforces scope for one operation on one entity kind.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        core: SecurityCore = Depends(get_security_core),
    ) -> DataScope:
        scope = await core.scopes.resolve(principal)
        raw_entity_id = request.path_params.get("entity_id")
        entity_id = str(raw_entity_id) if raw_entity_id is not None else None
        reason: str | None = None
        if entity_id is not None and not await core.scopes.can_access_entity(
            principal, kind, entity_id, scope=scope
        ):
            reason = "entity outside scope"
        elif not await core.scopes.validate_and_log_access(principal, operation, entity_id, kind, scope=scope):
            reason = "operation outside scope"
        if reason is not None:
            # Forged operator roles were already audited as critical while resolving.
            if (
                principal.is_active
                and normalize_role(principal.role) == Role.PLATFORM_OPERATOR
                and not core.allowlist.is_authorized(principal.identifier)
            ):
                raise IdentityIntegrityViolation()
            await core.scopes.deny_and_log(principal, kind, reason, operation=operation, entity_id=entity_id)
            raise AuthorizationDenied()
        return scope

    return _dependency


def rate_limited(operation: str):
    # Key on the principal identifier when authenticated, otherwise on the client ip.
    async def _dependency(request: Request, core: SecurityCore = Depends(get_security_core)) -> None:
        principal: Principal | None = getattr(request.state, "principal", None)
        ip = _client_ip(request)
        key = principal.identifier if principal is not None else (ip or "anonymous")
        decision = await core.rate_limiter.check(
            key, operation, ip_address=ip, user_agent=request.headers.get("user-agent")
        )
        if not decision.allowed:
            raise RateLimitExceeded(retry_after_s=decision.retry_after_s)

    return _dependency


async def enforce_login_guard(request: Request, core: SecurityCore = Depends(get_security_core)) -> bool:
    # Runs the pre-authentication checks; returns whether MFA is required.
    identifier = request.query_params.get("identifier") or request.headers.get("X-Login-Identifier")
    if not identifier:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="identifier is required")
    decision = await core.login_guard.evaluate(
        identifier,
        _client_ip(request),
        request.headers.get("user-agent"),
        request.headers.get("X-Device-Fingerprint"),
    )
    if decision.allowed:
        return decision.requires_mfa
    logger.info("login_rejected reason=%s", decision.block_reason)
    if decision.lockout_seconds is not None:
        raise LockedOut(lockout_seconds=decision.lockout_seconds)
    if decision.retry_after_s is not None:
        raise RateLimitExceeded(retry_after_s=decision.retry_after_s)
    raise AuthorizationDenied()


async def ensure_role_assignment(
    core: SecurityCore, identifier: str, role: str | Role | None, tenant_id: str | None = None
) -> Role:
    # Route handlers call this before persisting a role; rejections are already audited.
    if not await core.roles.validate_role_assignment(identifier, role, tenant_id):
        raise InvalidRoleAssignment()
    resolved = normalize_role(role)
    if resolved is None:
        raise InvalidRoleAssignment()
    return resolved
