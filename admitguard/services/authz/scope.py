from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable, Iterable, TypeVar

from sqlalchemy import and_, false, true
from sqlalchemy.sql.elements import ColumnElement

from admitguard.domain.access import (
    ALL_OPERATIONS,
    DENY_ALL,
    INDIVIDUAL_OPERATIONS,
    TENANT_ADMIN_OPERATIONS,
    DataScope,
    EntityKind,
    Operation,
    Principal,
    Role,
)
from admitguard.domain.events import (
    FAKE_PLATFORM_OPERATOR,
    UNAUTHORIZED_DATA_ACCESS,
    Severity,
    data_access_event_type,
)
from admitguard.domain.models import OWNED_TABLES
from admitguard.persistence.store import SecurityStore
from admitguard.services.audit import AuditSink
from admitguard.services.authz.roles import normalize_role
from admitguard.services.identity.allowlist import IdentityAllowlist
from admitguard.services.notifications.alerts import AlertDispatcher
from admitguard.services.resilience import bounded_store_call


logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT")


def _field(name: str) -> Callable[[Any], Any]:
    # Read one attribute from ORM rows, pydantic models, dataclasses or plain dicts.
    def _read(record: Any) -> Any:
        if isinstance(record, dict):
            return record.get(name)
        return getattr(record, name, None)

    return _read


def _no_owner(record: Any) -> Any:
    return None


@dataclass(frozen=True)
class Ownership:
    tenant_of: Callable[[Any], Any]
    owner_of: Callable[[Any], Any]


OWNERSHIP: dict[EntityKind, Ownership] = {
    EntityKind.APPLICATION: Ownership(_field("tenant_id"), _field("owner_identifier")),
    EntityKind.DOCUMENT: Ownership(_field("tenant_id"), _field("owner_identifier")),
    # Tenant rows own themselves; individuals never match them.
    EntityKind.TENANT: Ownership(_field("id"), _no_owner),
    EntityKind.PRINCIPAL: Ownership(_field("tenant_id"), _field("identifier")),
    EntityKind.NOTIFICATION_LOG: Ownership(_field("tenant_id"), _field("recipient_identifier")),
    EntityKind.AUDIT_EVENT: Ownership(_field("tenant_id"), _field("principal_identifier")),
}


def _restriction_matches(restriction: str | None, value: Any) -> bool:
    if restriction is None:
        return True
    if restriction == DENY_ALL or value is None:
        return False
    return str(value) == restriction


def owner_in_scope(scope: DataScope, tenant_id: Any, owner_identifier: Any) -> bool:
    # Global access wins; otherwise every set restriction must match and an unrestricted scope matches nothing.
    if scope.global_access:
        return True
    if scope.tenant_restriction is None and scope.identifier_restriction is None:
        return False
    return _restriction_matches(scope.tenant_restriction, tenant_id) and _restriction_matches(
        scope.identifier_restriction, owner_identifier
    )


def apply(scope: DataScope, records: Iterable[RecordT], kind: EntityKind = EntityKind.APPLICATION) -> list[RecordT]:
    ownership = OWNERSHIP[kind]
    if scope.global_access:
        return list(records)
    return [
        record
        for record in records
        if owner_in_scope(scope, ownership.tenant_of(record), ownership.owner_of(record))
    ]


def scope_predicate(scope: DataScope, kind: EntityKind) -> ColumnElement[bool]:
    # Same rule as apply(), expressed as a WHERE clause for ORM queries.
    table = OWNED_TABLES[kind]
    if scope.global_access:
        return true()
    if scope.tenant_restriction is None and scope.identifier_restriction is None:
        return false()
    clauses: list[ColumnElement[bool]] = []
    if scope.tenant_restriction is not None:
        if scope.tenant_restriction == DENY_ALL:
            return false()
        clauses.append(table.tenant_column == scope.tenant_restriction)
    if scope.identifier_restriction is not None:
        if scope.identifier_restriction == DENY_ALL or table.owner_column is None:
            return false()
        clauses.append(table.owner_column == scope.identifier_restriction)
    return and_(*clauses)


class AccessScopeResolver:
    """Computes the data scope of a principal and applies it to records.

    Scopes are rebuilt on every call. Operator privilege comes only from the
    allowlist; a stored operator role without an allowlisted identifier gets
    the denied scope plus a critical audit event and an alert.
    """

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

    async def resolve(self, principal: Principal | None) -> DataScope:
        if principal is None:
            return DataScope.denied()
        role = normalize_role(principal.role)
        if not principal.is_active:
            logger.warning("scope_denied_inactive principal_id=%s", principal.id)
            return DataScope.denied(role)

        if role == Role.PLATFORM_OPERATOR:
            return await self._validate_platform_operator(principal)
        if role == Role.TENANT_ADMIN:
            if not principal.tenant_id:
                logger.warning("scope_denied_missing_tenant principal_id=%s", principal.id)
                return DataScope.denied(role)
            return DataScope(
                tenant_restriction=principal.tenant_id,
                allowed_operations=TENANT_ADMIN_OPERATIONS,
            )
        if role == Role.INDIVIDUAL:
            if not principal.identifier:
                return DataScope.denied(role)
            return DataScope(
                identifier_restriction=principal.identifier,
                allowed_operations=INDIVIDUAL_OPERATIONS,
            )

        logger.warning("scope_denied_unknown_role principal_id=%s role=%s", principal.id, principal.role)
        return DataScope.denied()

    def apply(
        self, scope: DataScope, records: Iterable[RecordT], kind: EntityKind = EntityKind.APPLICATION
    ) -> list[RecordT]:
        return apply(scope, records, kind)

    def scope_predicate(self, scope: DataScope, kind: EntityKind) -> ColumnElement[bool]:
        return scope_predicate(scope, kind)

    async def filter_for_principal(
        self,
        principal: Principal | None,
        records: Iterable[RecordT],
        kind: EntityKind = EntityKind.APPLICATION,
    ) -> list[RecordT]:
        scope = await self.resolve(principal)
        if principal is not None and principal.is_active and not scope.global_access:
            role = normalize_role(principal.role)
            if role is None:
                await self.deny_and_log(principal, kind, "unknown role")
                return []
            if role == Role.INDIVIDUAL and kind == EntityKind.TENANT:
                await self.deny_and_log(principal, kind, "individuals cannot read tenant records")
                return []
        return apply(scope, records, kind)

    async def can_access_entity(
        self,
        principal: Principal | None,
        kind: EntityKind,
        entity_id: str,
        *,
        scope: DataScope | None = None,
    ) -> bool:
        scope = scope or await self.resolve(principal)
        if scope.is_denied or not (
            scope.global_access or scope.tenant_restriction or scope.identifier_restriction
        ):
            return False
        # Authorization fails closed on store errors and timeouts.
        try:
            if scope.global_access:
                return await bounded_store_call(
                    self._store.entity_exists(kind, entity_id), operation="entity_exists"
                )
            tenant_id = None
            owner_identifier = None
            if scope.tenant_restriction is not None:
                tenant_id = await bounded_store_call(
                    self._store.find_owning_tenant(kind, entity_id), operation="find_owning_tenant"
                )
            if scope.identifier_restriction is not None:
                owner_identifier = await bounded_store_call(
                    self._store.find_owning_identifier(kind, entity_id), operation="find_owning_identifier"
                )
        except Exception as exc:  # noqa: BLE001 - deny when ownership cannot be established
            logger.warning(
                "entity_access_lookup_failed kind=%s entity_id=%s principal_id=%s",
                kind.value,
                entity_id,
                principal.id if principal else None,
                exc_info=exc,
            )
            return False
        allowed = owner_in_scope(scope, tenant_id, owner_identifier)
        if not allowed:
            logger.warning(
                "entity_access_denied kind=%s entity_id=%s principal_id=%s",
                kind.value,
                entity_id,
                principal.id if principal else None,
            )
        return allowed

    async def validate_and_log_access(
        self,
        principal: Principal | None,
        operation: Operation | str,
        entity_id: str | None = None,
        kind: EntityKind = EntityKind.APPLICATION,
        *,
        scope: DataScope | None = None,
    ) -> bool:
        # Successes are audited here; denials are audited by the denial path only.
        scope = scope or await self.resolve(principal)
        if principal is None or not scope.allows(operation):
            logger.warning(
                "operation_denied operation=%s principal_id=%s",
                getattr(operation, "value", operation),
                principal.id if principal else None,
            )
            return False
        resolved = Operation(str(getattr(operation, "value", operation)).upper())
        await self._audit.record(
            data_access_event_type(resolved.value),
            success=True,
            principal=principal,
            resource_accessed=kind.value,
            action_performed=resolved.value,
            details={"entity_id": entity_id} if entity_id is not None else None,
        )
        return True

    async def deny_and_log(
        self,
        principal: Principal | None,
        kind: EntityKind,
        reason: str,
        *,
        operation: Operation | str | None = None,
        entity_id: str | None = None,
    ) -> None:
        logger.warning(
            "unauthorized_data_access kind=%s principal_id=%s reason=%s",
            kind.value,
            principal.id if principal else None,
            reason,
        )
        details: dict[str, Any] = {}
        if entity_id is not None:
            details["entity_id"] = entity_id
        await self._audit.record(
            UNAUTHORIZED_DATA_ACCESS,
            success=False,
            principal=principal,
            resource_accessed=kind.value,
            action_performed=getattr(operation, "value", operation) or "filter",
            failure_reason=reason,
            severity=Severity.HIGH,
            details=details,
        )

    async def _validate_platform_operator(self, principal: Principal) -> DataScope:
        if self._allowlist.is_authorized(principal.identifier):
            # Global access is never narrowed by tenant once legitimacy is confirmed.
            return DataScope(global_access=True, allowed_operations=ALL_OPERATIONS)

        logger.critical(
            "fake_platform_operator_detected principal_id=%s identifier=%s",
            principal.id,
            principal.identifier,
        )
        await self._audit.record(
            FAKE_PLATFORM_OPERATOR,
            success=False,
            principal=principal,
            action_performed="resolve_scope",
            failure_reason="stored role claims platform operator but identity is not allowlisted",
            severity=Severity.CRITICAL,
        )
        if self._alerts is not None:
            self._alerts.dispatch(
                FAKE_PLATFORM_OPERATOR,
                f"principal {principal.id} claims platform operator without allowlist entry",
                {"principal_id": principal.id},
            )
        return DataScope.denied(Role.PLATFORM_OPERATOR)
