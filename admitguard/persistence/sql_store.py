from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from admitguard.core.errors import PersistenceFailure
from admitguard.domain.access import EntityKind, Principal
from admitguard.domain.events import AuditRecord, IncidentRecord, IncidentStatus
from admitguard.domain.models import (
    OWNED_TABLES,
    AuditEvent,
    PrincipalAccount,
    SecurityIncident,
    Tenant,
)


logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round trip; treat stored values as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_id(kind: EntityKind, entity_id: str) -> Any:
    # Audit events use numeric ids; everything else is a string key.
    if kind == EntityKind.AUDIT_EVENT:
        try:
            return int(entity_id)
        except (TypeError, ValueError):
            return None
    return entity_id


def _audit_to_record(row: AuditEvent) -> AuditRecord:
    return AuditRecord(
        event_type=row.event_type,
        occurred_at=_as_utc(row.occurred_at),
        success=bool(row.success),
        principal_id=row.principal_id,
        principal_identifier=row.principal_identifier,
        principal_role=row.principal_role,
        tenant_id=row.tenant_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        resource_accessed=row.resource_accessed,
        action_performed=row.action_performed,
        failure_reason=row.failure_reason,
        severity=row.severity,
        details=dict(row.details_json or {}),
    )


def _incident_to_record(row: SecurityIncident) -> IncidentRecord:
    return IncidentRecord(
        id=row.id,
        incident_type=row.incident_type,
        severity=row.severity,
        description=row.description,
        status=row.status,
        detected_at=_as_utc(row.detected_at),
        dedupe_key=row.dedupe_key,
        affected_principal_id=row.affected_principal_id,
        source_ip=row.source_ip,
        automatic_response=row.automatic_response,
        resolved_at=_as_utc(row.resolved_at),
    )


def _principal_to_model(row: PrincipalAccount) -> Principal:
    return Principal(
        id=row.id,
        identifier=row.identifier,
        role=row.role,
        tenant_id=row.tenant_id,
        contact=row.contact,
        is_active=bool(row.is_active),
        failed_attempts=int(row.failed_login_attempts or 0),
        locked_until=_as_utc(row.locked_until),
    )


class SqlSecurityStore:
    """SQLAlchemy-backed store; every public call runs in its own session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append_audit_event(self, record: AuditRecord) -> None:
        async with self._session_factory() as session:
            try:
                session.add(
                    AuditEvent(
                        event_type=record.event_type,
                        principal_id=record.principal_id,
                        principal_identifier=record.principal_identifier,
                        principal_role=record.principal_role,
                        tenant_id=record.tenant_id,
                        ip_address=record.ip_address,
                        user_agent=record.user_agent,
                        resource_accessed=record.resource_accessed,
                        action_performed=record.action_performed,
                        success=record.success,
                        failure_reason=record.failure_reason,
                        severity=record.severity,
                        details_json=dict(record.details),
                        occurred_at=record.occurred_at,
                    )
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceFailure(f"audit append failed event_type={record.event_type}") from exc

    async def query_audit_events(
        self,
        *,
        since: datetime,
        until: datetime | None = None,
        event_types: Iterable[str] | None = None,
        success: bool | None = None,
        ip_address: str | None = None,
        principal_identifier: str | None = None,
        resource_accessed: str | None = None,
    ) -> list[AuditRecord]:
        stmt = select(AuditEvent).where(AuditEvent.occurred_at >= since)
        if until is not None:
            stmt = stmt.where(AuditEvent.occurred_at <= until)
        if event_types is not None:
            stmt = stmt.where(AuditEvent.event_type.in_(list(event_types)))
        if success is not None:
            stmt = stmt.where(AuditEvent.success.is_(success))
        if ip_address is not None:
            stmt = stmt.where(AuditEvent.ip_address == ip_address)
        if principal_identifier is not None:
            stmt = stmt.where(AuditEvent.principal_identifier == principal_identifier)
        if resource_accessed is not None:
            stmt = stmt.where(AuditEvent.resource_accessed == resource_accessed)
        stmt = stmt.order_by(AuditEvent.occurred_at.asc(), AuditEvent.id.asc())
        rows = await self._fetch_all(stmt, operation="query_audit_events")
        return [_audit_to_record(row) for row in rows]

    async def entity_exists(self, kind: EntityKind, entity_id: str) -> bool:
        table = OWNED_TABLES[kind]
        key = _coerce_id(kind, entity_id)
        if key is None:
            return False
        rows = await self._fetch_all(select(table.id_column).where(table.id_column == key), operation="entity_exists")
        return bool(rows)

    async def find_owning_tenant(self, kind: EntityKind, entity_id: str) -> str | None:
        table = OWNED_TABLES[kind]
        return await self._owner_value(kind, entity_id, table.tenant_column)

    async def find_owning_identifier(self, kind: EntityKind, entity_id: str) -> str | None:
        table = OWNED_TABLES[kind]
        if table.owner_column is None:
            return None
        return await self._owner_value(kind, entity_id, table.owner_column)

    async def is_active_tenant(self, tenant_id: str) -> bool:
        rows = await self._fetch_all(
            select(Tenant.id).where(Tenant.id == tenant_id, Tenant.is_active.is_(True)),
            operation="is_active_tenant",
        )
        return bool(rows)

    async def get_principal(self, principal_id: str) -> Principal | None:
        rows = await self._fetch_all(
            select(PrincipalAccount).where(PrincipalAccount.id == principal_id), operation="get_principal"
        )
        return _principal_to_model(rows[0]) if rows else None

    async def get_principal_by_identifier(self, identifier: str) -> Principal | None:
        rows = await self._fetch_all(
            select(PrincipalAccount).where(PrincipalAccount.identifier == identifier),
            operation="get_principal_by_identifier",
        )
        return _principal_to_model(rows[0]) if rows else None

    async def record_failed_login(self, principal_id: str) -> int | None:
        # Increment in the database so concurrent failures are never lost.
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    update(PrincipalAccount)
                    .where(PrincipalAccount.id == principal_id)
                    .values(failed_login_attempts=PrincipalAccount.failed_login_attempts + 1)
                )
                if result.rowcount == 0:
                    await session.rollback()
                    return None
                count = (
                    await session.execute(
                        select(PrincipalAccount.failed_login_attempts).where(PrincipalAccount.id == principal_id)
                    )
                ).scalar_one()
                await session.commit()
                return int(count)
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceFailure("record_failed_login failed") from exc

    async def lock_principal(self, principal_id: str, locked_until: datetime) -> None:
        await self._execute_update(
            update(PrincipalAccount).where(PrincipalAccount.id == principal_id).values(locked_until=locked_until),
            operation="lock_principal",
        )

    async def reset_failed_logins(self, principal_id: str) -> bool:
        rowcount = await self._execute_update(
            update(PrincipalAccount)
            .where(PrincipalAccount.id == principal_id)
            .values(failed_login_attempts=0, locked_until=None),
            operation="reset_failed_logins",
        )
        return rowcount > 0

    async def clear_expired_lockouts(self, now: datetime, *, terminal_failures: int) -> list[str]:
        # Terminal lockouts wait for a manual unlock and are never swept.
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    select(PrincipalAccount).where(
                        PrincipalAccount.locked_until.is_not(None),
                        PrincipalAccount.locked_until < now,
                        PrincipalAccount.failed_login_attempts < terminal_failures,
                    )
                )
                rows = list(result.scalars().all())
                cleared = [row.id for row in rows]
                for row in rows:
                    row.locked_until = None
                    row.failed_login_attempts = 0
                await session.commit()
                return cleared
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceFailure("clear_expired_lockouts failed") from exc

    async def create_incident(self, incident: IncidentRecord) -> IncidentRecord:
        async with self._session_factory() as session:
            try:
                row = SecurityIncident(
                    id=incident.id,
                    incident_type=incident.incident_type,
                    severity=incident.severity,
                    description=incident.description,
                    affected_principal_id=incident.affected_principal_id,
                    source_ip=incident.source_ip,
                    status=incident.status,
                    dedupe_key=incident.dedupe_key,
                    automatic_response=incident.automatic_response,
                    detected_at=incident.detected_at,
                    resolved_at=incident.resolved_at,
                )
                created = _incident_to_record(row)
                session.add(row)
                await session.commit()
                return created
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceFailure(f"create_incident failed type={incident.incident_type}") from exc

    async def find_open_incident(self, dedupe_key: str) -> IncidentRecord | None:
        rows = await self._fetch_all(
            select(SecurityIncident)
            .where(
                SecurityIncident.dedupe_key == dedupe_key,
                SecurityIncident.status == IncidentStatus.OPEN.value,
            )
            .order_by(SecurityIncident.detected_at.desc())
            .limit(1),
            operation="find_open_incident",
        )
        return _incident_to_record(rows[0]) if rows else None

    async def list_incidents(self, *, status: str | None = None) -> list[IncidentRecord]:
        stmt = select(SecurityIncident)
        if status is not None:
            stmt = stmt.where(SecurityIncident.status == status)
        rows = await self._fetch_all(stmt.order_by(SecurityIncident.detected_at.asc()), operation="list_incidents")
        return [_incident_to_record(row) for row in rows]

    async def _owner_value(self, kind: EntityKind, entity_id: str, column: Any) -> str | None:
        table = OWNED_TABLES[kind]
        key = _coerce_id(kind, entity_id)
        if key is None:
            return None
        rows = await self._fetch_all(select(column).where(table.id_column == key), operation=f"owner_lookup.{kind.value}")
        if not rows or rows[0] is None:
            return None
        return str(rows[0])

    async def _fetch_all(self, stmt: Any, *, operation: str) -> list[Any]:
        async with self._session_factory() as session:
            try:
                result = await session.execute(stmt)
                return list(result.scalars().all())
            except SQLAlchemyError as exc:
                logger.warning("security_store_read_failed operation=%s", operation, exc_info=exc)
                raise PersistenceFailure(f"{operation} failed") from exc

    async def _execute_update(self, stmt: Any, *, operation: str) -> int:
        async with self._session_factory() as session:
            try:
                result = await session.execute(stmt)
                await session.commit()
                return int(result.rowcount or 0)
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceFailure(f"{operation} failed") from exc
