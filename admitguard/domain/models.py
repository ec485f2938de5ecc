from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from admitguard.domain.access import EntityKind


# BigInteger autoincrement only works as INTEGER PRIMARY KEY on sqlite.
_EventId = BigInteger().with_variant(Integer(), "sqlite")
_JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Short school code shown to operators.
    code: Mapped[str] = mapped_column(String, unique=True)
    # Inactive tenants cannot receive tenant admins.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PrincipalAccount(Base):
    __tablename__ = "principals"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Phone number used for login and OTP delivery.
    identifier: Mapped[str] = mapped_column(String, unique=True, index=True)
    # Stored role is untrusted for operator privilege; the allowlist decides.
    role: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str | None] = mapped_column(String, ForeignKey("tenants.id"), nullable=True, index=True)
    contact: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Lockout state machine fields.
    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Application(Base):
    __tablename__ = "applications"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    # Identifier of the individual who submitted the application.
    owner_identifier: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, default="submitted", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    application_id: Mapped[str] = mapped_column(String, ForeignKey("applications.id"), index=True)
    # Ownership is denormalized from the application so scope filters need no join.
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    owner_identifier: Mapped[str] = mapped_column(String, index=True)
    filename: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    recipient_identifier: Mapped[str] = mapped_column(String, index=True)
    channel: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_type_occurred", "event_type", "occurred_at"),
        Index("ix_audit_events_ip_occurred", "ip_address", "occurred_at"),
    )

    # Monotonic numeric id for ordering; rows are never updated.
    id: Mapped[int] = mapped_column(_EventId, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    principal_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    principal_identifier: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    principal_role: Mapped[str | None] = mapped_column(String, nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_accessed: Mapped[str | None] = mapped_column(String, nullable=True)
    action_performed: Mapped[str | None] = mapped_column(String, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    severity: Mapped[str | None] = mapped_column(String, nullable=True)
    # Sanitized before write.
    details_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonDocument, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class SecurityIncident(Base):
    __tablename__ = "security_incidents"
    __table_args__ = (
        Index("ix_security_incidents_dedupe_status", "dedupe_key", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: uuid4().hex)
    incident_type: Mapped[str] = mapped_column(String, index=True)
    severity: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text)
    affected_principal_id: Mapped[str | None] = mapped_column(String, nullable=True)
    source_ip: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="open", nullable=False)
    # Type plus subject; an open incident with the same key suppresses duplicates.
    dedupe_key: Mapped[str] = mapped_column(String)
    automatic_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)


@dataclass(frozen=True)
class OwnedTable:
    # Columns that carry the owning tenant and owning identifier for one entity kind.
    model: type[Base]
    id_column: Any
    tenant_column: Any
    owner_column: Any | None


OWNED_TABLES: dict[EntityKind, OwnedTable] = {
    EntityKind.APPLICATION: OwnedTable(
        Application, Application.id, Application.tenant_id, Application.owner_identifier
    ),
    EntityKind.DOCUMENT: OwnedTable(Document, Document.id, Document.tenant_id, Document.owner_identifier),
    # A tenant owns itself; no individual owns a tenant row.
    EntityKind.TENANT: OwnedTable(Tenant, Tenant.id, Tenant.id, None),
    EntityKind.PRINCIPAL: OwnedTable(
        PrincipalAccount, PrincipalAccount.id, PrincipalAccount.tenant_id, PrincipalAccount.identifier
    ),
    EntityKind.NOTIFICATION_LOG: OwnedTable(
        NotificationLog, NotificationLog.id, NotificationLog.tenant_id, NotificationLog.recipient_identifier
    ),
    EntityKind.AUDIT_EVENT: OwnedTable(
        AuditEvent, AuditEvent.id, AuditEvent.tenant_id, AuditEvent.principal_identifier
    ),
}
