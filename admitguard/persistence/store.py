from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol

from admitguard.domain.access import EntityKind, Principal
from admitguard.domain.events import AuditRecord, IncidentRecord


class SecurityStore(Protocol):
    """Persistence boundary used by every admitguard component.

    Implementations raise ``PersistenceFailure`` for I/O errors; callers decide
    whether that fails open or closed.
    """

    async def append_audit_event(self, record: AuditRecord) -> None: ...

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
    ) -> list[AuditRecord]: ...

    async def entity_exists(self, kind: EntityKind, entity_id: str) -> bool: ...

    async def find_owning_tenant(self, kind: EntityKind, entity_id: str) -> str | None: ...

    async def find_owning_identifier(self, kind: EntityKind, entity_id: str) -> str | None: ...

    async def is_active_tenant(self, tenant_id: str) -> bool: ...

    async def get_principal(self, principal_id: str) -> Principal | None: ...

    async def get_principal_by_identifier(self, identifier: str) -> Principal | None: ...

    async def record_failed_login(self, principal_id: str) -> int | None: ...

    async def lock_principal(self, principal_id: str, locked_until: datetime) -> None: ...

    async def reset_failed_logins(self, principal_id: str) -> bool: ...

    async def clear_expired_lockouts(self, now: datetime, *, terminal_failures: int) -> list[str]: ...

    async def create_incident(self, incident: IncidentRecord) -> IncidentRecord: ...

    async def find_open_incident(self, dedupe_key: str) -> IncidentRecord | None: ...

    async def list_incidents(self, *, status: str | None = None) -> list[IncidentRecord]: ...
