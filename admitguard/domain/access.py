from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class Role(str, Enum):
    PLATFORM_OPERATOR = "platform_operator"
    TENANT_ADMIN = "tenant_admin"
    INDIVIDUAL = "individual"


class Operation(str, Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    EXPORT = "EXPORT"
    MANAGE = "MANAGE"


class EntityKind(str, Enum):
    APPLICATION = "application"
    DOCUMENT = "document"
    TENANT = "tenant"
    PRINCIPAL = "principal"
    NOTIFICATION_LOG = "notification_log"
    AUDIT_EVENT = "audit_event"


ALL_OPERATIONS = frozenset(Operation)
TENANT_ADMIN_OPERATIONS = frozenset(
    {Operation.CREATE, Operation.READ, Operation.UPDATE, Operation.EXPORT}
)
INDIVIDUAL_OPERATIONS = frozenset({Operation.READ, Operation.UPDATE})

# Unsatisfiable restriction value; matching code treats it as never equal to anything.
DENY_ALL = "\x00deny-all"


class Principal(BaseModel):
    # Authenticated actor handed over by the authentication collaborator.
    id: str
    identifier: str
    # Stored role is untrusted; kept as a raw string until validated.
    role: str
    tenant_id: str | None = None
    contact: str | None = None
    is_active: bool = True
    failed_attempts: int = 0
    locked_until: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class DataScope:
    """Records and operations one principal may touch for the current request.

    Built fresh for every decision and never cached; activation and the stored
    role can change between calls.
    """

    tenant_restriction: str | None = None
    identifier_restriction: str | None = None
    global_access: bool = False
    allowed_operations: frozenset[Operation] = field(default_factory=frozenset)

    @classmethod
    def denied(cls, role: Role | str | None = None) -> "DataScope":
        # Tenant-admin scopes always carry a tenant restriction, even when denied.
        tenant_restriction = DENY_ALL if role == Role.TENANT_ADMIN else None
        return cls(
            tenant_restriction=tenant_restriction,
            identifier_restriction=DENY_ALL,
            global_access=False,
            allowed_operations=frozenset(),
        )

    @property
    def is_denied(self) -> bool:
        return not self.global_access and DENY_ALL in (
            self.tenant_restriction,
            self.identifier_restriction,
        )

    def allows(self, operation: Operation | str) -> bool:
        try:
            resolved = Operation(str(getattr(operation, "value", operation)).upper())
        except ValueError:
            return False
        return resolved in self.allowed_operations
