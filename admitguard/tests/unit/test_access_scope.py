from __future__ import annotations

import pytest

from admitguard.domain.access import DENY_ALL, DataScope, EntityKind, Operation, Principal
from admitguard.domain.events import FAKE_PLATFORM_OPERATOR, SECURITY_ALERT, UNAUTHORIZED_DATA_ACCESS
from admitguard.services.authz.scope import AccessScopeResolver, apply
from admitguard.services.telemetry import counters_snapshot


def _records() -> list[dict[str, str]]:
    return [
        {"id": "a-1", "tenant_id": "1", "owner_identifier": "+300"},
        {"id": "a-2", "tenant_id": "2", "owner_identifier": "+301"},
        {"id": "a-3", "tenant_id": "1", "owner_identifier": "+302"},
        {"id": "a-4", "tenant_id": "2", "owner_identifier": "+300"},
    ]


@pytest.fixture
def resolver(allowlist, store, audit, alerts) -> AccessScopeResolver:
    return AccessScopeResolver(allowlist, store, audit, alerts)


async def test_allowlisted_operator_gets_global_scope(resolver, store) -> None:
    operator = Principal(id="p-op", identifier="+100000001", role="platform_operator", tenant_id="1")
    scope = await resolver.resolve(operator)
    assert scope.global_access is True
    # Legitimate operators are never narrowed by tenant.
    assert scope.tenant_restriction is None
    assert all(scope.allows(op) for op in Operation)
    assert len(resolver.apply(scope, _records())) == 4
    assert store.events_of(FAKE_PLATFORM_OPERATOR) == []


async def test_forged_operator_role_is_denied_and_alerted(resolver, store, alerts, sms_channel) -> None:
    forged = Principal(id="p-x", identifier="+999999999", role="platform_operator")
    scope = await resolver.resolve(forged)
    await alerts.flush(1.0)
    assert scope.global_access is False
    assert scope.is_denied is True
    assert scope.allowed_operations == frozenset()
    assert resolver.apply(scope, _records()) == []
    events = store.events_of(FAKE_PLATFORM_OPERATOR)
    assert len(events) == 1
    assert events[0].severity == "critical"
    assert events[0].principal_id == "p-x"
    assert len(sms_channel.sent) == 1
    assert store.events_of(SECURITY_ALERT)


@pytest.mark.parametrize("stored_role", ["PlatformOperator", "platformoperator", "Platform Operator"])
async def test_forged_operator_spellings_are_all_caught(resolver, store, alerts, sms_channel, stored_role) -> None:
    forged = Principal(id="p-x", identifier="+999999999", role=stored_role)
    scope = await resolver.resolve(forged)
    await alerts.flush(1.0)
    assert scope.is_denied is True
    events = store.events_of(FAKE_PLATFORM_OPERATOR)
    assert len(events) == 1
    assert events[0].severity == "critical"
    assert len(sms_channel.sent) == 1


async def test_tenant_admin_sees_only_own_tenant(resolver) -> None:
    admin = Principal(id="p-a", identifier="+200", role="tenant_admin", tenant_id="1")
    scope = await resolver.resolve(admin)
    assert scope.tenant_restriction == "1"
    assert [record["id"] for record in resolver.apply(scope, _records())] == ["a-1", "a-3"]
    assert scope.allows(Operation.EXPORT) is True
    assert scope.allows("delete") is False
    assert scope.allows(Operation.MANAGE) is False


async def test_individual_sees_only_owned_records(resolver) -> None:
    parent = Principal(id="p-i", identifier="+300", role="parent", tenant_id="1")
    scope = await resolver.resolve(parent)
    assert scope.identifier_restriction == "+300"
    assert [record["id"] for record in resolver.apply(scope, _records())] == ["a-1", "a-4"]
    assert scope.allows("read") is True
    assert scope.allows(Operation.CREATE) is False


async def test_apply_is_idempotent(resolver) -> None:
    admin = Principal(id="p-a", identifier="+200", role="tenant_admin", tenant_id="2")
    scope = await resolver.resolve(admin)
    once = resolver.apply(scope, _records())
    assert resolver.apply(scope, once) == once


async def test_inactive_and_missing_principals_get_denied_scope(resolver) -> None:
    inactive_admin = Principal(id="p-a", identifier="+200", role="tenant_admin", tenant_id="1", is_active=False)
    scope = await resolver.resolve(inactive_admin)
    assert scope.tenant_restriction == DENY_ALL
    assert scope.is_denied is True
    assert resolver.apply(scope, _records()) == []
    assert (await resolver.resolve(None)).is_denied is True


async def test_tenant_admin_without_tenant_is_denied(resolver) -> None:
    admin = Principal(id="p-a", identifier="+200", role="tenant_admin")
    scope = await resolver.resolve(admin)
    assert scope.is_denied is True
    assert scope.tenant_restriction == DENY_ALL


async def test_unknown_role_filter_is_denied_and_logged(resolver, store) -> None:
    ghost = Principal(id="p-g", identifier="+500", role="janitor", tenant_id="1")
    assert await resolver.filter_for_principal(ghost, _records()) == []
    denial = store.events_of(UNAUTHORIZED_DATA_ACCESS)[0]
    assert denial.failure_reason == "unknown role"
    assert denial.severity == "high"


async def test_individual_cannot_list_tenants(resolver, store) -> None:
    parent = Principal(id="p-i", identifier="+300", role="individual")
    tenants = [{"id": "1"}, {"id": "2"}]
    assert await resolver.filter_for_principal(parent, tenants, EntityKind.TENANT) == []
    assert store.events_of(UNAUTHORIZED_DATA_ACCESS)[0].resource_accessed == "tenant"


async def test_tenant_admin_lists_only_own_tenant_row(resolver) -> None:
    admin = Principal(id="p-a", identifier="+200", role="tenant_admin", tenant_id="2")
    tenants = [{"id": "1"}, {"id": "2"}]
    assert await resolver.filter_for_principal(admin, tenants, EntityKind.TENANT) == [{"id": "2"}]


def test_module_apply_handles_objects_and_unrestricted_scope() -> None:
    class Row:
        def __init__(self, tenant_id: str, owner_identifier: str) -> None:
            self.tenant_id = tenant_id
            self.owner_identifier = owner_identifier

    rows = [Row("1", "+300"), Row("2", "+301")]
    assert apply(DataScope(tenant_restriction="2"), rows) == [rows[1]]
    # A scope with no restriction and no global flag matches nothing.
    assert apply(DataScope(), rows) == []


async def test_can_access_entity_checks_ownership(resolver, store) -> None:
    store.add_tenant("1")
    store.add_entity(EntityKind.DOCUMENT, "d-1", tenant_id="1", owner_identifier="+300")
    store.add_entity(EntityKind.DOCUMENT, "d-2", tenant_id="2", owner_identifier="+301")
    admin = Principal(id="p-a", identifier="+200", role="tenant_admin", tenant_id="1")
    parent = Principal(id="p-i", identifier="+301", role="individual")
    operator = Principal(id="p-op", identifier="+100000001", role="platform_operator")

    assert await resolver.can_access_entity(admin, EntityKind.DOCUMENT, "d-1") is True
    assert await resolver.can_access_entity(admin, EntityKind.DOCUMENT, "d-2") is False
    assert await resolver.can_access_entity(parent, EntityKind.DOCUMENT, "d-2") is True
    assert await resolver.can_access_entity(parent, EntityKind.DOCUMENT, "d-1") is False
    assert await resolver.can_access_entity(operator, EntityKind.DOCUMENT, "d-2") is True
    assert await resolver.can_access_entity(operator, EntityKind.DOCUMENT, "missing") is False
    assert await resolver.can_access_entity(admin, EntityKind.TENANT, "1") is True


async def test_can_access_entity_fails_closed_on_store_errors(resolver, store) -> None:
    store.add_entity(EntityKind.APPLICATION, "a-1", tenant_id="1", owner_identifier="+300")
    store.fail_reads = True
    admin = Principal(id="p-a", identifier="+200", role="tenant_admin", tenant_id="1")
    assert await resolver.can_access_entity(admin, EntityKind.APPLICATION, "a-1") is False


async def test_can_access_entity_fails_closed_on_slow_store(resolver, slow_store) -> None:
    slow_store.add_entity(EntityKind.APPLICATION, "a-1", tenant_id="1", owner_identifier="+300")
    admin = Principal(id="p-a", identifier="+200", role="tenant_admin", tenant_id="1")
    operator = Principal(id="p-op", identifier="+100000001", role="platform_operator")
    assert await resolver.can_access_entity(admin, EntityKind.APPLICATION, "a-1") is False
    assert await resolver.can_access_entity(operator, EntityKind.APPLICATION, "a-1") is False
    assert counters_snapshot()["store_call_timeouts_total"] == 2


async def test_validate_and_log_access_audits_successes_only(resolver, store) -> None:
    admin = Principal(id="p-a", identifier="+200", role="tenant_admin", tenant_id="1", ip_address="10.0.0.5")
    assert await resolver.validate_and_log_access(admin, Operation.READ, "d-1", EntityKind.DOCUMENT) is True
    assert await resolver.validate_and_log_access(admin, "delete", "d-1", EntityKind.DOCUMENT) is False
    assert await resolver.validate_and_log_access(None, Operation.READ) is False
    read = store.events_of("DATA_ACCESS_READ")
    assert len(read) == 1
    assert read[0].resource_accessed == "document"
    assert read[0].ip_address == "10.0.0.5"
    assert read[0].details == {"entity_id": "d-1"}
    assert store.events_of("DATA_ACCESS_DELETE") == []
