from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from admitguard.domain.access import DataScope, EntityKind, Principal
from admitguard.domain.events import LOGIN_FAILED, LOGIN_SUCCESS, AuditRecord, IncidentRecord
from admitguard.domain.models import Application, Base, Document, PrincipalAccount, Tenant
from admitguard.persistence.sql_store import SqlSecurityStore
from admitguard.services.audit import AuditSink
from admitguard.services.authz.scope import AccessScopeResolver, scope_predicate
from admitguard.services.identity.allowlist import IdentityAllowlist


NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
async def session_factory():
    # In-memory sqlite shared across sessions through a single static connection.
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        session.add_all(
            [
                Tenant(id="t-1", name="North School", code="NORTH"),
                Tenant(id="t-2", name="South School", code="SOUTH"),
                Tenant(id="t-3", name="Closed School", code="CLOSED", is_active=False),
            ]
        )
        await session.flush()
        session.add_all(
            [
                PrincipalAccount(id="p-admin", identifier="+200", role="tenant_admin", tenant_id="t-1"),
                PrincipalAccount(id="p-parent", identifier="+300", role="individual", tenant_id="t-1"),
                PrincipalAccount(
                    id="p-locked",
                    identifier="+301",
                    role="individual",
                    failed_login_attempts=4,
                    locked_until=NOW - timedelta(minutes=1),
                ),
                PrincipalAccount(
                    id="p-terminal",
                    identifier="+302",
                    role="individual",
                    failed_login_attempts=10,
                    locked_until=NOW - timedelta(minutes=1),
                ),
                Application(id="a-1", tenant_id="t-1", owner_identifier="+300"),
                Application(id="a-2", tenant_id="t-2", owner_identifier="+399"),
                Application(id="a-3", tenant_id="t-1", owner_identifier="+398"),
            ]
        )
        await session.flush()
        session.add(Document(id="d-1", application_id="a-1", tenant_id="t-1", owner_identifier="+300"))
        await session.commit()
    yield factory
    await engine.dispose()


@pytest.fixture
def sql_store(session_factory) -> SqlSecurityStore:
    return SqlSecurityStore(session_factory)


def _record(event_type: str, minutes_ago: int, **kwargs) -> AuditRecord:
    return AuditRecord(event_type=event_type, occurred_at=NOW - timedelta(minutes=minutes_ago), **kwargs)


async def test_audit_events_round_trip_with_filters(sql_store) -> None:
    await sql_store.append_audit_event(
        _record(LOGIN_FAILED, 5, success=False, principal_identifier="+300", ip_address="10.0.0.1", details={"n": 1})
    )
    await sql_store.append_audit_event(_record(LOGIN_FAILED, 40, success=False, ip_address="10.0.0.1"))
    await sql_store.append_audit_event(_record(LOGIN_SUCCESS, 2, success=True, principal_identifier="+300"))

    recent = await sql_store.query_audit_events(since=NOW - timedelta(minutes=15), event_types=[LOGIN_FAILED])
    assert len(recent) == 1
    assert recent[0].occurred_at == NOW - timedelta(minutes=5)
    assert recent[0].occurred_at.tzinfo is not None
    assert recent[0].details == {"n": 1}

    by_ip = await sql_store.query_audit_events(since=NOW - timedelta(hours=1), ip_address="10.0.0.1")
    assert [event.occurred_at for event in by_ip] == [NOW - timedelta(minutes=40), NOW - timedelta(minutes=5)]
    successes = await sql_store.query_audit_events(
        since=NOW - timedelta(hours=1), success=True, principal_identifier="+300"
    )
    assert [event.event_type for event in successes] == [LOGIN_SUCCESS]
    bounded = await sql_store.query_audit_events(
        since=NOW - timedelta(hours=1), until=NOW - timedelta(minutes=10)
    )
    assert len(bounded) == 1


async def test_ownership_lookups(sql_store) -> None:
    assert await sql_store.entity_exists(EntityKind.APPLICATION, "a-1") is True
    assert await sql_store.entity_exists(EntityKind.APPLICATION, "missing") is False
    assert await sql_store.find_owning_tenant(EntityKind.DOCUMENT, "d-1") == "t-1"
    assert await sql_store.find_owning_identifier(EntityKind.DOCUMENT, "d-1") == "+300"
    assert await sql_store.find_owning_tenant(EntityKind.TENANT, "t-2") == "t-2"
    assert await sql_store.find_owning_identifier(EntityKind.TENANT, "t-2") is None
    assert await sql_store.find_owning_tenant(EntityKind.PRINCIPAL, "p-admin") == "t-1"
    assert await sql_store.entity_exists(EntityKind.AUDIT_EVENT, "not-a-number") is False
    assert await sql_store.is_active_tenant("t-1") is True
    assert await sql_store.is_active_tenant("t-3") is False


async def test_audit_event_ownership_uses_numeric_ids(sql_store) -> None:
    await sql_store.append_audit_event(
        _record(LOGIN_SUCCESS, 1, success=True, principal_identifier="+300", tenant_id="t-1")
    )
    assert await sql_store.entity_exists(EntityKind.AUDIT_EVENT, "1") is True
    assert await sql_store.find_owning_identifier(EntityKind.AUDIT_EVENT, "1") == "+300"


async def test_failed_login_counter_and_lockout_columns(sql_store) -> None:
    assert await sql_store.record_failed_login("p-parent") == 1
    assert await sql_store.record_failed_login("p-parent") == 2
    assert await sql_store.record_failed_login("missing") is None
    await sql_store.lock_principal("p-parent", NOW + timedelta(minutes=10))
    principal = await sql_store.get_principal_by_identifier("+300")
    assert principal.failed_attempts == 2
    assert principal.locked_until == NOW + timedelta(minutes=10)
    assert await sql_store.reset_failed_logins("p-parent") is True
    reset = await sql_store.get_principal("p-parent")
    assert reset.failed_attempts == 0
    assert reset.locked_until is None
    assert await sql_store.reset_failed_logins("missing") is False


async def test_expiry_sweep_skips_terminal_lockouts(sql_store) -> None:
    cleared = await sql_store.clear_expired_lockouts(NOW, terminal_failures=10)
    assert cleared == ["p-locked"]
    terminal = await sql_store.get_principal("p-terminal")
    assert terminal.failed_attempts == 10
    assert terminal.locked_until is not None


async def test_incidents_are_found_by_open_dedupe_key(sql_store) -> None:
    created = await sql_store.create_incident(
        IncidentRecord(
            id="inc-1",
            incident_type="BRUTE_FORCE_IP",
            severity="high",
            description="5 failed logins",
            status="open",
            detected_at=NOW,
            dedupe_key="BRUTE_FORCE_IP:10.0.0.1",
            source_ip="10.0.0.1",
        )
    )
    assert created.id == "inc-1"
    found = await sql_store.find_open_incident("BRUTE_FORCE_IP:10.0.0.1")
    assert found is not None and found.detected_at == NOW
    assert await sql_store.find_open_incident("BRUTE_FORCE_IP:10.0.0.2") is None
    assert [incident.id for incident in await sql_store.list_incidents(status="open")] == ["inc-1"]
    assert await sql_store.list_incidents(status="resolved") == []


async def test_scope_predicate_filters_queries(session_factory) -> None:
    async def _ids(scope: DataScope) -> list[str]:
        async with session_factory() as session:
            result = await session.execute(
                select(Application.id)
                .where(scope_predicate(scope, EntityKind.APPLICATION))
                .order_by(Application.id)
            )
            return list(result.scalars().all())

    assert await _ids(DataScope(global_access=True)) == ["a-1", "a-2", "a-3"]
    assert await _ids(DataScope(tenant_restriction="t-1")) == ["a-1", "a-3"]
    assert await _ids(DataScope(identifier_restriction="+300")) == ["a-1"]
    assert await _ids(DataScope.denied("tenant_admin")) == []
    assert await _ids(DataScope()) == []

    async with session_factory() as session:
        result = await session.execute(
            select(Tenant.id).where(scope_predicate(DataScope(identifier_restriction="+300"), EntityKind.TENANT))
        )
        assert list(result.scalars().all()) == []


async def test_resolver_checks_entities_against_database(sql_store) -> None:
    allowlist = IdentityAllowlist.from_entries(["+100000001"])
    resolver = AccessScopeResolver(allowlist, sql_store, AuditSink(sql_store, mode="inline"))
    admin = Principal(id="p-admin", identifier="+200", role="tenant_admin", tenant_id="t-1")
    assert await resolver.can_access_entity(admin, EntityKind.APPLICATION, "a-3") is True
    assert await resolver.can_access_entity(admin, EntityKind.APPLICATION, "a-2") is False
    parent = Principal(id="p-parent", identifier="+300", role="individual")
    assert await resolver.can_access_entity(parent, EntityKind.DOCUMENT, "d-1") is True
    assert await resolver.can_access_entity(parent, EntityKind.APPLICATION, "a-3") is False
