from __future__ import annotations

import pytest

from admitguard.core.config import get_settings
from admitguard.services.audit import AuditSink
from admitguard.services.identity.allowlist import IdentityAllowlist
from admitguard.services.notifications.alerts import AlertDispatcher
from admitguard.services.telemetry import reset_telemetry
from admitguard.tests.utils.channels import RecordingChannel
from admitguard.tests.utils.store import FrozenClock, InMemorySecurityStore


OPERATOR_IDENTIFIER = "+100000001"
OPERATOR_CONTACT = "ops@admissions.example"


@pytest.fixture(autouse=True)
def isolate_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    # Pin settings per test so env leakage and cached values cannot change thresholds.
    monkeypatch.setenv("AUDIT_WRITE_MODE", "inline")
    monkeypatch.setenv("PLATFORM_OPERATOR_IDENTIFIERS", OPERATOR_IDENTIFIER)
    monkeypatch.setenv("PLATFORM_OPERATOR_CONTACTS", OPERATOR_CONTACT)
    monkeypatch.setenv("SECURITY_MONITOR_ENABLED", "false")
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> InMemorySecurityStore:
    return InMemorySecurityStore()


@pytest.fixture
def audit(store: InMemorySecurityStore, clock: FrozenClock) -> AuditSink:
    return AuditSink(store, mode="inline", time_provider=clock)


@pytest.fixture
def allowlist() -> IdentityAllowlist:
    return IdentityAllowlist.from_entries([OPERATOR_IDENTIFIER], [OPERATOR_CONTACT])


@pytest.fixture
def sms_channel() -> RecordingChannel:
    return RecordingChannel("sms")


@pytest.fixture
def email_channel() -> RecordingChannel:
    return RecordingChannel("email")


@pytest.fixture
def alerts(
    allowlist: IdentityAllowlist,
    sms_channel: RecordingChannel,
    email_channel: RecordingChannel,
    audit: AuditSink,
) -> AlertDispatcher:
    return AlertDispatcher(allowlist, sms_channel=sms_channel, email_channel=email_channel, audit=audit)


@pytest.fixture
def slow_store(store: InMemorySecurityStore, monkeypatch: pytest.MonkeyPatch) -> InMemorySecurityStore:
    # Reads outlast the store call timeout so bounded calls give up.
    monkeypatch.setenv("STORE_CALL_TIMEOUT_MS", "20")
    get_settings.cache_clear()
    store.read_delay_s = 0.2
    return store
