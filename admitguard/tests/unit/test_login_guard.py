from __future__ import annotations

from datetime import timedelta

import pytest

from admitguard.domain.access import Principal
from admitguard.domain.events import (
    BLOCKED_SUSPICIOUS_IP,
    BRUTE_FORCE_DETECTED,
    GEOGRAPHIC_ANOMALY,
    LOGIN_FAILED,
    LOGIN_SUCCESS,
    PLATFORM_OPERATOR_LOGIN_ATTEMPT,
    UNKNOWN_DEVICE_LOGIN,
)
from admitguard.services.security.brute_force import BruteForceDetector, LockoutState
from admitguard.services.security.login_guard import (
    BLOCK_BRUTE_FORCE,
    BLOCK_LOCKED_OUT,
    BLOCK_RATE_LIMITED,
    BLOCK_SUSPICIOUS_IP,
    LoginGuard,
)
from admitguard.services.security.rate_limit import RateLimiter
from admitguard.tests.utils.store import audit_row


@pytest.fixture
def detector(store, audit, clock) -> BruteForceDetector:
    return BruteForceDetector(store, audit, time_provider=clock)


@pytest.fixture
def guard(allowlist, store, audit, detector, alerts, clock) -> LoginGuard:
    limiter = RateLimiter(audit, time_source=lambda: clock.now.timestamp())
    return LoginGuard(allowlist, store, audit, limiter, detector, alerts, time_provider=clock)


async def test_plain_login_is_allowed(guard) -> None:
    decision = await guard.evaluate("+300", "10.0.0.1", "pytest")
    assert decision.allowed is True
    assert decision.requires_mfa is False
    assert decision.new_location is False


async def test_suspicious_ip_is_blocked_first(guard, detector, store) -> None:
    await detector.blacklist_ip("203.0.113.5", reason="manual")
    decision = await guard.evaluate("+300", "203.0.113.5", "pytest")
    assert decision.allowed is False
    assert decision.block_reason == BLOCK_SUSPICIOUS_IP
    blocked = store.events_of(BLOCKED_SUSPICIOUS_IP)
    assert blocked[0].principal_identifier == "+300"


async def test_brute_force_blocks_login(guard, store, clock) -> None:
    for minute in range(5):
        store.audit_events.append(audit_row(LOGIN_FAILED, clock.now - timedelta(minutes=minute), identifier="+300"))
    decision = await guard.evaluate("+300", "10.0.0.1")
    assert decision.block_reason == BLOCK_BRUTE_FORCE
    assert len(store.events_of(BRUTE_FORCE_DETECTED)) == 1


async def test_sixth_attempt_is_rate_limited(guard) -> None:
    for _ in range(5):
        assert (await guard.evaluate("+300", "10.0.0.1")).allowed
    decision = await guard.evaluate("+300", "10.0.0.1")
    assert decision.block_reason == BLOCK_RATE_LIMITED
    assert decision.retry_after_s == 900
    # A different ip is a different bucket.
    assert (await guard.evaluate("+300", "10.0.0.2")).allowed


async def test_locked_principal_is_blocked_with_remaining_time(guard, store, clock) -> None:
    store.add_principal(
        Principal(
            id="p-1",
            identifier="+300",
            role="individual",
            failed_attempts=3,
            locked_until=clock.now + timedelta(minutes=10),
        )
    )
    decision = await guard.evaluate("+300", "10.0.0.1")
    assert decision.block_reason == BLOCK_LOCKED_OUT
    assert decision.lockout_seconds == 600


async def test_operator_login_requires_mfa_and_alerts(guard, store, alerts, sms_channel) -> None:
    decision = await guard.evaluate("+100000001", "10.0.0.9", "pytest")
    await alerts.flush(1.0)
    assert decision.allowed is True
    assert decision.requires_mfa is True
    assert store.events_of(PLATFORM_OPERATOR_LOGIN_ATTEMPT)[0].ip_address == "10.0.0.9"
    assert len(sms_channel.sent) == 1
    assert "PLATFORM_OPERATOR_LOGIN" in sms_channel.sent[0][1]


async def test_login_from_unseen_ip_is_flagged(guard, store) -> None:
    await guard.record_result("+300", "10.0.0.1", "pytest", success=True)
    assert (await guard.evaluate("+300", "10.0.0.1")).new_location is False
    decision = await guard.evaluate("+300", "198.51.100.77")
    assert decision.allowed is True
    assert decision.new_location is True
    anomaly = store.events_of(GEOGRAPHIC_ANOMALY)
    assert anomaly[0].ip_address == "198.51.100.77"


async def test_failed_results_drive_lockout(guard, store) -> None:
    store.add_principal(Principal(id="p-1", identifier="+300", role="individual"))
    statuses = [
        await guard.record_result("+300", "10.0.0.1", "pytest", success=False) for _ in range(3)
    ]
    assert [status.state for status in statuses] == [
        LockoutState.NORMAL,
        LockoutState.NORMAL,
        LockoutState.LOCKED,
    ]
    failures = store.events_of(LOGIN_FAILED)
    assert len(failures) == 3
    assert failures[0].principal_id == "p-1"
    assert failures[0].failure_reason == "invalid credentials"

    # Success is journaled but leaves the counter for the expiry sweep.
    assert await guard.record_result("+300", "10.0.0.1", "pytest", success=True) is None
    assert store.events_of(LOGIN_SUCCESS)[0].success is True
    assert store.principals["p-1"].failed_attempts == 3


async def test_unknown_identifier_failures_are_journaled_only(guard, store) -> None:
    assert await guard.record_result("+777", "10.0.0.1", None, success=False, failure_reason="bad otp") is None
    failure = store.events_of(LOGIN_FAILED)[0]
    assert failure.principal_id is None
    assert failure.failure_reason == "bad otp"


async def test_unknown_device_requires_verification(guard, store) -> None:
    store.add_principal(Principal(id="p-1", identifier="+300", role="individual"))
    first = await guard.evaluate("+300", "10.0.0.1", "pytest", device_fingerprint="fp-laptop")
    assert first.allowed is True
    assert first.requires_device_verification is True
    unknown = store.events_of(UNKNOWN_DEVICE_LOGIN)
    assert unknown[0].principal_id == "p-1"
    assert unknown[0].details == {"fingerprint_supplied": True}

    await guard.record_result("+300", "10.0.0.1", "pytest", success=True, device_fingerprint="fp-laptop")
    assert store.events_of(LOGIN_SUCCESS)[0].details == {"device_fingerprint": "fp-laptop"}
    known = await guard.evaluate("+300", "10.0.0.1", "pytest", device_fingerprint="fp-laptop")
    assert known.requires_device_verification is False
    assert (await guard.evaluate("+300", "10.0.0.1", device_fingerprint="fp-phone")).requires_device_verification
    assert len(store.events_of(UNKNOWN_DEVICE_LOGIN)) == 2


async def test_missing_fingerprint_counts_as_unknown_device(guard, store) -> None:
    store.add_principal(Principal(id="p-1", identifier="+300", role="individual"))
    decision = await guard.evaluate("+300", "10.0.0.1")
    assert decision.requires_device_verification is True
    assert store.events_of(UNKNOWN_DEVICE_LOGIN)[0].details == {"fingerprint_supplied": False}


async def test_unregistered_identifier_skips_device_check(guard, store) -> None:
    decision = await guard.evaluate("+777", "10.0.0.1", device_fingerprint="fp-laptop")
    assert decision.requires_device_verification is False
    assert store.events_of(UNKNOWN_DEVICE_LOGIN) == []


async def test_operator_verification_goes_to_allowlisted_contact(guard, store, alerts) -> None:
    store.add_principal(
        Principal(id="p-op", identifier="+100000001", role="platform_operator", contact="Ops@Admissions.example")
    )
    decision = await guard.evaluate("+100000001", "10.0.0.9", device_fingerprint="fp-ops")
    await alerts.flush(1.0)
    assert decision.requires_mfa is True
    assert decision.verification_contact == "ops@admissions.example"


async def test_operator_with_unlisted_contact_gets_no_verification_contact(guard, store, alerts) -> None:
    store.add_principal(
        Principal(id="p-op", identifier="+100000001", role="platform_operator", contact="attacker@example.com")
    )
    decision = await guard.evaluate("+100000001", "10.0.0.9")
    await alerts.flush(1.0)
    assert decision.requires_mfa is True
    assert decision.verification_contact is None
    assert (await guard.evaluate("+300", "10.0.0.1")).verification_contact is None
