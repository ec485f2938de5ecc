from __future__ import annotations

import json

import httpx

from admitguard.domain.events import SECURITY_ALERT
from admitguard.services.notifications.alerts import AlertDispatcher
from admitguard.services.notifications.channels import HttpNotificationChannel
from admitguard.services.telemetry import counters_snapshot
from admitguard.tests.utils.channels import RecordingChannel


async def test_alert_reaches_every_operator_contact(alerts, sms_channel, email_channel, store) -> None:
    assert await alerts.send_alert("BRUTE_FORCE_IP", "ip 203.0.113.9 is hammering logins", {"ip": "203.0.113.9"}) is True
    assert sms_channel.sent == [("+100000001", "SECURITY ALERT [BRUTE_FORCE_IP]: ip 203.0.113.9 is hammering logins")]
    assert email_channel.sent[0][0] == "ops@admissions.example"
    event = store.events_of(SECURITY_ALERT)[0]
    assert event.severity == "critical"
    assert event.details["delivered"] == 2
    assert event.details["ip"] == "203.0.113.9"


async def test_failing_channel_does_not_block_the_other(allowlist, audit, store) -> None:
    broken = RecordingChannel("sms", error=RuntimeError("gateway down"))
    email = RecordingChannel("email")
    dispatcher = AlertDispatcher(allowlist, sms_channel=broken, email_channel=email, audit=audit)
    assert await dispatcher.send_alert("FAKE_PLATFORM_OPERATOR", "forged role") is True
    assert len(email.sent) == 1
    assert counters_snapshot()["alert_delivery_failures_total"] == 1
    assert store.events_of(SECURITY_ALERT)[0].details["failed"] == 1


async def test_alert_with_no_delivery_reports_failure(allowlist, audit, store) -> None:
    dispatcher = AlertDispatcher(
        allowlist,
        sms_channel=RecordingChannel("sms", accept=False),
        email_channel=RecordingChannel("email", accept=False),
        audit=audit,
    )
    assert await dispatcher.send_alert("POTENTIAL_DATA_EXFILTRATION", "bulk download") is False
    event = store.events_of(SECURITY_ALERT)[0]
    assert event.success is False
    assert event.failure_reason == "no channel accepted the alert"


async def test_flush_waits_for_dispatched_alerts(alerts, sms_channel) -> None:
    alerts.dispatch("PLATFORM_OPERATOR_LOGIN", "login attempt")
    assert alerts.pending_count == 1
    assert await alerts.flush(1.0) == 0
    assert alerts.pending_count == 0
    assert len(sms_channel.sent) == 1


async def test_flush_abandons_alerts_past_the_timeout(allowlist, audit) -> None:
    slow = RecordingChannel("sms", delay_s=5.0)
    dispatcher = AlertDispatcher(allowlist, sms_channel=slow, email_channel=RecordingChannel("email"), audit=audit)
    dispatcher.dispatch("BRUTE_FORCE_IP", "slow gateway")
    assert await dispatcher.flush(0.05) == 1
    assert counters_snapshot()["alerts_abandoned_total"] == 1
    assert slow.sent == []


async def test_http_channel_posts_to_gateway() -> None:
    seen: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        assert request.headers["Authorization"] == "Bearer gw-token"
        return httpx.Response(202)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    channel = HttpNotificationChannel("sms", "https://gateway.test/send", token="gw-token", client=client)
    assert await channel.send("+100000001", "hello") is True
    assert seen == [{"channel": "sms", "recipient": "+100000001", "message": "hello"}]
    await channel.aclose()


async def test_http_channel_reports_gateway_errors() -> None:
    def rejecting(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    rejected = HttpNotificationChannel(
        "email", "https://gateway.test/send", client=httpx.AsyncClient(transport=httpx.MockTransport(rejecting))
    )
    offline = HttpNotificationChannel(
        "email", "https://gateway.test/send", client=httpx.AsyncClient(transport=httpx.MockTransport(unreachable))
    )
    disabled = HttpNotificationChannel("email", None)
    assert await rejected.send("ops@example.com", "hi") is False
    assert await offline.send("ops@example.com", "hi") is False
    assert disabled.enabled is False
    assert await disabled.send("ops@example.com", "hi") is False
    await rejected.aclose()
    await offline.aclose()
