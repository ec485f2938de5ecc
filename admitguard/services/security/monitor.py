from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from redis.asyncio import Redis

from admitguard.core.config import Settings, get_settings
from admitguard.domain.access import EntityKind
from admitguard.domain.events import (
    DATA_ACCESS_PREFIX,
    DOCUMENT_ACCESS,
    LOGIN_FAILED,
    LOGIN_SUCCESS,
    SECURITY_INCIDENT_OPENED,
    AuditRecord,
    IncidentRecord,
    IncidentStatus,
    Severity,
)
from admitguard.persistence.store import SecurityStore
from admitguard.services.audit import AuditSink
from admitguard.services.notifications.alerts import AlertDispatcher
from admitguard.services.resilience import get_coordination_redis
from admitguard.services.security.brute_force import BruteForceDetector
from admitguard.services.security.rate_limit import RateLimiter
from admitguard.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

INCIDENT_BRUTE_FORCE_IP = "BRUTE_FORCE_IP"
INCIDENT_BRUTE_FORCE_IDENTIFIER = "BRUTE_FORCE_IDENTIFIER"
INCIDENT_UNUSUAL_ACCESS_PATTERN = "UNUSUAL_ACCESS_PATTERN"
INCIDENT_DATA_EXFILTRATION = "POTENTIAL_DATA_EXFILTRATION"

AUTOMATIC_RESPONSE = "Logged and monitoring"
AUTOMATIC_RESPONSE_ALERTED = "Logged, monitoring and operators alerted"

_local_lock = asyncio.Lock()
_local_lock_owner: str | None = None


def _utc_now() -> datetime:
    # Keep monitor timestamps in UTC so windows line up with audit rows.
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class MonitorLock:
    token: str
    redis: Any | None
    local: bool


RedisGetter = Callable[[], Awaitable[Redis | None]]


async def acquire_monitor_lock(redis_getter: RedisGetter | None = get_coordination_redis) -> MonitorLock | None:
    # Only one process runs ticks; Redis SET NX across hosts, an in-process lock otherwise.
    settings = get_settings()
    token = uuid4().hex
    redis = await redis_getter() if redis_getter is not None else None
    ttl_s = max(5, int(settings.monitor_lock_ttl_s))
    if redis is not None:
        try:
            acquired = await redis.set(settings.monitor_lock_key, token, nx=True, ex=ttl_s)
        except Exception as exc:  # noqa: BLE001 - Redis outages degrade to the local lock
            logger.warning("monitor_lock_redis_failed", exc_info=exc)
        else:
            if not acquired:
                return None
            return MonitorLock(token=token, redis=redis, local=False)

    global _local_lock_owner
    if _local_lock.locked():
        return None
    await _local_lock.acquire()
    _local_lock_owner = token
    return MonitorLock(token=token, redis=None, local=True)


async def release_monitor_lock(lock: MonitorLock) -> None:
    # Release only if this process still owns the token to avoid clobbering a newer holder.
    global _local_lock_owner
    if lock.local:
        if _local_lock.locked() and _local_lock_owner == lock.token:
            _local_lock_owner = None
            _local_lock.release()
        return
    if lock.redis is None:
        return
    key = get_settings().monitor_lock_key
    try:
        current = await lock.redis.get(key)
        value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
        if value == lock.token:
            await lock.redis.delete(key)
    except Exception as exc:  # noqa: BLE001 - the lock expires on its own TTL
        logger.warning("monitor_lock_release_failed", exc_info=exc)


async def set_monitor_heartbeat(
    *, timestamp: datetime | None = None, redis_getter: RedisGetter | None = get_coordination_redis
) -> None:
    heartbeat = timestamp or _utc_now()
    set_gauge("security_monitor_heartbeat_ts", heartbeat.timestamp())
    redis = await redis_getter() if redis_getter is not None else None
    if redis is None:
        return
    settings = get_settings()
    try:
        await redis.set(settings.monitor_heartbeat_key, heartbeat.isoformat(), ex=max(60, settings.monitor_interval_s * 10))
    except Exception as exc:  # noqa: BLE001 - heartbeat is best-effort
        logger.warning("monitor_heartbeat_failed", exc_info=exc)


async def get_monitor_heartbeat(redis_getter: RedisGetter | None = get_coordination_redis) -> datetime | None:
    # Return None when the heartbeat is missing or unreadable.
    redis = await redis_getter() if redis_getter is not None else None
    if redis is None:
        return None
    value = await redis.get(get_settings().monitor_heartbeat_key)
    if not value:
        return None
    decoded = value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)
    try:
        return datetime.fromisoformat(decoded)
    except ValueError:
        return None


@dataclass(frozen=True)
class MonitorThresholds:
    ip_brute_force: int
    identifier_brute_force: int
    brute_force_window: timedelta
    fanout_ips: int
    fanout_window: timedelta
    exfiltration_events: int
    exfiltration_window: timedelta

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "MonitorThresholds":
        settings = settings or get_settings()
        return cls(
            ip_brute_force=settings.monitor_ip_brute_force_threshold,
            identifier_brute_force=settings.monitor_identifier_brute_force_threshold,
            brute_force_window=timedelta(seconds=settings.monitor_brute_force_window_s),
            fanout_ips=settings.monitor_fanout_ip_threshold,
            fanout_window=timedelta(seconds=settings.monitor_fanout_window_s),
            exfiltration_events=settings.monitor_exfiltration_threshold,
            exfiltration_window=timedelta(seconds=settings.monitor_exfiltration_window_s),
        )


@dataclass(frozen=True)
class Detection:
    incident_type: str
    severity: Severity
    subject: str
    description: str
    affected_principal_id: str | None = None
    source_ip: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def dedupe_key(self) -> str:
        return f"{self.incident_type}:{self.subject}"


def _first_principal_id(events: list[AuditRecord]) -> str | None:
    return next((event.principal_id for event in events if event.principal_id), None)


def _is_document_access(event: AuditRecord) -> bool:
    if event.event_type == DOCUMENT_ACCESS:
        return True
    return event.event_type.startswith(DATA_ACCESS_PREFIX) and event.resource_accessed == EntityKind.DOCUMENT.value


class SecurityMonitor:
    """Periodic scans over the audit journal that open security incidents.

    Each tick runs four scans, then clears expired lockouts. A failing scan is
    logged and the next tick comes after the shorter error backoff. Only
    critical incidents alert, and an open incident for the same type and
    subject is never duplicated.
    """

    def __init__(
        self,
        store: SecurityStore,
        audit: AuditSink,
        alerts: AlertDispatcher,
        detector: BruteForceDetector | None = None,
        rate_limiter: RateLimiter | None = None,
        *,
        thresholds: MonitorThresholds | None = None,
        interval_s: float | None = None,
        error_backoff_s: float | None = None,
        time_provider: Callable[[], datetime] | None = None,
        redis_getter: RedisGetter | None = get_coordination_redis,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._audit = audit
        self._alerts = alerts
        self._detector = detector
        self._rate_limiter = rate_limiter
        self._thresholds = thresholds or MonitorThresholds.from_settings(settings)
        self._interval_s = float(interval_s if interval_s is not None else settings.monitor_interval_s)
        self._error_backoff_s = float(error_backoff_s if error_backoff_s is not None else settings.monitor_error_backoff_s)
        self._time = time_provider or _utc_now
        self._redis_getter = redis_getter
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def scan_ip_brute_force(self, now: datetime) -> list[Detection]:
        events = await self._store.query_audit_events(
            since=now - self._thresholds.brute_force_window,
            until=now,
            event_types=[LOGIN_FAILED],
            success=False,
        )
        by_ip: dict[str, list[AuditRecord]] = defaultdict(list)
        for event in events:
            if event.ip_address:
                by_ip[event.ip_address].append(event)
        return [
            Detection(
                incident_type=INCIDENT_BRUTE_FORCE_IP,
                severity=Severity.HIGH,
                subject=ip,
                description=f"{len(rows)} failed logins from ip {ip} within the brute force window",
                source_ip=ip,
                details={"failed_logins": len(rows)},
            )
            for ip, rows in by_ip.items()
            if len(rows) >= self._thresholds.ip_brute_force
        ]

    async def scan_identifier_brute_force(self, now: datetime) -> list[Detection]:
        events = await self._store.query_audit_events(
            since=now - self._thresholds.brute_force_window,
            until=now,
            event_types=[LOGIN_FAILED],
            success=False,
        )
        by_identifier: dict[str, list[AuditRecord]] = defaultdict(list)
        for event in events:
            if event.principal_identifier:
                by_identifier[event.principal_identifier].append(event)
        return [
            Detection(
                incident_type=INCIDENT_BRUTE_FORCE_IDENTIFIER,
                severity=Severity.MEDIUM,
                subject=identifier,
                description=f"{len(rows)} failed logins for one identifier within the brute force window",
                affected_principal_id=_first_principal_id(rows),
                details={"failed_logins": len(rows), "identifier": identifier},
            )
            for identifier, rows in by_identifier.items()
            if len(rows) >= self._thresholds.identifier_brute_force
        ]

    async def scan_access_fanout(self, now: datetime) -> list[Detection]:
        events = await self._store.query_audit_events(
            since=now - self._thresholds.fanout_window,
            until=now,
            event_types=[LOGIN_SUCCESS],
            success=True,
        )
        by_identifier: dict[str, list[AuditRecord]] = defaultdict(list)
        for event in events:
            if event.principal_identifier:
                by_identifier[event.principal_identifier].append(event)
        detections: list[Detection] = []
        for identifier, rows in by_identifier.items():
            ips = sorted({event.ip_address for event in rows if event.ip_address})
            if len(ips) > self._thresholds.fanout_ips:
                detections.append(
                    Detection(
                        incident_type=INCIDENT_UNUSUAL_ACCESS_PATTERN,
                        severity=Severity.MEDIUM,
                        subject=identifier,
                        description=f"successful logins from {len(ips)} distinct ips within the fan-out window",
                        affected_principal_id=_first_principal_id(rows),
                        details={"distinct_ips": len(ips), "identifier": identifier},
                    )
                )
        return detections

    async def scan_exfiltration(self, now: datetime) -> list[Detection]:
        since = now - self._thresholds.exfiltration_window
        direct = await self._store.query_audit_events(since=since, until=now, event_types=[DOCUMENT_ACCESS])
        scoped = await self._store.query_audit_events(
            since=since, until=now, resource_accessed=EntityKind.DOCUMENT.value
        )
        events = direct + [event for event in scoped if event.event_type != DOCUMENT_ACCESS]
        by_actor: dict[str, list[AuditRecord]] = defaultdict(list)
        for event in events:
            actor = event.principal_identifier or event.principal_id
            if actor and _is_document_access(event):
                by_actor[actor].append(event)
        return [
            Detection(
                incident_type=INCIDENT_DATA_EXFILTRATION,
                severity=Severity.CRITICAL,
                subject=actor,
                description=f"{len(rows)} document accesses within the exfiltration window",
                affected_principal_id=_first_principal_id(rows),
                details={"document_accesses": len(rows), "identifier": actor},
            )
            for actor, rows in by_actor.items()
            if len(rows) > self._thresholds.exfiltration_events
        ]

    async def run_tick(self) -> dict[str, Any]:
        lock = await acquire_monitor_lock(self._redis_getter)
        if lock is None:
            return {"status": "skipped_lock", "incidents_opened": 0, "failed_scans": []}
        try:
            return await self._run_tick_locked()
        finally:
            await release_monitor_lock(lock)

    async def _run_tick_locked(self) -> dict[str, Any]:
        now = self._time()
        scans: list[tuple[str, Callable[[datetime], Awaitable[list[Detection]]]]] = [
            ("ip_brute_force", self.scan_ip_brute_force),
            ("identifier_brute_force", self.scan_identifier_brute_force),
            ("access_fanout", self.scan_access_fanout),
            ("exfiltration", self.scan_exfiltration),
        ]
        failed: list[str] = []
        opened: list[IncidentRecord] = []
        for name, scan in scans:
            # Scans are independent; one failing does not skip the rest.
            try:
                for detection in await scan(now):
                    incident = await self._open_incident(detection, now)
                    if incident is not None:
                        opened.append(incident)
            except Exception:  # noqa: BLE001 - keep remaining scans running and surface in logs.
                logger.exception("security_scan_failed scan=%s", name)
                increment_counter("security_scan_failures_total")
                failed.append(name)

        cleared: list[str] = []
        if self._detector is not None:
            try:
                cleared = await self._detector.clear_expired_lockouts()
            except Exception:  # noqa: BLE001 - cleanup retries on the next tick.
                logger.exception("lockout_cleanup_failed")
                failed.append("lockout_cleanup")
        if self._rate_limiter is not None:
            self._rate_limiter.prune_idle()

        await set_monitor_heartbeat(timestamp=now, redis_getter=self._redis_getter)
        return {
            "status": "degraded" if failed else "ok",
            "incidents_opened": len(opened),
            "incident_ids": [incident.id for incident in opened],
            "lockouts_cleared": len(cleared),
            "failed_scans": failed,
        }

    async def _open_incident(self, detection: Detection, now: datetime) -> IncidentRecord | None:
        existing = await self._store.find_open_incident(detection.dedupe_key)
        if existing is not None:
            logger.debug("security_incident_deduped key=%s incident_id=%s", detection.dedupe_key, existing.id)
            return None
        critical = detection.severity == Severity.CRITICAL
        incident = await self._store.create_incident(
            IncidentRecord(
                id=uuid4().hex,
                incident_type=detection.incident_type,
                severity=detection.severity.value,
                description=detection.description,
                status=IncidentStatus.OPEN.value,
                detected_at=now,
                dedupe_key=detection.dedupe_key,
                affected_principal_id=detection.affected_principal_id,
                source_ip=detection.source_ip,
                automatic_response=AUTOMATIC_RESPONSE_ALERTED if critical else AUTOMATIC_RESPONSE,
            )
        )
        increment_counter(f"security_incidents_total.{detection.severity.value}")
        log = logger.critical if critical else logger.warning
        log(
            "security_incident_opened type=%s severity=%s subject=%s incident_id=%s",
            detection.incident_type,
            detection.severity.value,
            detection.subject,
            incident.id,
        )
        await self._audit.record(
            SECURITY_INCIDENT_OPENED,
            success=True,
            principal_id=detection.affected_principal_id,
            ip_address=detection.source_ip,
            resource_accessed="security_incident",
            action_performed=detection.incident_type,
            severity=detection.severity,
            details={"incident_id": incident.id, **detection.details},
        )
        if critical:
            # Critical incidents alert right away; lower severities only get logged.
            await self._alerts.send_alert(
                detection.incident_type,
                detection.description,
                {"incident_id": incident.id, **detection.details},
            )
        return incident

    async def run_forever(self) -> None:
        logger.info("security_monitor_started interval_s=%s", self._interval_s)
        while not self._stop_event.is_set():
            try:
                result = await self.run_tick()
                healthy = result.get("status") != "degraded"
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("security monitor tick failed")
                healthy = False
            delay = self._interval_s if healthy else self._error_backoff_s
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
        logger.info("security_monitor_stopped")

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self.run_forever(), name="admitguard-security-monitor")
        return self._task

    def stop(self) -> None:
        # No new ticks start after this; an in-flight tick runs to completion.
        self._stop_event.set()

    async def shutdown(self) -> None:
        self.stop()
        if self._task is not None:
            await self._task
            self._task = None
