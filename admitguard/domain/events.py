from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncidentStatus(str, Enum):
    OPEN = "open"
    MITIGATED = "mitigated"
    RESOLVED = "resolved"


# Audit event taxonomy shared by writers and the monitor scans.
LOGIN_SUCCESS = "LOGIN_SUCCESS"
LOGIN_FAILED = "LOGIN_FAILED"
DOCUMENT_ACCESS = "DOCUMENT_ACCESS"
DATA_ACCESS_PREFIX = "DATA_ACCESS_"
UNAUTHORIZED_DATA_ACCESS = "UNAUTHORIZED_DATA_ACCESS"
FAKE_PLATFORM_OPERATOR = "FAKE_PLATFORM_OPERATOR"
PRIVILEGE_ESCALATION_ATTEMPT = "PRIVILEGE_ESCALATION_ATTEMPT"
INVALID_ROLE_ASSIGNMENT = "INVALID_ROLE_ASSIGNMENT"
ROLE_CHANGE = "ROLE_CHANGE"
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
IP_BLACKLISTED = "IP_BLACKLISTED"
BLOCKED_SUSPICIOUS_IP = "BLOCKED_SUSPICIOUS_IP"
BRUTE_FORCE_DETECTED = "BRUTE_FORCE_DETECTED"
ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
PLATFORM_OPERATOR_LOGIN_ATTEMPT = "PLATFORM_OPERATOR_LOGIN_ATTEMPT"
GEOGRAPHIC_ANOMALY = "GEOGRAPHIC_ANOMALY"
UNKNOWN_DEVICE_LOGIN = "UNKNOWN_DEVICE_LOGIN"
SECURITY_ALERT = "SECURITY_ALERT"
SECURITY_INCIDENT_OPENED = "SECURITY_INCIDENT_OPENED"

BLACKLIST_EVENT_TYPES = (IP_BLACKLISTED, BLOCKED_SUSPICIOUS_IP)
LOGIN_EVENT_TYPES = (LOGIN_SUCCESS, LOGIN_FAILED)


def data_access_event_type(operation: str) -> str:
    return f"{DATA_ACCESS_PREFIX}{operation.upper()}"


@dataclass(frozen=True)
class AuditRecord:
    # Immutable journal entry; the store assigns ids on append.
    event_type: str
    occurred_at: datetime
    success: bool
    principal_id: str | None = None
    principal_identifier: str | None = None
    principal_role: str | None = None
    tenant_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    resource_accessed: str | None = None
    action_performed: str | None = None
    failure_reason: str | None = None
    severity: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IncidentRecord:
    id: str
    incident_type: str
    severity: str
    description: str
    status: str
    detected_at: datetime
    dedupe_key: str
    affected_principal_id: str | None = None
    source_ip: str | None = None
    automatic_response: str | None = None
    resolved_at: datetime | None = None


@dataclass(frozen=True)
class SecurityMetrics:
    # Journal summary over a trailing window; the score drops with the login failure rate.
    window_start: datetime
    total_login_attempts: int
    failed_login_attempts: int
    successful_logins: int
    unauthorized_access_attempts: int
    failed_events: int
    security_score: float
