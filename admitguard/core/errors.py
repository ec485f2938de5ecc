from __future__ import annotations


class AdmitGuardError(Exception):
    """Base error for admitguard."""


class AuthorizationDenied(AdmitGuardError):
    """Principal scope does not permit the requested operation."""


class IdentityIntegrityViolation(AuthorizationDenied):
    """Stored role claims platform operator but the identity is not allowlisted."""


class RateLimitExceeded(AdmitGuardError):
    """Sliding window rejected the attempt."""

    def __init__(self, message: str = "Rate limit exceeded", *, retry_after_s: int = 0) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s


class LockedOut(AdmitGuardError):
    """Principal is locked after repeated failures."""

    def __init__(self, message: str = "Account locked", *, lockout_seconds: int | None = None) -> None:
        super().__init__(message)
        self.lockout_seconds = lockout_seconds


class PersistenceFailure(AdmitGuardError):
    """Audit or principal store could not be read or written."""


class InvalidRoleAssignment(AdmitGuardError):
    """Role and tenant combination is structurally invalid."""


class AllowlistConfigError(AdmitGuardError):
    """Platform operator allowlist could not be loaded; startup must abort."""
