from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable

from admitguard.core.config import Settings, get_settings
from admitguard.core.errors import AllowlistConfigError


logger = logging.getLogger(__name__)


def _split_entries(raw: str | None) -> list[str]:
    # Parse comma-delimited config values and drop blanks.
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


def _normalize_contact(value: str) -> str:
    return value.strip().lower()


@dataclass(frozen=True)
class IdentityAllowlist:
    """Identities allowed to hold platform operator privilege.

    Loaded once at startup and never mutated. Identifier matching is exact;
    contacts (emails) compare case-insensitively.
    """

    identifiers: frozenset[str]
    contact_set: frozenset[str]

    @classmethod
    def from_entries(cls, identifiers: Iterable[str], contacts: Iterable[str] = ()) -> "IdentityAllowlist":
        resolved_identifiers = frozenset(item.strip() for item in identifiers if item and item.strip())
        if not resolved_identifiers:
            raise AllowlistConfigError("platform operator allowlist is empty")
        resolved_contacts = frozenset(_normalize_contact(item) for item in contacts if item and item.strip())
        return cls(identifiers=resolved_identifiers, contact_set=resolved_contacts)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "IdentityAllowlist":
        # A missing allowlist is fatal; the process must not start without it.
        settings = settings or get_settings()
        identifiers = _split_entries(settings.platform_operator_identifiers)
        contacts = _split_entries(settings.platform_operator_contacts)
        allowlist = cls.from_entries(identifiers, contacts)
        logger.info(
            "identity_allowlist_loaded identifiers=%s contacts=%s",
            len(allowlist.identifiers),
            len(allowlist.contact_set),
        )
        return allowlist

    def is_authorized(self, identifier: str | None, contact: str | None = None) -> bool:
        if not identifier or identifier not in self.identifiers:
            return False
        if contact is not None:
            return _normalize_contact(contact) in self.contact_set
        return True

    def validate_credentials(self, identifier: str | None, contact: str | None) -> tuple[bool, str | None, str | None]:
        # Both halves must match; returns the canonical pair for verification delivery.
        if not contact or not self.is_authorized(identifier, contact):
            return False, None, None
        return True, identifier, _normalize_contact(contact)

    def contacts(self) -> tuple[list[str], list[str]]:
        return sorted(self.identifiers), sorted(self.contact_set)
