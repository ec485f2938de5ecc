from __future__ import annotations

import argparse
import asyncio
import sys

from admitguard.core.logging import configure_logging
from admitguard.persistence.db import SessionLocal
from admitguard.persistence.sql_store import SqlSecurityStore
from admitguard.services.audit import AuditSink
from admitguard.services.security.brute_force import BruteForceDetector


async def _unlock(principal_id: str | None, identifier: str | None, actor: str) -> bool:
    # Manual reset path; terminal lockouts can only be cleared here.
    store = SqlSecurityStore(SessionLocal)
    audit = AuditSink(store, mode="inline")
    detector = BruteForceDetector(store, audit)
    if principal_id is None:
        principal = await store.get_principal_by_identifier(identifier or "")
        if principal is None:
            print("principal_not_found")
            return False
        principal_id = principal.id
    unlocked = await detector.unlock(principal_id, actor=actor)
    print(f"principal_id={principal_id} unlocked={str(unlocked).lower()}")
    return unlocked


def main() -> None:
    parser = argparse.ArgumentParser(description="Clear a principal lockout and failure counter")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--principal-id", default=None)
    target.add_argument("--identifier", default=None)
    parser.add_argument("--actor", default="cli")
    args = parser.parse_args()
    configure_logging()
    if not asyncio.run(_unlock(args.principal_id, args.identifier, args.actor)):
        sys.exit(1)


if __name__ == "__main__":
    main()
