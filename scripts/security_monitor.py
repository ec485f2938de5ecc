from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict
import json
import signal

from admitguard.core.config import get_settings
from admitguard.core.logging import configure_logging
from admitguard.persistence.db import SessionLocal
from admitguard.persistence.sql_store import SqlSecurityStore
from admitguard.services.wiring import build_security_core


async def _run(once: bool, metrics: bool = False) -> None:
    # Boot a dedicated monitor process so incidents keep flowing without request traffic.
    configure_logging()
    core = build_security_core(SqlSecurityStore(SessionLocal))
    await core.audit.start()
    try:
        if metrics:
            summary = await core.audit.security_metrics()
            print(json.dumps(asdict(summary), indent=2, default=str))
            return
        if once:
            result = await core.monitor.run_tick()
            print(json.dumps(result, indent=2, default=str))
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, core.monitor.stop)
        await core.monitor.start()
    finally:
        await core.alerts.flush(get_settings().alert_flush_timeout_s)
        await core.audit.stop(flush=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the security monitor loop")
    parser.add_argument("--once", action="store_true", help="run a single tick and print the result")
    parser.add_argument("--metrics", action="store_true", help="print the 24h security metrics summary and exit")
    args = parser.parse_args()
    asyncio.run(_run(args.once, args.metrics))


if __name__ == "__main__":
    main()
