from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from admitguard.apps.api.errors import (
    authorization_denied_handler,
    invalid_role_assignment_handler,
    locked_out_handler,
    persistence_failure_handler,
    rate_limit_exceeded_handler,
)
from admitguard.core.config import get_settings
from admitguard.core.errors import (
    AuthorizationDenied,
    InvalidRoleAssignment,
    LockedOut,
    PersistenceFailure,
    RateLimitExceeded,
)
from admitguard.core.logging import configure_logging
from admitguard.services.telemetry import counters_snapshot
from admitguard.services.wiring import SecurityCore, build_security_core


def _default_core() -> SecurityCore:
    # Import lazily so building an app around a test core never touches the database engine.
    from admitguard.persistence.db import SessionLocal
    from admitguard.persistence.sql_store import SqlSecurityStore

    return build_security_core(SqlSecurityStore(SessionLocal))


def create_app(core: SecurityCore | None = None) -> FastAPI:
    configure_logging()
    security_core = core or _default_core()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await security_core.startup()
        try:
            yield
        finally:
            await security_core.shutdown()

    app = FastAPI(title=get_settings().app_name, lifespan=lifespan)
    app.state.security_core = security_core

    app.add_exception_handler(AuthorizationDenied, authorization_denied_handler)
    app.add_exception_handler(InvalidRoleAssignment, invalid_role_assignment_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(LockedOut, locked_out_handler)
    app.add_exception_handler(PersistenceFailure, persistence_failure_handler)

    @app.get("/health")
    async def health() -> dict[str, object]:
        return {
            "status": "ok",
            "monitor_running": security_core.monitor.running,
            "counters": counters_snapshot(),
        }

    return app
