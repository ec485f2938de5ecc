from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from admitguard.core.errors import (
    AuthorizationDenied,
    InvalidRoleAssignment,
    LockedOut,
    PersistenceFailure,
    RateLimitExceeded,
)


logger = logging.getLogger(__name__)

# Callers only ever see these; diagnostic detail stays in audit rows.
_NOT_ALLOWED = {"detail": "Not allowed"}
_TRY_AGAIN_LATER = {"detail": "Try again later"}


async def authorization_denied_handler(request: Request, exc: AuthorizationDenied) -> JSONResponse:
    return JSONResponse(content=_NOT_ALLOWED, status_code=403)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    headers = {"Retry-After": str(max(1, exc.retry_after_s))}
    return JSONResponse(content=_TRY_AGAIN_LATER, status_code=429, headers=headers)


async def locked_out_handler(request: Request, exc: LockedOut) -> JSONResponse:
    headers = {"Retry-After": str(exc.lockout_seconds)} if exc.lockout_seconds else None
    return JSONResponse(content=_TRY_AGAIN_LATER, status_code=429, headers=headers)


async def persistence_failure_handler(request: Request, exc: PersistenceFailure) -> JSONResponse:
    # Authorization could not be decided; deny without exposing the store error.
    logger.error("persistence_failure path=%s", request.url.path, exc_info=exc)
    return JSONResponse(content=_TRY_AGAIN_LATER, status_code=503)


async def invalid_role_assignment_handler(request: Request, exc: InvalidRoleAssignment) -> JSONResponse:
    return JSONResponse(content=_NOT_ALLOWED, status_code=403)
