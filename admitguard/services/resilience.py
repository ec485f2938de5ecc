from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from redis.asyncio import Redis

from admitguard.core.config import get_settings
from admitguard.core.errors import PersistenceFailure
from admitguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_coordination_redis() -> Redis | None:
    # Reuse a shared Redis connection for monitor ownership and heartbeats.
    settings = get_settings()
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("coordination_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


async def bounded_store_call(awaitable: Awaitable[T], *, operation: str, timeout_ms: int | None = None) -> T:
    # Cap store latency on request paths; a timeout surfaces as a persistence failure.
    resolved_ms = timeout_ms if timeout_ms is not None else get_settings().store_call_timeout_ms
    try:
        return await asyncio.wait_for(awaitable, timeout=max(resolved_ms, 1) / 1000.0)
    except asyncio.TimeoutError as exc:
        increment_counter("store_call_timeouts_total")
        logger.warning("store_call_timeout operation=%s timeout_ms=%s", operation, resolved_ms)
        raise PersistenceFailure(f"{operation} timed out") from exc
