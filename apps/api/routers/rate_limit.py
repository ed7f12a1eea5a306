"""Per-account fixed-window quotas for paid endpoints, Redis-backed with a local fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Tuple

from fastapi import Depends, HTTPException, Request, Response
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from routers.auth_scope import AuthContext, get_auth_context


logger = logging.getLogger(__name__)

RATE_KEY_PREFIX = "tradeit:rate"

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


async def _consume_redis_quota(key: str, window_seconds: int) -> int:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            # The window starts with the first call; INCR keeps the TTL.
            pipe.set(key, 0, ex=window_seconds, nx=True)
            pipe.incr(key)
            _, used = await pipe.execute()
    finally:
        await client.aclose()
    return int(used)


async def _consume_local_quota(key: str, window_seconds: int) -> int:
    now = time.monotonic()
    async with _local_lock:
        used, resets_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= resets_at:
            used, resets_at = 0, now + window_seconds
        used += 1
        _local_counters[key] = (used, resets_at)
    return used


def rate_limit(scope: str, limit: int, window_seconds: int) -> Callable[..., Awaitable[None]]:
    """Dependency allowing ``limit`` calls per account per window on ``scope``."""

    async def _dependency(
        request: Request,
        response: Response,
        auth: AuthContext = Depends(get_auth_context),
    ) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"{RATE_KEY_PREFIX}:{scope}:{auth.account_id}"
        try:
            used = await _consume_redis_quota(key, window_seconds)
        except (RedisError, OSError) as exc:
            logger.debug("Quota for %s counted locally: %s", scope, exc)
            used = await _consume_local_quota(key, window_seconds)

        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(limit - used, 0))
        if used > limit:
            logger.warning("Quota exhausted scope=%s account=%s used=%s", scope, auth.account_id, used)
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {scope}. Try again later.",
                headers={"Retry-After": str(window_seconds)},
            )

    return _dependency
