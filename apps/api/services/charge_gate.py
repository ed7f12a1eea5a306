"""Per-scope exclusive charge gate.

At most one charge attempt per scope key may be in flight. A second
concurrent attempt is rejected immediately with ``ChargeInProgress``
instead of queueing behind the first.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from services.credit_errors import ChargeInProgress

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class ChargeGate:
    """Fail-fast mutex keyed by charge scope (one account, one enrichment run, ...)."""

    def __init__(
        self,
        *,
        redis_url: Optional[str] = None,
        lease_seconds: int = 30,
        prefix: str = "tradeit:charge_gate",
    ):
        self._redis_url = redis_url
        self._lease_seconds = max(int(lease_seconds), 1)
        self._prefix = prefix
        self._locks: Dict[str, asyncio.Lock] = {}

    def is_held(self, scope_key: str) -> bool:
        lock = self._locks.get(scope_key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def _local_exclusive(self, scope_key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(scope_key, asyncio.Lock())
        if lock.locked():
            raise ChargeInProgress(scope_key)
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
            if not lock.locked() and self._locks.get(scope_key) is lock:
                self._locks.pop(scope_key, None)

    async def _acquire_lease(self, client: "redis.Redis", key: str, token: str) -> bool:
        return bool(await client.set(key, token, nx=True, ex=self._lease_seconds))

    @asynccontextmanager
    async def exclusive(self, scope_key: str) -> AsyncIterator[None]:
        """Hold the gate for ``scope_key`` or raise ``ChargeInProgress``."""
        if not self._redis_url:
            async with self._local_exclusive(scope_key):
                yield
            return

        key = f"{self._prefix}:{scope_key}"
        token = str(uuid.uuid4())
        client = redis.from_url(self._redis_url, decode_responses=True)
        try:
            try:
                acquired = await self._acquire_lease(client, key, token)
            except (RedisError, OSError) as exc:
                logger.warning("Charge gate falling back to local lock for %s: %s", scope_key, exc)
                async with self._local_exclusive(scope_key):
                    yield
                return

            if not acquired:
                raise ChargeInProgress(scope_key)
            try:
                async with self._local_exclusive(scope_key):
                    yield
            finally:
                try:
                    await client.eval(_RELEASE_SCRIPT, 1, key, token)
                except (RedisError, OSError) as exc:
                    # Lease expiry releases it.
                    logger.warning("Charge gate release failed for %s: %s", scope_key, exc)
        finally:
            await client.aclose()

    async def with_exclusive_charge(self, scope_key: str, fn: Callable[[], Awaitable[T]]) -> T:
        async with self.exclusive(scope_key):
            return await fn()


charge_gate = ChargeGate(
    redis_url=settings.REDIS_URL if settings.CHARGE_GATE_USE_REDIS else None,
    lease_seconds=settings.CHARGE_GATE_LEASE_SECONDS,
)
