"""The two fast storage tiers in front of the durable store.

``LocalTTLCache`` is process-local and synchronous; it is the first place
a turn looks for its session. ``FastCache`` is the shared redis tier used
across worker processes for sessions, policy artifacts and memory
aggregates. Every redis failure surfaces as ``SessionStoreUnavailable`` so
callers can take their degraded path.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from callcore.circuit_breaker import CircuitBreaker
from callcore.errors import SessionStoreUnavailable

logger = logging.getLogger(__name__)


class LocalTTLCache:
    """Bounded in-process cache with a short per-entry TTL."""

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict = OrderedDict()

    def get(self, key: str):
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class FastCache:
    """Shared key/value cache with TTL, backed by redis."""

    def __init__(
        self,
        url: str = "",
        client: Optional["redis.Redis"] = None,
        op_timeout: float = 0.25,
    ):
        self.op_timeout = op_timeout
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=30.0,
            label="fast cache",
        )
        if client is not None:
            self._redis = client
        else:
            self._redis = redis.from_url(
                url,
                max_connections=50,
                decode_responses=True,
                retry_on_timeout=True,
                health_check_interval=30,
            )
            logger.info("Fast cache client initialized: %s", url)

    @property
    def available(self) -> bool:
        return self._circuit.should_try()

    async def close(self):
        await self._redis.aclose()

    async def _call(self, op: str, coro_factory):
        if not self._circuit.should_try():
            raise SessionStoreUnavailable(f"fast cache circuit open ({op})")
        try:
            result = await asyncio.wait_for(coro_factory(), timeout=self.op_timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            self._circuit.record_failure()
            logger.warning("Fast cache %s failed: %s", op, e)
            raise SessionStoreUnavailable(f"fast cache {op} failed: {e}") from e
        self._circuit.record_success()
        return result

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", lambda: self._redis.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._call("set", lambda: self._redis.set(key, value, ex=ttl_seconds))

    async def delete(self, key: str) -> None:
        await self._call("delete", lambda: self._redis.delete(key))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self._call("hincrby", lambda: self._redis.hincrby(key, field, amount)))

    async def hset(self, key: str, field: str, value: str) -> None:
        await self._call("hset", lambda: self._redis.hset(key, field, value))

    async def hgetall(self, key: str) -> dict:
        return await self._call("hgetall", lambda: self._redis.hgetall(key)) or {}

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", lambda: self._redis.ping()))
        except SessionStoreUnavailable:
            return False
