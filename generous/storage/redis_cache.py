from __future__ import annotations

from typing import Dict, Mapping

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis wrapper holding the shared quota usage counters."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # throwaway event loop during startup
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _hash_to_floats(raw: Mapping[str, str]) -> Dict[str, float]:
        return {name: float(value) for name, value in (raw or {}).items()}

    async def increment(
        self, key: str, deltas: Mapping[str, float], ttl_seconds: int
    ) -> Dict[str, float]:
        """Add ``deltas`` to the hash at ``key`` in one MULTI/EXEC block."""
        pipe = self.client.pipeline(transaction=True)
        for name, delta in deltas.items():
            pipe.hincrbyfloat(key, name, float(delta))
        # NX keeps the first TTL so a busy bucket still expires on schedule
        pipe.expire(key, max(int(ttl_seconds), 1), nx=True)
        pipe.hgetall(key)
        results = await pipe.execute()
        return self._hash_to_floats(results[-1])

    async def read(self, key: str) -> Dict[str, float]:
        return self._hash_to_floats(await self.client.hgetall(key))

    async def delete_prefix(self, prefix: str) -> int:
        removed = 0
        async for key in self.client.scan_iter(match=f"{prefix}*", count=200):
            removed += await self.client.delete(key)
        return removed

    async def close(self) -> None:
        await self.client.aclose()
