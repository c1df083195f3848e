"""
Redis-backed TTL store for multi-instance gateway deployments.

Values are stored as JSON with a native Redis expiry, so expired entries are
never returned and no sweep is needed. ``pop`` uses GETDEL (Redis 6.2+),
which makes single-use consumption atomic across every gateway instance.
"""

import json
import logging
from typing import Any, Dict, Optional

from redis.asyncio import Redis

from .base import TTLStore

logger = logging.getLogger(__name__)


class RedisTTLStore(TTLStore):
    """
    Distributed store using a shared Redis.

    Attributes:
        _client: redis.asyncio client (decode_responses=True expected).
        _prefix: Namespace prepended to every key.
    """

    def __init__(self, client: Redis, prefix: str):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str) -> "RedisTTLStore":
        return cls(Redis.from_url(url, decode_responses=True), prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: float) -> None:
        # Redis expiry granularity is milliseconds; never store with zero TTL
        ttl_ms = max(int(ttl_seconds * 1000), 1)
        await self._client.set(self._key(key), json.dumps(value), px=ttl_ms)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self._decode(await self._client.get(self._key(key)))

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        return self._decode(await self._client.getdel(self._key(key)))

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def sweep(self) -> int:
        return 0

    async def close(self) -> None:
        await self._client.aclose()

    def _decode(self, data: Optional[str]) -> Optional[Dict[str, Any]]:
        if data is None:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            logger.error(f"Discarding corrupted entry in {self._prefix}")
            return None
