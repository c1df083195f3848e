"""
In-process TTL store.

Entries are kept in a dict guarded by an asyncio.Lock. Expired entries are
removed lazily on access, by a sweep throttled to run at most once per
``sweep_interval`` when new entries are written, and by the gateway's
periodic sweeper task.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .base import TTLStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Entry:
    value: Dict[str, Any]
    expires_at: float


class InMemoryTTLStore(TTLStore):
    """
    Single-process store suitable for one gateway instance.

    Example:
        >>> store = InMemoryTTLStore(name="codes")
        >>> await store.put("abc", {"sub": "u1"}, ttl_seconds=300)
        >>> await store.pop("abc")
        {'sub': 'u1'}
        >>> await store.pop("abc") is None
        True
    """

    def __init__(
        self,
        name: str = "store",
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self._entries: Dict[str, _Entry] = {}
        self._lock = asyncio.Lock()
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: float) -> None:
        async with self._lock:
            now = self._clock()
            self._entries[key] = _Entry(value=value, expires_at=now + ttl_seconds)
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep_locked(now)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                # Lazy removal of expired entry
                del self._entries[key]
                return None
            return entry.value

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None or self._clock() >= entry.expires_at:
            return None
        return entry.value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def sweep(self) -> int:
        async with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            del self._entries[key]
        self._last_sweep = now
        if expired:
            logger.debug(
                f"Swept {len(expired)} expired entries from {self.name}",
                extra={"store": self.name, "remaining": len(self._entries)},
            )
        return len(expired)
