"""Store interface shared by the in-memory and Redis backends."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class TTLStore(ABC):
    """
    Minimal async key-value store with per-entry TTL.

    Values are JSON-compatible dicts. Implementations must guarantee that
    ``pop`` is atomic: when several callers pop the same key concurrently,
    at most one of them receives the value.
    """

    @abstractmethod
    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: float) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the value, or None when unknown or expired."""

    @abstractmethod
    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        """Atomically remove and return the value (None when unknown or expired)."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present. Idempotent."""

    @abstractmethod
    async def sweep(self) -> int:
        """Drop expired entries and return how many were removed."""

    async def close(self) -> None:
        """Release backend resources."""
        return None
