"""
Signing-key cache for ID token verification.

This module handles:
- Fetching the IdP's JWKS (JSON Web Key Set) over a shared httpx client
- Caching it for a configurable TTL
- Forcing a rate-limited refresh when a token names an unknown key id
  (key rotation)

A failed refresh never discards keys that are already cached. Only when no
key set has ever been obtained does lookup fail with KeySetUnavailableError.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

from gateway.errors import KeySetUnavailableError

logger = logging.getLogger(__name__)


# =============================================================================
# Cached Key Set
# =============================================================================

@dataclass
class CachedKeySet:
    """Keys indexed by ``kid`` plus the time they stop being fresh."""

    keys: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    expires_at: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


def index_jwks(jwks: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """
    Index a JWKS document by key id.

    Keys without a ``kid`` cannot be selected by a token header and are
    skipped.

    Raises:
        ValueError: If the document has no ``keys`` list
    """
    keys = jwks.get("keys") if isinstance(jwks, dict) else None
    if not isinstance(keys, list):
        raise ValueError("Invalid JWKS response: missing 'keys' field")
    return {key["kid"]: key for key in keys if isinstance(key, dict) and key.get("kid")}


# =============================================================================
# Key Set Cache
# =============================================================================

class KeySetCache:
    """
    TTL cache over one JWKS endpoint.

    Refreshes are single-flight: concurrent callers that find the set expired
    wait on one fetch instead of each hitting the IdP. Validation itself
    never takes the lock once keys are cached and fresh.

    Attributes:
        name: Label used in logs ("direct", "exchange")
        ttl_seconds: How long a fetched key set stays fresh
        min_refresh_interval: Minimum gap between fetch attempts once a set
                              is cached (forced or after failure)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        jwks_uri: str,
        ttl_seconds: float,
        *,
        name: str = "jwks",
        min_refresh_interval: float = 60.0,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.min_refresh_interval = min_refresh_interval
        self._client = http_client
        self._jwks_uri = jwks_uri
        self._timeout = timeout
        self._clock = clock
        self._cached: Optional[CachedKeySet] = None
        self._last_attempt: Optional[float] = None
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> Optional[CachedKeySet]:
        return self._cached

    async def get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """
        Return the JWK for ``kid``, or None if the IdP does not publish it.

        Raises:
            KeySetUnavailableError: If no key set could ever be fetched
        """
        keys = await self.get_keys()
        if kid in keys:
            return keys[kid]

        # Unknown kid: the IdP may have rotated keys since the last fetch
        if self._refresh_allowed():
            logger.info(
                "Unknown signing key id, forcing JWKS refresh",
                extra={"cache": self.name, "kid": kid},
            )
            await self._refresh(force=True)
        return self._require_cached().keys.get(kid)

    async def get_keys(self) -> Dict[str, Dict[str, Any]]:
        """Return the current key map, refreshing first when it has expired."""
        cached = self._cached
        if cached is None:
            await self._refresh(force=False)
        elif cached.is_expired(self._clock()) and self._refresh_allowed():
            await self._refresh(force=False)
        return self._require_cached().keys

    def _refresh_allowed(self) -> bool:
        if self._last_attempt is None:
            return True
        return self._clock() - self._last_attempt >= self.min_refresh_interval

    def _require_cached(self) -> CachedKeySet:
        if self._cached is None:
            raise KeySetUnavailableError(
                f"No signing keys available from {self._jwks_uri}",
                stage="key_fetch",
            )
        return self._cached

    async def _refresh(self, force: bool) -> None:
        generation = self._generation
        async with self._lock:
            # Another caller refreshed while we were waiting
            if self._generation != generation:
                return
            if not force and self._cached is not None and not self._cached.is_expired(self._clock()):
                return

            self._last_attempt = self._clock()
            self._generation += 1
            try:
                keys = await self._fetch()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(
                    f"JWKS refresh failed: {type(e).__name__}",
                    extra={
                        "cache": self.name,
                        "have_stale_keys": self._cached is not None,
                    },
                )
                return

            self._cached = CachedKeySet(keys=keys, expires_at=self._clock() + self.ttl_seconds)
            logger.info(
                "JWKS refreshed",
                extra={"cache": self.name, "key_count": len(keys)},
            )

    async def _fetch(self) -> Dict[str, Dict[str, Any]]:
        response = await self._client.get(self._jwks_uri, timeout=self._timeout)
        response.raise_for_status()
        return index_jwks(response.json())
