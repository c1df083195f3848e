"""
One-time code exchange store.

A code is an opaque 256-bit token mapping to the claims of the session that
issued it. Redemption is an atomic pop, so a code is returned at most once
even when two backends race to redeem it.
"""

import logging
import time
from typing import Callable, Optional

from pydantic import ValidationError

from gateway.auth.session import new_token
from gateway.models import OneTimeCode, ValidatedClaims, dump_record
from gateway.stores import TTLStore

logger = logging.getLogger(__name__)


class CodeExchangeStore:
    """
    Issues and redeems one-time codes.

    Example:
        >>> codes = CodeExchangeStore(InMemoryTTLStore(), ttl_seconds=300)
        >>> code = await codes.issue(claims)
        >>> (await codes.redeem(code)).subject
        'user-123'
        >>> await codes.redeem(code) is None
        True
    """

    def __init__(
        self,
        store: TTLStore,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    async def issue(self, claims: ValidatedClaims) -> str:
        code = new_token()
        record = OneTimeCode(code=code, claims=claims, expires_at=self._clock() + self.ttl_seconds)
        await self.store.put(code, dump_record(record), self.ttl_seconds)

        logger.info("One-time code issued", extra={"user_id": claims.subject})
        return code

    async def redeem(self, code: Optional[str]) -> Optional[ValidatedClaims]:
        """Return the claims for ``code`` exactly once; None if unknown, used or expired."""
        if not code:
            return None

        data = await self.store.pop(code)
        if data is None:
            return None

        try:
            record = OneTimeCode.model_validate(data)
        except ValidationError:
            logger.error("Discarding malformed one-time code record")
            return None

        if self._clock() >= record.expires_at:
            return None

        logger.info("One-time code redeemed", extra={"user_id": record.claims.subject})
        return record.claims

    async def sweep(self) -> int:
        return await self.store.sweep()
