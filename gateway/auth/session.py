"""
Server-side Session Management
==============================

Sessions are opaque random ids handed to the browser in an HttpOnly cookie.
The id maps to a stored Session record holding the validated claims and,
optionally, the raw ID token. Expiry is absolute from creation; lookups
never extend a session.
"""

import logging
import secrets
import time
from typing import Callable, Optional

from fastapi import Request, Response
from pydantic import ValidationError

from gateway.config import Settings
from gateway.models import Session, ValidatedClaims, dump_record
from gateway.stores import TTLStore

logger = logging.getLogger(__name__)


def new_token() -> str:
    """256-bit URL-safe random token used for ids, state, nonce and codes."""
    return secrets.token_urlsafe(32)


# =============================================================================
# Session Store
# =============================================================================

class SessionStore:
    """
    Session lifecycle on top of a TTLStore.

    Example:
        >>> sessions = SessionStore(InMemoryTTLStore(), ttl_seconds=28800)
        >>> session_id = await sessions.create(claims)
        >>> (await sessions.lookup(session_id)).claims.subject
        'user-123'
        >>> await sessions.destroy(session_id)
        >>> await sessions.lookup(session_id) is None
        True
    """

    def __init__(
        self,
        store: TTLStore,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    async def create(self, claims: ValidatedClaims, id_token: Optional[str] = None) -> str:
        session_id = new_token()
        session = Session(
            session_id=session_id,
            claims=claims,
            expires_at=self._clock() + self.ttl_seconds,
            id_token=id_token,
        )
        await self.store.put(session_id, dump_record(session), self.ttl_seconds)

        logger.info(
            "Session created",
            extra={"user_id": claims.subject, "ttl_seconds": self.ttl_seconds},
        )
        return session_id

    async def lookup(self, session_id: Optional[str]) -> Optional[Session]:
        """Return the live session for ``session_id``; None when unknown or expired."""
        if not session_id:
            return None

        data = await self.store.get(session_id)
        if data is None:
            return None

        try:
            session = Session.model_validate(data)
        except ValidationError:
            logger.error("Discarding malformed session record")
            await self.store.delete(session_id)
            return None

        if self._clock() >= session.expires_at:
            await self.store.delete(session_id)
            return None
        return session

    async def destroy(self, session_id: Optional[str]) -> None:
        if session_id:
            await self.store.delete(session_id)

    async def sweep(self) -> int:
        return await self.store.sweep()


# =============================================================================
# Cookie Helpers
# =============================================================================

def set_session_cookie(response: Response, session_id: str, settings: Settings) -> None:
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=session_id,
        max_age=settings.SESSION_TTL_SECONDS,
        path=settings.cookie_path,
        secure=settings.SESSION_COOKIE_SECURE,
        httponly=True,
        samesite="lax",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.SESSION_COOKIE_NAME,
        path=settings.cookie_path,
        secure=settings.SESSION_COOKIE_SECURE,
        httponly=True,
        samesite="lax",
    )


async def resolve_session(request: Request) -> Optional[Session]:
    """
    Resolve the session named by the request's cookie.

    Used both by the RequestAuthorizer and by the auth endpoints, which are
    excluded from authorization and therefore resolve it themselves.
    """
    cached = getattr(request.state, "auth_session", None)
    if cached is not None:
        return cached

    gateway = request.app.state.gateway
    session_id = request.cookies.get(gateway.settings.SESSION_COOKIE_NAME)
    return await gateway.sessions.lookup(session_id)
