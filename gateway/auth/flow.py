"""
OAuth2 Authorization-Code protocol state machine.

This module implements:
- AuthorizationRequestInitiator: creates state/nonce, persists the pending
  request under the browser's flow id, returns the IdP authorize URL
- CallbackProcessor: consumes the pending request, checks state, exchanges
  the code, validates the ID token (including nonce) and creates a session
- Redirect-target sanitizing for ``orig`` / ``redirect`` parameters

The pending request is consumed with an atomic pop before any check runs,
so a callback can never be replayed with the same state, successful or not.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse

from pydantic import ValidationError

from gateway.auth.idp import IdentityProviderClient
from gateway.auth.session import SessionStore, new_token
from gateway.auth.validation import TokenValidator
from gateway.errors import (
    FlowExpiredError,
    GatewayAuthError,
    IdentityProviderError,
    MissingParameterError,
    StateMismatchError,
)
from gateway.models import PendingAuthorizationRequest, ValidatedClaims, dump_record
from gateway.stores import TTLStore

logger = logging.getLogger(__name__)

FLOW_ID_KEY = "oauth_flow_id"


# =============================================================================
# Redirect Target Helpers
# =============================================================================

def is_safe_redirect(target: str, allowed_hosts: Iterable[str] = ()) -> bool:
    """
    Check that ``target`` cannot send the browser to a foreign site.

    Relative paths are allowed; protocol-relative and backslash tricks are
    not. Absolute http(s) URLs are allowed only for hosts on the allow-list.
    """
    if not target:
        return False
    if target.startswith("/"):
        return not target.startswith("//") and not target.startswith("/\\")

    parsed = urlparse(target)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    return parsed.hostname.lower() in {host.lower() for host in allowed_hosts}


def safe_redirect_target(
    target: Optional[str],
    allowed_hosts: Iterable[str] = (),
    default: str = "/",
) -> str:
    if target and is_safe_redirect(target, allowed_hosts):
        return target
    if target:
        logger.warning("Rejected unsafe redirect target", extra={"target_length": len(target)})
    return default


# =============================================================================
# Pending Request Store
# =============================================================================

class PendingRequestStore:
    """Pending authorization requests keyed by browser flow id."""

    def __init__(
        self,
        store: TTLStore,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    async def save(self, flow_id: str, pending: PendingAuthorizationRequest) -> None:
        await self.store.put(flow_id, dump_record(pending), self.ttl_seconds)

    async def consume(self, flow_id: Optional[str]) -> Optional[PendingAuthorizationRequest]:
        """Atomically remove and return the pending request for ``flow_id``."""
        if not flow_id:
            return None
        data = await self.store.pop(flow_id)
        if data is None:
            return None
        try:
            pending = PendingAuthorizationRequest.model_validate(data)
        except ValidationError:
            logger.error("Discarding malformed pending authorization request")
            return None
        if self._clock() >= pending.created_at + self.ttl_seconds:
            return None
        return pending


# =============================================================================
# Authorization Request Initiator
# =============================================================================

class AuthorizationRequestInitiator:
    """Begins the Authorization-Code flow for one browser."""

    def __init__(
        self,
        idp: IdentityProviderClient,
        pending: PendingRequestStore,
        clock: Callable[[], float] = time.time,
    ):
        self.idp = idp
        self.pending = pending
        self._clock = clock

    async def begin(self, flow_id: str, original_url: str = "/", is_popup: bool = False) -> str:
        """
        Persist a pending request for ``flow_id`` and return the authorize URL.

        A new login from the same browser replaces any earlier pending
        request, whose state then no longer matches.
        """
        request = PendingAuthorizationRequest(
            state=new_token(),
            nonce=new_token(),
            original_url=original_url,
            is_popup=is_popup,
            created_at=self._clock(),
        )
        await self.pending.save(flow_id, request)

        logger.info("Authorization request initiated", extra={"popup": is_popup})
        return self.idp.build_authorization_url(state=request.state, nonce=request.nonce)


# =============================================================================
# Callback Processor
# =============================================================================

class CallbackState(str, Enum):
    START = "start"
    STATE_OK = "state_ok"
    TOKENS_RECEIVED = "tokens_received"
    VALIDATED = "validated"
    SESSION_CREATED = "session_created"
    ERROR = "error"


@dataclass(frozen=True)
class CallbackResult:
    session_id: str
    claims: ValidatedClaims
    redirect_url: str
    is_popup: bool


class CallbackProcessor:
    """
    Drives one callback from START to SESSION_CREATED or ERROR.

    Every failure is raised as a GatewayAuthError whose ``stage`` names the
    state the machine was in when it failed.
    """

    def __init__(
        self,
        pending: PendingRequestStore,
        idp: IdentityProviderClient,
        validator: TokenValidator,
        sessions: SessionStore,
        popup_complete_path: str,
    ):
        self.pending = pending
        self.idp = idp
        self.validator = validator
        self.sessions = sessions
        self.popup_complete_path = popup_complete_path

    async def process(
        self,
        flow_id: Optional[str],
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        root_path: str = "",
    ) -> CallbackResult:
        current = CallbackState.START
        # Consumed up front so the same state can never be presented twice
        pending = await self.pending.consume(flow_id)

        try:
            if error:
                raise IdentityProviderError(
                    f"IdP returned error '{error}': {error_description or 'no description'}",
                    stage=current.value,
                )
            if not code or not state:
                raise MissingParameterError("Callback missing code or state", stage=current.value)
            if pending is None:
                raise FlowExpiredError("No pending authorization request for this browser", stage=current.value)
            if not secrets.compare_digest(state.encode(), pending.state.encode()):
                raise StateMismatchError("State mismatch, possible CSRF", stage=current.value)
            current = CallbackState.STATE_OK

            tokens = await self._exchange(code, current)
            id_token = tokens["id_token"]
            current = CallbackState.TOKENS_RECEIVED

            claims = await self._validate(id_token, pending.nonce, current)
            current = CallbackState.VALIDATED

            session_id = await self.sessions.create(claims, id_token=id_token)
            current = CallbackState.SESSION_CREATED
        except GatewayAuthError as e:
            logger.warning(
                f"Callback failed: {e}",
                extra={
                    "callback_state": CallbackState.ERROR.value,
                    "failed_at": e.stage,
                    "category": e.category,
                    "error_type": type(e).__name__,
                },
            )
            raise

        if pending.is_popup:
            redirect_url = f"{root_path}{self.popup_complete_path}"
        else:
            redirect_url = pending.original_url

        logger.info(
            "Callback completed",
            extra={"callback_state": current.value, "user_id": claims.subject, "popup": pending.is_popup},
        )
        return CallbackResult(
            session_id=session_id,
            claims=claims,
            redirect_url=redirect_url,
            is_popup=pending.is_popup,
        )

    async def _exchange(self, code: str, current: CallbackState) -> dict:
        try:
            return await self.idp.exchange_code(code)
        except GatewayAuthError as e:
            e.stage = current.value
            raise

    async def _validate(self, id_token: str, nonce: str, current: CallbackState) -> ValidatedClaims:
        try:
            return await self.validator.validate(id_token, expected_nonce=nonce)
        except GatewayAuthError as e:
            e.stage = current.value
            raise
