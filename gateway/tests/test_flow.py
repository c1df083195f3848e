"""
Authorization-Code Flow Tests

Tests AuthorizationRequestInitiator and the CallbackProcessor state machine:
state/nonce generation, CSRF and replay rejection, exchange and validation
failures, popup handling and redirect-target sanitizing.
"""

from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from gateway.auth.flow import (
    AuthorizationRequestInitiator,
    CallbackProcessor,
    CallbackState,
    PendingRequestStore,
    is_safe_redirect,
    safe_redirect_target,
)
from gateway.auth.idp import IdentityProviderClient
from gateway.auth.keys import KeySetCache
from gateway.auth.session import SessionStore
from gateway.auth.validation import TokenValidator
from gateway.errors import (
    ExchangeError,
    FlowExpiredError,
    IdentityProviderError,
    InvalidSignatureError,
    MissingParameterError,
    NonceMismatchError,
    ProtocolError,
    StateMismatchError,
)
from gateway.stores import InMemoryTTLStore


@pytest.fixture
def flow(settings, fake_idp):
    client = fake_idp.client()
    idp = IdentityProviderClient(settings, client)
    validator = TokenValidator(
        KeySetCache(client, settings.jwks_uri, 86400, name="exchange"),
        client_id=settings.AZURE_CLIENT_ID,
        issuers=settings.accepted_issuers,
    )
    pending = PendingRequestStore(InMemoryTTLStore(name="pending"), ttl_seconds=600)
    sessions_backend = InMemoryTTLStore(name="sessions")
    sessions = SessionStore(sessions_backend, ttl_seconds=28800)

    return SimpleNamespace(
        idp=idp,
        pending=pending,
        sessions=sessions,
        sessions_backend=sessions_backend,
        initiator=AuthorizationRequestInitiator(idp, pending),
        processor=CallbackProcessor(pending, idp, validator, sessions, popup_complete_path="/oauth/popup"),
    )


def query_of(url: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


async def begin(flow, flow_id="browser-1", original_url="/dashboard", is_popup=False) -> dict:
    return query_of(await flow.initiator.begin(flow_id, original_url, is_popup))


class TestInitiator:
    """Test suite for AuthorizationRequestInitiator"""

    @pytest.mark.asyncio
    async def test_authorize_url_parameters(self, flow, settings):
        url = await flow.initiator.begin("browser-1", "/dashboard", False)
        params = query_of(url)

        assert url.startswith(settings.authorize_endpoint + "?")
        assert params["client_id"] == settings.AZURE_CLIENT_ID
        assert params["response_type"] == "code"
        assert params["redirect_uri"] == settings.AZURE_REDIRECT_URI
        assert params["scope"] == "openid profile email"
        assert params["response_mode"] == "query"
        assert "code_challenge" not in params

    @pytest.mark.asyncio
    async def test_state_and_nonce_are_random_and_distinct(self, flow):
        seen = set()
        for i in range(50):
            params = await begin(flow, flow_id=f"browser-{i}")
            assert len(params["state"]) >= 43
            assert len(params["nonce"]) >= 43
            assert params["state"] != params["nonce"]
            seen.update((params["state"], params["nonce"]))
        assert len(seen) == 100

    @pytest.mark.asyncio
    async def test_pending_request_keyed_by_flow_id(self, flow):
        params = await begin(flow, flow_id="browser-1", original_url="/reports?id=7", is_popup=True)

        assert await flow.pending.consume("browser-2") is None
        pending = await flow.pending.consume("browser-1")
        assert pending.state == params["state"]
        assert pending.nonce == params["nonce"]
        assert pending.original_url == "/reports?id=7"
        assert pending.is_popup is True


class TestCallbackProcessor:
    """Test suite for the callback state machine"""

    @pytest.mark.asyncio
    async def test_successful_callback_creates_session(self, flow, fake_idp, mint_token):
        params = await begin(flow)
        fake_idp.id_token = mint_token(nonce=params["nonce"])

        result = await flow.processor.process("browser-1", code="auth-code", state=params["state"])

        assert result.redirect_url == "/dashboard"
        assert result.is_popup is False
        session = await flow.sessions.lookup(result.session_id)
        assert session.claims.subject == "user-123"
        assert session.id_token == fake_idp.id_token

        token_request = fake_idp.token_requests[0]
        assert token_request["code"] == "auth-code"
        assert token_request["grant_type"] == "authorization_code"
        assert token_request["client_secret"] == "test-client-secret"

    @pytest.mark.asyncio
    async def test_popup_flow_redirects_to_completion_page(self, flow, fake_idp, mint_token):
        params = await begin(flow, is_popup=True)
        fake_idp.id_token = mint_token(nonce=params["nonce"])

        result = await flow.processor.process(
            "browser-1", code="auth-code", state=params["state"], root_path="/gw"
        )

        assert result.is_popup is True
        assert result.redirect_url == "/gw/oauth/popup"

    @pytest.mark.asyncio
    async def test_state_mismatch_never_creates_session(self, flow, fake_idp, mint_token):
        params = await begin(flow)
        fake_idp.id_token = mint_token(nonce=params["nonce"])

        with pytest.raises(StateMismatchError) as exc_info:
            await flow.processor.process("browser-1", code="auth-code", state="forged-state")

        assert exc_info.value.stage == CallbackState.START.value
        assert len(flow.sessions_backend) == 0
        assert fake_idp.token_requests == []

        # The pending request was consumed by the failed attempt
        with pytest.raises(FlowExpiredError):
            await flow.processor.process("browser-1", code="auth-code", state=params["state"])
        assert len(flow.sessions_backend) == 0

    @pytest.mark.asyncio
    async def test_replayed_callback_rejected(self, flow, fake_idp, mint_token):
        params = await begin(flow)
        fake_idp.id_token = mint_token(nonce=params["nonce"])
        await flow.processor.process("browser-1", code="auth-code", state=params["state"])

        with pytest.raises(FlowExpiredError):
            await flow.processor.process("browser-1", code="auth-code", state=params["state"])
        assert len(flow.sessions_backend) == 1

    @pytest.mark.asyncio
    async def test_state_from_another_browser_rejected(self, flow, fake_idp, mint_token):
        params = await begin(flow, flow_id="victim")
        fake_idp.id_token = mint_token(nonce=params["nonce"])

        with pytest.raises(FlowExpiredError):
            await flow.processor.process("attacker", code="auth-code", state=params["state"])

    @pytest.mark.asyncio
    async def test_no_flow_cookie_rejected(self, flow):
        with pytest.raises(FlowExpiredError):
            await flow.processor.process(None, code="auth-code", state="s")

    @pytest.mark.asyncio
    async def test_idp_error_parameter(self, flow):
        params = await begin(flow)

        with pytest.raises(IdentityProviderError):
            await flow.processor.process(
                "browser-1", code=None, state=params["state"],
                error="access_denied", error_description="User cancelled",
            )
        assert await flow.pending.consume("browser-1") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,state", [(None, "s"), ("c", None), ("", "")])
    async def test_missing_parameters(self, flow, code, state):
        await begin(flow)

        with pytest.raises(MissingParameterError):
            await flow.processor.process("browser-1", code=code, state=state)
        assert await flow.pending.consume("browser-1") is None

    @pytest.mark.asyncio
    async def test_token_endpoint_rejection(self, flow, fake_idp):
        params = await begin(flow)
        fake_idp.token_status = 400
        fake_idp.token_body = {"error": "invalid_grant"}

        with pytest.raises(ExchangeError) as exc_info:
            await flow.processor.process("browser-1", code="auth-code", state=params["state"])

        assert exc_info.value.stage == CallbackState.STATE_OK.value
        assert len(flow.sessions_backend) == 0

    @pytest.mark.asyncio
    async def test_token_endpoint_rejection_with_non_object_body(self, flow, fake_idp):
        params = await begin(flow)
        fake_idp.token_status = 400
        fake_idp.token_body = ["invalid_grant"]

        with pytest.raises(ExchangeError):
            await flow.processor.process("browser-1", code="auth-code", state=params["state"])

        assert len(flow.sessions_backend) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            httpx.ReadTimeout("timed out"),
            httpx.ConnectError("connection refused"),
        ],
    )
    async def test_token_endpoint_unreachable(self, flow, fake_idp, error):
        params = await begin(flow)
        fake_idp.token_error = error

        with pytest.raises(ExchangeError):
            await flow.processor.process("browser-1", code="auth-code", state=params["state"])

        assert len(fake_idp.token_requests) == 1
        assert len(flow.sessions_backend) == 0

    @pytest.mark.asyncio
    async def test_token_response_without_id_token(self, flow, fake_idp):
        params = await begin(flow)
        fake_idp.token_body = {"access_token": "at", "token_type": "Bearer"}

        with pytest.raises(ExchangeError):
            await flow.processor.process("browser-1", code="auth-code", state=params["state"])

    @pytest.mark.asyncio
    async def test_nonce_mismatch_rejected(self, flow, fake_idp, mint_token):
        params = await begin(flow)
        fake_idp.id_token = mint_token(nonce="some-other-nonce")

        with pytest.raises(NonceMismatchError) as exc_info:
            await flow.processor.process("browser-1", code="auth-code", state=params["state"])

        assert exc_info.value.stage == CallbackState.TOKENS_RECEIVED.value
        assert len(flow.sessions_backend) == 0

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, flow, fake_idp, mint_token, other_key):
        params = await begin(flow)
        fake_idp.id_token = mint_token(key=other_key, nonce=params["nonce"])

        with pytest.raises(InvalidSignatureError):
            await flow.processor.process("browser-1", code="auth-code", state=params["state"])
        assert len(flow.sessions_backend) == 0

    @pytest.mark.asyncio
    async def test_protocol_errors_have_coarse_public_message(self, flow):
        with pytest.raises(ProtocolError) as exc_info:
            await flow.processor.process(None, code="c", state="s")

        assert "pending" not in exc_info.value.public_message.lower()
        assert exc_info.value.category == "protocol_error"


class TestRedirectTargets:
    """Test suite for open-redirect protection"""

    @pytest.mark.parametrize("target", ["/", "/dashboard", "/a/b?c=d#e"])
    def test_relative_paths_allowed(self, target):
        assert is_safe_redirect(target)

    @pytest.mark.parametrize(
        "target",
        ["//evil.test/x", "/\\evil.test", "https://evil.test/", "javascript:alert(1)", "evil.test", ""],
    )
    def test_foreign_targets_rejected(self, target):
        assert not is_safe_redirect(target, allowed_hosts=["app.example.org"])

    def test_allow_listed_host(self):
        assert is_safe_redirect("https://app.example.org/home", allowed_hosts=["APP.example.org"])

    def test_fallback_to_default(self):
        assert safe_redirect_target("https://evil.test/", []) == "/"
        assert safe_redirect_target(None, []) == "/"
        assert safe_redirect_target("/ok", []) == "/ok"
