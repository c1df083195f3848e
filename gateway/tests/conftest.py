"""
Shared fixtures for gateway tests.

Provides RSA signing keys published as a JWKS, a token minting factory, test
Settings and a fake Entra ID served through httpx.MockTransport.
"""

import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from gateway.config import Settings

TEST_TENANT = "test-tenant-id"
TEST_CLIENT_ID = "test-client-id"
TEST_AUTHORITY_HOST = "https://login.test"
TEST_SHARED_SECRET = "backend-shared-secret-0123456789abcdef"
TEST_CONSUME_URL = "https://backend.test/auth/consume"


class SigningKey:
    """RSA key pair plus its public JWK."""

    def __init__(self, kid: str):
        self.kid = kid
        self.private_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=2048,
            backend=default_backend(),
        )
        self.jwk = RSAAlgorithm.to_jwk(self.private_key.public_key(), as_dict=True)
        self.jwk["kid"] = kid
        self.jwk["use"] = "sig"


@pytest.fixture(scope="session")
def signing_key() -> SigningKey:
    return SigningKey("test-key-1")


@pytest.fixture(scope="session")
def other_key() -> SigningKey:
    """A key the IdP never publishes."""
    return SigningKey("test-key-1")


@pytest.fixture(scope="session")
def rotated_key() -> SigningKey:
    return SigningKey("test-key-2")


@pytest.fixture
def jwks(signing_key) -> Dict[str, Any]:
    return {"keys": [signing_key.jwk]}


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        AZURE_TENANT_ID=TEST_TENANT,
        AZURE_CLIENT_ID=TEST_CLIENT_ID,
        AZURE_CLIENT_SECRET="test-client-secret",
        AZURE_REDIRECT_URI="http://localhost/oauth/callback",
        AZURE_AUTHORITY_HOST=TEST_AUTHORITY_HOST,
        FLOW_SECRET_KEY="flow-secret-key-for-tests-0123456789abcdef",
        SESSION_COOKIE_SECURE=False,
        CODE_EXCHANGE_SHARED_SECRET=TEST_SHARED_SECRET,
        CODE_EXCHANGE_CONSUME_URL=TEST_CONSUME_URL,
        LOG_LEVEL="DEBUG",
    )


@pytest.fixture
def make_claims(settings) -> Callable[..., Dict[str, Any]]:
    """
    Build an ID token payload; keyword overrides replace defaults and a
    value of None removes the claim.
    """
    def _make(**overrides) -> Dict[str, Any]:
        now = int(time.time())
        claims = {
            "iss": settings.accepted_issuers[0],
            "aud": TEST_CLIENT_ID,
            "sub": "user-123",
            "exp": now + 3600,
            "iat": now,
            "nbf": now,
            "email": "jane.doe@example.com",
            "name": "Jane Doe",
            "preferred_username": "jane.doe@example.com",
        }
        claims.update(overrides)
        return {key: value for key, value in claims.items() if value is not None}

    return _make


@pytest.fixture
def mint_token(signing_key, make_claims) -> Callable[..., str]:
    """Sign a token with ``key`` (default: the published signing key)."""
    def _mint(key: Optional[SigningKey] = None, headers: Optional[Dict[str, Any]] = None, **claims) -> str:
        key = key or signing_key
        return jwt.encode(
            make_claims(**claims),
            key.private_key,
            algorithm="RS256",
            headers={"kid": key.kid, **(headers or {})},
        )

    return _mint


class FakeIdentityProvider:
    """
    Stand-in for the Entra ID JWKS and token endpoints.

    ``id_token`` is what the token endpoint returns; set ``token_status`` or
    ``token_body`` to simulate rejection, ``token_error`` to raise a transport
    error from the token endpoint, ``fail_jwks`` to simulate an outage.
    """

    def __init__(self, jwks: Dict[str, Any]):
        self.jwks = jwks
        self.jwks_calls = 0
        self.fail_jwks = False
        self.id_token: Optional[str] = None
        self.token_status = 200
        self.token_body: Any = None
        self.token_error: Optional[Exception] = None
        self.token_requests: List[Dict[str, str]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/discovery/v2.0/keys"):
            self.jwks_calls += 1
            if self.fail_jwks:
                return httpx.Response(503, json={"error": "unavailable"})
            return httpx.Response(200, json=self.jwks)

        if request.url.path.endswith("/oauth2/v2.0/token"):
            self.token_requests.append(dict(parse_qsl(request.content.decode())))
            if self.token_error is not None:
                raise self.token_error
            body = self.token_body
            if body is None:
                body = {"id_token": self.id_token, "token_type": "Bearer"}
            return httpx.Response(self.token_status, json=body)

        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def fake_idp(jwks) -> FakeIdentityProvider:
    return FakeIdentityProvider(jwks)


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
