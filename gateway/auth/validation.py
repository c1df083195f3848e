"""
ID token validation for Microsoft Entra ID (Azure AD).

This module handles:
- Verifying RS256 signatures against keys from a KeySetCache
- Validating issuer (v2.0 or legacy v1.0), audience, expiry and not-before
- Optional nonce verification for the server-initiated flow
- Extracting ValidatedClaims through the claim fallback chains

Each failure raises a specific TokenValidationError subclass so callers can
log the reason while showing users only the coarse category.
"""

import logging
import secrets
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from jose import JWTError, jwk, jwt
from jose.exceptions import JWKError

from gateway.auth.keys import KeySetCache
from gateway.errors import (
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    MissingClaimError,
    NonceMismatchError,
    TokenExpiredError,
    TokenNotYetValidError,
)
from gateway.models import ValidatedClaims

logger = logging.getLogger(__name__)


# =============================================================================
# Claim Fallback Chains
# =============================================================================

EMAIL_CLAIMS = ("email", "preferred_username", "upn")
NAME_CLAIMS = ("name", "given_name")
REQUIRED_CLAIMS = ("sub", "iss", "aud", "exp", "iat")

ALGORITHM = "RS256"

# Signature only; every claim check below is done explicitly
_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_aud": False,
    "verify_iat": False,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iss": False,
    "verify_sub": False,
    "verify_jti": False,
    "verify_at_hash": False,
}


def first_claim(claims: Dict[str, Any], names: Iterable[str]) -> Optional[str]:
    """Return the first non-empty string claim among ``names``."""
    for name in names:
        value = claims.get(name)
        if isinstance(value, str) and value.strip():
            return value
    return None


def extract_claims(claims: Dict[str, Any]) -> ValidatedClaims:
    """
    Build ValidatedClaims from a verified token payload.

    Raises:
        MissingClaimError: If ``sub`` is absent or empty
    """
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise MissingClaimError("Token has no usable 'sub' claim", stage="claims")

    return ValidatedClaims(
        subject=subject,
        email=first_claim(claims, EMAIL_CLAIMS),
        name=first_claim(claims, NAME_CLAIMS),
        preferred_username=first_claim(claims, ("preferred_username",)),
    )


def _audiences(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [item for item in value if isinstance(item, str)]
    return []


def _numeric_claim(claims: Dict[str, Any], name: str) -> float:
    value = claims.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MissingClaimError(f"Claim '{name}' is not a numeric date", stage="claims")
    return float(value)


# =============================================================================
# Validator
# =============================================================================

class TokenValidator:
    """
    Validates ID tokens issued for one client id.

    Example:
        >>> validator = TokenValidator(cache, client_id="abc", issuers=[...])
        >>> claims = await validator.validate(id_token, expected_nonce=nonce)
        >>> claims.subject
        'user-object-id'
    """

    def __init__(
        self,
        key_cache: KeySetCache,
        client_id: str,
        issuers: Sequence[str],
        clock_skew_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.key_cache = key_cache
        self.client_id = client_id
        self.issuers = tuple(issuers)
        self.clock_skew_seconds = clock_skew_seconds
        self._clock = clock

    async def validate(self, token: str, expected_nonce: Optional[str] = None) -> ValidatedClaims:
        """
        Verify ``token`` and return its identity.

        Args:
            token: Compact-serialized JWT
            expected_nonce: Nonce sent with the authorization request; when
                            given, the token's ``nonce`` claim must match it

        Raises:
            TokenValidationError: Signature, issuer, audience, expiry,
                                  not-before or missing-claim failure
            NonceMismatchError: If ``expected_nonce`` does not match
        """
        payload = await self._verify_signature(token)

        for name in REQUIRED_CLAIMS:
            if payload.get(name) in (None, ""):
                raise MissingClaimError(f"Token missing required claim '{name}'", stage="claims")

        issuer = payload.get("iss")
        if issuer not in self.issuers:
            raise InvalidIssuerError(f"Unexpected issuer: {issuer}", stage="issuer")

        if self.client_id not in _audiences(payload.get("aud")):
            raise InvalidAudienceError("Token audience does not include this client", stage="audience")

        now = self._clock()
        skew = self.clock_skew_seconds

        exp = _numeric_claim(payload, "exp")
        if now > exp + skew:
            raise TokenExpiredError(f"Token expired {int(now - exp)}s ago", stage="expiry")

        if payload.get("nbf") is not None:
            nbf = _numeric_claim(payload, "nbf")
            if now + skew < nbf:
                raise TokenNotYetValidError("Token used before its nbf time", stage="expiry")

        if expected_nonce is not None:
            token_nonce = payload.get("nonce")
            if not isinstance(token_nonce, str) or not secrets.compare_digest(
                token_nonce.encode(), expected_nonce.encode()
            ):
                raise NonceMismatchError("ID token nonce does not match the login request", stage="nonce")

        return extract_claims(payload)

    async def _verify_signature(self, token: str) -> Dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise InvalidSignatureError(f"Malformed token header: {e}", stage="signature")

        if header.get("alg") != ALGORITHM:
            raise InvalidSignatureError(f"Unsupported token algorithm: {header.get('alg')}", stage="signature")

        kid = header.get("kid")
        if not kid:
            raise InvalidSignatureError("Token header missing 'kid' (Key ID)", stage="signature")

        signing_key = await self.key_cache.get_key(kid)
        if signing_key is None:
            raise InvalidSignatureError(
                "Unable to find matching signing key in JWKS",
                stage="signature",
            )

        try:
            public_key = jwk.construct(signing_key, algorithm=ALGORITHM)
            pem = public_key.to_pem().decode("utf-8")
        except (JWKError, ValueError, TypeError) as e:
            raise InvalidSignatureError(f"Failed to construct public key from JWK: {e}", stage="signature")

        try:
            return jwt.decode(token, pem, algorithms=[ALGORITHM], options=_DECODE_OPTIONS)
        except JWTError as e:
            raise InvalidSignatureError(f"Token verification failed: {e}", stage="signature")
