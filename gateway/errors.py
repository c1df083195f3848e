"""
Error taxonomy for the authentication gateway.

Every error carries a coarse ``category`` and a ``public_message`` that is
safe to show to an end user. The exception message itself holds the internal
detail and is only ever written to the server log.
"""

from typing import Optional


class GatewayAuthError(Exception):
    """Base exception for authentication failures."""

    category = "authentication_error"
    public_message = "Authentication could not be completed. Please try again."

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


# =============================================================================
# Protocol errors (CSRF / expired-flow class)
# =============================================================================

class ProtocolError(GatewayAuthError):
    """Missing or invalid code, state or nonce."""

    category = "protocol_error"
    public_message = "Your sign-in request could not be verified. Please start again."


class IdentityProviderError(ProtocolError):
    """The IdP redirected back with an ``error`` parameter."""

    public_message = "The identity provider reported a problem signing you in."


class MissingParameterError(ProtocolError):
    pass


class FlowExpiredError(ProtocolError):
    """No pending authorization request exists for this browser."""

    public_message = "Your sign-in session expired. Please try again."


class StateMismatchError(ProtocolError):
    pass


class NonceMismatchError(ProtocolError):
    pass


# =============================================================================
# Token exchange errors
# =============================================================================

class ExchangeError(GatewayAuthError):
    """The IdP token endpoint was unreachable or rejected the code."""

    category = "exchange_error"
    public_message = "We could not complete sign-in with the identity provider."


# =============================================================================
# Token validation errors
# =============================================================================

class TokenValidationError(GatewayAuthError):
    """An ID token failed signature or claim validation."""

    category = "validation_error"
    public_message = "Your identity could not be verified."


class InvalidSignatureError(TokenValidationError):
    pass


class InvalidIssuerError(TokenValidationError):
    pass


class InvalidAudienceError(TokenValidationError):
    pass


class TokenExpiredError(TokenValidationError):
    pass


class TokenNotYetValidError(TokenValidationError):
    pass


class MissingClaimError(TokenValidationError):
    pass


class KeySetUnavailableError(TokenValidationError):
    """No signing keys could be obtained and none are cached."""


# =============================================================================
# Configuration errors
# =============================================================================

class ConfigurationError(GatewayAuthError):
    """Required configuration is missing; the affected feature fails closed."""

    category = "configuration_error"
    public_message = "The service is not configured to accept this request."


__all__ = [
    "GatewayAuthError",
    "ProtocolError",
    "IdentityProviderError",
    "MissingParameterError",
    "FlowExpiredError",
    "StateMismatchError",
    "NonceMismatchError",
    "ExchangeError",
    "TokenValidationError",
    "InvalidSignatureError",
    "InvalidIssuerError",
    "InvalidAudienceError",
    "TokenExpiredError",
    "TokenNotYetValidError",
    "MissingClaimError",
    "KeySetUnavailableError",
    "ConfigurationError",
]
