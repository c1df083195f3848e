"""
Data Models Module

Pydantic models shared across the gateway:
- Identity models (validated claims extracted from ID tokens)
- Stored records (pending authorization requests, sessions, one-time codes)
- API response models (status, session, code redemption)

Stored records serialize to plain JSON-compatible dicts so that every store
backend (in-memory or Redis) can hold them.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Identity Models
# ============================================================================

class ValidatedClaims(BaseModel):
    """Identity extracted from a validated ID token. Never mutated."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    subject: str = Field(..., min_length=1, description="Token 'sub' claim")
    email: Optional[str] = Field(None, description="email -> preferred_username -> upn")
    name: Optional[str] = Field(None, description="name -> given_name")
    preferred_username: Optional[str] = Field(None, alias="preferredUsername")

    def to_user_dict(self) -> Dict[str, Optional[str]]:
        """Public JSON shape used by the status and session endpoints."""
        return {
            "subject": self.subject,
            "email": self.email,
            "name": self.name,
            "preferredUsername": self.preferred_username,
        }


# ============================================================================
# Stored Records
# ============================================================================

class PendingAuthorizationRequest(BaseModel):
    """Login in progress, waiting for the IdP callback."""

    model_config = ConfigDict(frozen=True)

    state: str
    nonce: str
    original_url: str = "/"
    is_popup: bool = False
    created_at: float


class Session(BaseModel):
    """Server-side session bound to an opaque cookie value."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    claims: ValidatedClaims
    expires_at: float
    id_token: Optional[str] = None


class OneTimeCode(BaseModel):
    """Opaque code redeemable once for the claims it maps to."""

    model_config = ConfigDict(frozen=True)

    code: str
    claims: ValidatedClaims
    expires_at: float


def dump_record(record: BaseModel) -> Dict[str, Any]:
    """Serialize a stored record to a JSON-compatible dict."""
    return record.model_dump(mode="json", by_alias=False)


# ============================================================================
# API Response Models
# ============================================================================

class AuthStatusResponse(BaseModel):
    authenticated: bool
    user: Optional[Dict[str, Optional[str]]] = None


class CodeRedemptionResponse(BaseModel):
    """Minimal claims handed to the backend that redeemed a code."""

    email: Optional[str] = None
    name: Optional[str] = None
    sub: str
