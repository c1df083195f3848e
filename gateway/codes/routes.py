"""
One-time code exchange endpoints.

    GET  /auth/create-code        (session required) 302 to <consume URL>?code=...
    POST /internal/validate-code  (Authorization: Bearer <shared secret>)
                                  body {"code": "..."} -> {"email", "name", "sub"}

The validate endpoint reads the raw request so that the bearer secret is
checked before the body is even parsed.
"""

import logging
import secrets
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from gateway.auth.session import resolve_session
from gateway.config import Settings
from gateway.models import CodeRedemptionResponse

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def append_code(consume_url: str, code: str) -> str:
    separator = "&" if "?" in consume_url else "?"
    return f"{consume_url}{separator}{urlencode({'code': code})}"


def verify_bearer_secret(authorization: Optional[str], expected: Optional[str]) -> bool:
    """
    Constant-time check of an ``Authorization: Bearer <secret>`` header.

    Returns False when no secret is configured, so an unconfigured
    deployment rejects every request.
    """
    if not expected:
        return False
    if not authorization or not authorization.startswith("Bearer "):
        return False
    presented = authorization[len("Bearer "):].strip()
    return secrets.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


# =============================================================================
# Endpoints
# =============================================================================

async def create_code(request: Request):
    """Issue a one-time code for the current session and hand it to the backend."""
    gateway = request.app.state.gateway

    session = await resolve_session(request)
    if session is None:
        return _error(status.HTTP_401_UNAUTHORIZED, "Not authenticated")

    code = await gateway.codes.issue(session.claims)
    return RedirectResponse(
        url=append_code(gateway.settings.CODE_EXCHANGE_CONSUME_URL, code),
        status_code=302,
    )


async def validate_code(request: Request) -> JSONResponse:
    """
    Redeem a one-time code on behalf of a backend.

    Responses:
        200 {"email", "name", "sub"}
        400 {"error": "Code is required"}
        401 {"error": "Unauthorized"} for a missing or wrong bearer secret
        401 {"error": "Invalid or expired code"}
    """
    gateway = request.app.state.gateway
    settings = gateway.settings

    if not settings.CODE_EXCHANGE_SHARED_SECRET:
        logger.error(
            "Code redemption rejected: CODE_EXCHANGE_SHARED_SECRET is not configured",
            extra={"path": request.url.path},
        )
        return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

    if not verify_bearer_secret(request.headers.get("Authorization"), settings.CODE_EXCHANGE_SHARED_SECRET):
        logger.warning(
            "Code redemption rejected: invalid or missing bearer secret",
            extra={"path": request.url.path},
        )
        return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

    try:
        body = await request.json()
    except (ValueError, UnicodeDecodeError):
        return _error(status.HTTP_400_BAD_REQUEST, "Code is required")

    code = body.get("code") if isinstance(body, dict) else None
    if not isinstance(code, str) or not code.strip():
        return _error(status.HTTP_400_BAD_REQUEST, "Code is required")

    claims = await gateway.codes.redeem(code.strip())
    if claims is None:
        logger.warning("Code redemption failed: unknown, used or expired code")
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid or expired code")

    body = CodeRedemptionResponse(email=claims.email, name=claims.name, sub=claims.subject)
    return JSONResponse(content=body.model_dump())


def build_code_router(settings: Settings) -> APIRouter:
    router = APIRouter(tags=["code-exchange"])
    router.add_api_route(settings.CREATE_CODE_PATH, create_code, methods=["GET"])
    router.add_api_route(settings.VALIDATE_CODE_PATH, validate_code, methods=["POST"])
    return router
