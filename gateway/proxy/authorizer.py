"""
Session-enforcing middleware for protected paths.

For each request outside the excluded prefixes and static-asset suffixes,
the session cookie must resolve to a live session; otherwise the browser is
redirected to the login entry point with ``orig`` set to the path and
query it asked for. Authenticated requests get ``request.state.claims`` and
``request.state.auth_session`` plus the identity headers for downstream
handlers.
"""

import logging
from typing import Iterable
from urllib.parse import quote

from fastapi import Request
from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from gateway.auth.session import resolve_session
from gateway.proxy.headers import apply_identity_headers, claims_to_headers

logger = logging.getLogger(__name__)


def _matches_prefix(path: str, prefix: str) -> bool:
    # "/health" covers "/health/live" but not "/healthcare"
    if prefix.endswith("/"):
        return path.startswith(prefix)
    return path == prefix or path.startswith(prefix + "/")


def is_excluded_path(path: str, excluded_prefixes: Iterable[str], static_suffixes: Iterable[str]) -> bool:
    """True when ``path`` skips the session check."""
    if any(_matches_prefix(path, prefix) for prefix in excluded_prefixes):
        return True
    lowered = path.lower()
    return any(lowered.endswith(suffix) for suffix in static_suffixes)


def _app_path(request: Request) -> str:
    path = request.scope.get("path", "/")
    root_path = request.scope.get("root_path", "").rstrip("/")
    if root_path and path.startswith(root_path):
        path = path[len(root_path):] or "/"
    return path


class RequestAuthorizer(BaseHTTPMiddleware):
    """Redirects unauthenticated browsers to login; attaches identity otherwise."""

    async def dispatch(self, request: Request, call_next):
        settings = request.app.state.gateway.settings
        path = _app_path(request)

        if is_excluded_path(path, settings.excluded_prefixes_list, settings.static_suffixes_list):
            # Identity headers are never accepted from clients
            apply_identity_headers(request.scope)
            return await call_next(request)

        session = await resolve_session(request)
        if session is None:
            original = request.url.path
            if request.url.query:
                original = f"{original}?{request.url.query}"
            root_path = request.scope.get("root_path", "").rstrip("/")
            login_url = f"{root_path}{settings.LOGIN_PATH}?orig={quote(original, safe='')}"

            logger.info("Unauthenticated request redirected to login", extra={"path": path})
            return RedirectResponse(url=login_url, status_code=302)

        request.state.auth_session = session
        request.state.claims = session.claims
        apply_identity_headers(
            request.scope,
            claims_to_headers(
                session.claims,
                id_token=session.id_token,
                include_id_token=settings.INCLUDE_ID_TOKEN_HEADER,
            ),
        )
        return await call_next(request)
