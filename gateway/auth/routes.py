"""
Authentication routes for the OIDC flow and direct-token sessions.

Endpoints (paths are configurable, defaults shown):
    GET      /oauth/login            Start the Authorization-Code flow
    GET      /oauth/callback         IdP redirect target
    GET|POST /oauth/logout           Destroy the session (optionally at the IdP too)
    GET      /oauth/status           Current authentication status
    GET      /oauth/popup            Popup-flow completion page
    POST     /oauth/session/create   Create a session from a client-obtained ID token
    POST     /oauth/session/destroy  Destroy the current session
    GET      /oauth/session/info     Current session details
"""

import html
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from gateway.auth.flow import FLOW_ID_KEY, safe_redirect_target
from gateway.auth.session import (
    clear_session_cookie,
    new_token,
    resolve_session,
    set_session_cookie,
)
from gateway.config import Settings
from gateway.errors import GatewayAuthError, TokenValidationError
from gateway.models import AuthStatusResponse, ValidatedClaims

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _user_summary(claims: ValidatedClaims) -> Dict[str, str]:
    user = {"subject": claims.subject}
    if claims.email is not None:
        user["email"] = claims.email
    if claims.name is not None:
        user["name"] = claims.name
    return user


def _root_path(request: Request) -> str:
    return request.scope.get("root_path", "").rstrip("/")


# =============================================================================
# Browser Flow Endpoints
# =============================================================================

async def login(
    request: Request,
    orig: Optional[str] = Query(None, description="URL to return to after sign-in"),
    popup: Optional[str] = Query(None, description="'true' for the popup flow"),
):
    """
    Initiate OIDC login by redirecting to Microsoft Entra ID.

    The pending request is keyed by a random flow id kept in the signed
    flow cookie, so a callback is only accepted from the browser that
    started the login.
    """
    gateway = request.app.state.gateway
    settings = gateway.settings

    original_url = safe_redirect_target(orig, settings.allowed_redirect_hosts_list)
    is_popup = (popup or "").lower() == "true"

    flow_id = request.session.get(FLOW_ID_KEY)
    if not flow_id:
        flow_id = new_token()
        request.session[FLOW_ID_KEY] = flow_id

    authorization_url = await gateway.initiator.begin(flow_id, original_url, is_popup)
    return RedirectResponse(url=authorization_url, status_code=302)


async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from Azure AD"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None, description="Error description"),
):
    """
    Handle the IdP redirect.

    Success sets the session cookie and redirects to the original URL (or
    the popup completion page). Any failure renders a generic 401 page;
    the specific reason is only logged.
    """
    gateway = request.app.state.gateway
    settings = gateway.settings
    root_path = _root_path(request)

    try:
        result = await gateway.callbacks.process(
            flow_id=request.session.get(FLOW_ID_KEY),
            code=code,
            state=state,
            error=error,
            error_description=error_description,
            root_path=root_path,
        )
    except GatewayAuthError as e:
        return _render_error_page(
            title="Sign-in Failed",
            message=e.public_message,
            retry_url=f"{root_path}{settings.LOGIN_PATH}",
            status_code=401,
        )

    # A fresh login always replaces whatever session the browser had
    await gateway.sessions.destroy(request.cookies.get(settings.SESSION_COOKIE_NAME))

    response = RedirectResponse(url=result.redirect_url, status_code=302)
    set_session_cookie(response, result.session_id, settings)
    return response


async def logout(
    request: Request,
    redirect: Optional[str] = Query(None, description="Where to go after logout"),
    azure_logout: Optional[str] = Query(None, description="'true' to also sign out at the IdP"),
):
    gateway = request.app.state.gateway
    settings = gateway.settings

    session = await resolve_session(request)
    await gateway.sessions.destroy(request.cookies.get(settings.SESSION_COOKIE_NAME))
    request.session.pop(FLOW_ID_KEY, None)

    target = safe_redirect_target(redirect, settings.allowed_redirect_hosts_list)
    if (azure_logout or "").lower() == "true":
        if target.startswith("/"):
            target = f"{settings.public_origin}{target}"
        target = gateway.idp.build_logout_url(target)

    logger.info(
        "User logged out",
        extra={
            "user_id": session.claims.subject if session else None,
            "idp_logout": (azure_logout or "").lower() == "true",
        },
    )

    response = RedirectResponse(url=target, status_code=302)
    clear_session_cookie(response, settings)
    return response


async def auth_status(request: Request) -> JSONResponse:
    session = await resolve_session(request)
    if session is None:
        body = AuthStatusResponse(authenticated=False, user=None)
    else:
        body = AuthStatusResponse(authenticated=True, user=session.claims.to_user_dict())
    return JSONResponse(content=body.model_dump(), headers=NO_CACHE_HEADERS)


async def popup_complete(request: Request) -> HTMLResponse:
    return _render_popup_page()


# =============================================================================
# Direct-token Session Endpoints
# =============================================================================

def _session_error(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"success": False, "error": "Token validation failed", "message": message},
    )


async def create_session(request: Request) -> JSONResponse:
    """
    Create a session from an ID token the browser obtained itself (PKCE).

    Request body:
        {"id_token": "<JWT>"}

    Responses:
        200 {"success": true, "user": {...}} with the session cookie set
        401 {"success": false, "error": "Token validation failed", "message": ...}
    """
    gateway = request.app.state.gateway
    settings = gateway.settings

    try:
        body = await request.json()
    except (ValueError, UnicodeDecodeError):
        return _session_error("Invalid request body format")

    id_token = body.get("id_token") if isinstance(body, dict) else None
    if not isinstance(id_token, str) or not id_token.strip():
        return _session_error("id_token is required")

    try:
        claims = await gateway.direct_validator.validate(id_token)
    except TokenValidationError as e:
        logger.warning(
            f"Direct token rejected: {e}",
            extra={"error_type": type(e).__name__, "failed_at": e.stage},
        )
        return _session_error(e.public_message)

    await gateway.sessions.destroy(request.cookies.get(settings.SESSION_COOKIE_NAME))
    session_id = await gateway.sessions.create(claims, id_token=id_token)

    response = JSONResponse(content={"success": True, "user": _user_summary(claims)})
    set_session_cookie(response, session_id, settings)
    return response


async def destroy_session(request: Request) -> JSONResponse:
    gateway = request.app.state.gateway
    await gateway.sessions.destroy(request.cookies.get(gateway.settings.SESSION_COOKIE_NAME))

    response = JSONResponse(content={"success": True, "message": "Session destroyed"})
    clear_session_cookie(response, gateway.settings)
    return response


async def session_info(request: Request) -> JSONResponse:
    session = await resolve_session(request)
    content: Dict[str, Any] = {"authenticated": session is not None}
    if session is not None:
        content["user"] = _user_summary(session.claims)
    return JSONResponse(content=content, headers=NO_CACHE_HEADERS)


# =============================================================================
# Router Factory
# =============================================================================

def build_auth_router(settings: Settings) -> APIRouter:
    """Build the authentication router on the configured paths."""
    router = APIRouter(tags=["authentication"])

    router.add_api_route(settings.LOGIN_PATH, login, methods=["GET"], response_class=RedirectResponse)
    router.add_api_route(settings.CALLBACK_PATH, callback, methods=["GET"])
    router.add_api_route(settings.LOGOUT_PATH, logout, methods=["GET", "POST"])
    router.add_api_route(settings.STATUS_PATH, auth_status, methods=["GET"])
    router.add_api_route(settings.POPUP_COMPLETE_PATH, popup_complete, methods=["GET"], response_class=HTMLResponse)
    router.add_api_route(settings.SESSION_CREATE_PATH, create_session, methods=["POST"])
    router.add_api_route(settings.SESSION_DESTROY_PATH, destroy_session, methods=["POST"])
    router.add_api_route(settings.SESSION_INFO_PATH, session_info, methods=["GET"])

    return router


# =============================================================================
# HTML Response Templates
# =============================================================================

_PAGE_STYLE = """
            * { margin: 0; padding: 0; box-sizing: border-box; }
            body {
                font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
                background: #f3f4f6;
                min-height: 100vh;
                display: flex;
                align-items: center;
                justify-content: center;
                padding: 20px;
            }
            .container {
                background: white;
                border-radius: 12px;
                padding: 40px;
                max-width: 480px;
                width: 100%;
                box-shadow: 0 10px 40px rgba(0,0,0,0.12);
                text-align: center;
            }
            h1 { color: #1f2937; font-size: 24px; margin-bottom: 16px; }
            .message { color: #6b7280; font-size: 16px; line-height: 1.6; margin-bottom: 32px; }
            .button {
                display: inline-block;
                background: #2563eb;
                color: white;
                padding: 12px 28px;
                border-radius: 8px;
                text-decoration: none;
                font-weight: 600;
            }
"""


def _render_error_page(
    title: str,
    message: str,
    retry_url: Optional[str] = None,
    status_code: int = 401,
) -> HTMLResponse:
    """
    Render the generic sign-in error page.

    Args:
        title: Error title
        message: Coarse, user-safe message (never the internal reason)
        retry_url: Login URL for the retry button; omitted when None
        status_code: HTTP status code
    """
    retry_button = (
        f'<a href="{html.escape(retry_url, quote=True)}" class="button">Try Again</a>'
        if retry_url else ""
    )

    html_content = f"""
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>{html.escape(title)}</title>
        <style>{_PAGE_STYLE}</style>
    </head>
    <body>
        <div class="container">
            <h1>{html.escape(title)}</h1>
            <p class="message">{html.escape(message)}</p>
            {retry_button}
        </div>
    </body>
    </html>
    """

    return HTMLResponse(content=html_content, status_code=status_code, headers=NO_CACHE_HEADERS)


def _render_popup_page() -> HTMLResponse:
    """Page loaded in the popup after sign-in; notifies the opener and closes."""
    message = json.dumps({"type": "gateway-auth-complete"})

    html_content = f"""
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8">
        <title>Signed In</title>
        <style>{_PAGE_STYLE}</style>
        <script>
            window.onload = function() {{
                if (window.opener && !window.opener.closed) {{
                    window.opener.postMessage({message}, window.location.origin);
                    window.close();
                }}
            }};
        </script>
    </head>
    <body>
        <div class="container">
            <h1>Signed In</h1>
            <p class="message">You can close this window and return to the application.</p>
        </div>
    </body>
    </html>
    """

    return HTMLResponse(content=html_content, headers=NO_CACHE_HEADERS)
