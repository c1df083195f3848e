"""
Authentication Package

This package handles end-user authentication against Microsoft Entra ID
using the OpenID Connect Authorization-Code flow.

Key responsibilities:
- Login initiation and callback handling (state, nonce, code exchange)
- ID token validation against a cached JWKS
- Server-side sessions bound to an HttpOnly cookie
- Direct-token sessions for browsers that ran PKCE themselves

Modules:
- keys: JWKS fetching and caching (KeySetCache)
- validation: ID token signature and claim validation (TokenValidator)
- idp: Authorize/logout URLs and the token endpoint exchange
- flow: AuthorizationRequestInitiator and CallbackProcessor
- session: SessionStore and cookie helpers
- routes: Public authentication endpoints (/oauth/login, /oauth/callback, etc.)

The authentication flow:
1. Browser hits a protected path and is redirected to /oauth/login
2. Gateway stores a pending request and redirects to Microsoft Entra ID
3. IdP redirects back to /oauth/callback with code and state
4. Gateway checks state, exchanges the code, validates the ID token
5. Gateway creates a session and redirects to the original URL
"""

from .routes import build_auth_router

__all__ = [
    "build_auth_router",
]
