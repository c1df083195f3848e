"""
One-time Code Exchange Package

Hands an authenticated user's identity to a backend in another trust domain
that cannot terminate OAuth2 itself: the browser carries an opaque code, the
backend redeems it server-to-server with a shared bearer secret.
"""

from .routes import build_code_router
from .store import CodeExchangeStore

__all__ = ["build_code_router", "CodeExchangeStore"]
