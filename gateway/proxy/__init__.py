"""
Proxy Package
=============

Enforces sessions on protected paths and defines the identity headers the
reverse proxy forwards to downstream services.

Main Components:
----------------
- authorizer.py: RequestAuthorizer middleware (session check, login redirect)
- headers.py: X-Auth-* header contract and inbound header stripping

Security Features:
------------------
- Inbound X-Auth-* headers are always stripped
- Raw ID token forwarded only when INCLUDE_ID_TOKEN_HEADER is set
"""

from .authorizer import RequestAuthorizer
from .headers import claims_to_headers

__all__ = ["RequestAuthorizer", "claims_to_headers"]
