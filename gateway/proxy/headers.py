"""
Identity header contract for forwarded requests.

Downstream services trust these headers, so the gateway always strips any
inbound copies before applying its own. Nothing here validates tokens; the
values come from claims the RequestAuthorizer already attached to the
request.
"""

from typing import Dict, Iterable, List, MutableMapping, Optional, Tuple

from gateway.models import ValidatedClaims

HEADER_USER_NAME = "X-Auth-User-Name"
HEADER_USER_EMAIL = "X-Auth-User-Email"
HEADER_USER_SUB = "X-Auth-User-Sub"
HEADER_ID_TOKEN = "X-Auth-ID-Token"

IDENTITY_HEADER_PREFIX = "x-auth-"


def claims_to_headers(
    claims: ValidatedClaims,
    id_token: Optional[str] = None,
    include_id_token: bool = False,
) -> Dict[str, str]:
    """
    Map validated claims to identity headers.

    Headers for absent claims are omitted rather than sent empty.

    Example:
        >>> claims_to_headers(ValidatedClaims(subject="u1", email="a@b.c"))
        {'X-Auth-User-Sub': 'u1', 'X-Auth-User-Email': 'a@b.c'}
    """
    headers = {HEADER_USER_SUB: claims.subject}
    if claims.email:
        headers[HEADER_USER_EMAIL] = claims.email
    if claims.name:
        headers[HEADER_USER_NAME] = claims.name
    if include_id_token and id_token:
        headers[HEADER_ID_TOKEN] = id_token
    return headers


def strip_identity_headers(headers: Iterable[Tuple[bytes, bytes]]) -> List[Tuple[bytes, bytes]]:
    """Drop every inbound X-Auth-* header from raw ASGI headers."""
    return [
        (name, value)
        for name, value in headers
        if not name.decode("latin-1").lower().startswith(IDENTITY_HEADER_PREFIX)
    ]


def apply_identity_headers(
    scope: MutableMapping,
    identity: Optional[Dict[str, str]] = None,
) -> None:
    """
    Rewrite ``scope["headers"]`` in place: strip inbound identity headers
    and append ``identity`` (if any).
    """
    headers = strip_identity_headers(scope.get("headers", []))
    for name, value in (identity or {}).items():
        headers.append((name.lower().encode("latin-1"), value.encode("utf-8")))
    scope["headers"] = headers
