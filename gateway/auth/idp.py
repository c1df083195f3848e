"""
Identity provider client for the confidential-client Authorization-Code flow.

Builds authorize and logout URLs and performs the server-side code exchange
against the Entra ID v2.0 token endpoint.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from gateway.config import Settings
from gateway.errors import ExchangeError

logger = logging.getLogger(__name__)


class IdentityProviderClient:
    """Thin wrapper over the IdP's OAuth2 endpoints."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self._client = http_client

    def build_authorization_url(self, state: str, nonce: str) -> str:
        params = {
            "client_id": self.settings.AZURE_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": self.settings.AZURE_REDIRECT_URI,
            "response_mode": "query",
            "scope": self.settings.OAUTH_SCOPE,
            "state": state,
            "nonce": nonce,
        }
        return f"{self.settings.authorize_endpoint}?{urlencode(params)}"

    def build_logout_url(self, post_logout_redirect_uri: Optional[str] = None) -> str:
        if not post_logout_redirect_uri:
            return self.settings.logout_endpoint
        query = urlencode({"post_logout_redirect_uri": post_logout_redirect_uri})
        return f"{self.settings.logout_endpoint}?{query}"

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """
        Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback

        Returns:
            Token response dictionary; always contains ``id_token``

        Raises:
            ExchangeError: On timeout, transport failure, non-200 response
                           or a response without an ID token
        """
        payload = {
            "client_id": self.settings.AZURE_CLIENT_ID,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.AZURE_REDIRECT_URI,
            "scope": self.settings.OAUTH_SCOPE,
        }
        if self.settings.AZURE_CLIENT_SECRET:
            payload["client_secret"] = self.settings.AZURE_CLIENT_SECRET

        try:
            response = await self._client.post(
                self.settings.token_endpoint,
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            )
        except httpx.TimeoutException:
            raise ExchangeError("Token endpoint timed out", stage="exchange")
        except httpx.HTTPError as e:
            raise ExchangeError(f"Token endpoint unreachable: {type(e).__name__}", stage="exchange")

        if response.status_code != 200:
            error_code = None
            if response.headers.get("content-type", "").startswith("application/json"):
                try:
                    body = response.json()
                except ValueError:
                    body = None
                if isinstance(body, dict):
                    error_code = body.get("error")
            raise ExchangeError(
                f"Token exchange rejected with HTTP {response.status_code} ({error_code or 'no error code'})",
                stage="exchange",
            )

        try:
            token_data = response.json()
        except ValueError:
            raise ExchangeError("Token response is not valid JSON", stage="exchange")

        if not isinstance(token_data, dict) or not token_data.get("id_token"):
            raise ExchangeError("Token response missing id_token", stage="exchange")

        return token_data
