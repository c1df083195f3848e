"""
Configuration module for the authentication gateway.

This module uses Pydantic Settings to load and validate environment variables
for Azure AD (OIDC) authentication, session cookies, the one-time code
exchange, store backends and endpoint paths.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gateway.errors import ConfigurationError


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Defaults are production-safe: cookies are Secure, the code redemption
    endpoint rejects everything until a shared secret is configured.
    """

    # =========================================================================
    # Azure AD / Entra ID Configuration (OIDC Authentication)
    # =========================================================================

    AZURE_TENANT_ID: str = Field(
        ...,
        description="Azure AD tenant ID used to build issuer and endpoint URLs",
        min_length=1,
    )

    AZURE_CLIENT_ID: str = Field(
        ...,
        description="Azure AD application (client) ID; the expected token audience",
        min_length=1,
    )

    AZURE_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret for the server-side code exchange (confidential client)",
    )

    AZURE_REDIRECT_URI: str = Field(
        ...,
        description="Callback URI registered in Azure AD (e.g. https://gw.example.com/oauth/callback)",
        min_length=1,
    )

    AZURE_AUTHORITY_HOST: str = Field(
        default="https://login.microsoftonline.com",
        description="Authority host; override for sovereign clouds or test IdPs",
    )

    OAUTH_SCOPE: str = Field(
        default="openid profile email",
        description="Space-separated scopes requested at the authorize endpoint",
    )

    ACCEPT_LEGACY_ISSUER: bool = Field(
        default=True,
        description="Also accept v1.0 (sts.windows.net) issuer strings",
    )

    # =========================================================================
    # Token Validation
    # =========================================================================

    CLOCK_SKEW_SECONDS: int = Field(
        default=300,
        description="Tolerance applied to exp and nbf in both directions",
        ge=0,
        le=900,
    )

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for token exchange and JWKS fetches",
        gt=0,
        le=60,
    )

    JWKS_CACHE_SECONDS_DIRECT: int = Field(
        default=3600,
        description="JWKS cache TTL for client-pushed ID tokens",
        ge=60,
        le=86400,
    )

    JWKS_CACHE_SECONDS_EXCHANGE: int = Field(
        default=86400,
        description="JWKS cache TTL for ID tokens received from the token endpoint",
        ge=60,
        le=86400,
    )

    JWKS_MIN_REFRESH_INTERVAL_SECONDS: float = Field(
        default=60.0,
        description="Minimum gap between forced JWKS refreshes triggered by unknown key ids",
        ge=0,
    )

    # =========================================================================
    # Session Configuration
    # =========================================================================

    SESSION_TTL_SECONDS: int = Field(
        default=8 * 60 * 60,
        description="Absolute session lifetime in seconds",
        ge=60,
    )

    SESSION_COOKIE_NAME: str = Field(default="GATEWAY_SESSION")

    SESSION_COOKIE_SECURE: bool = Field(
        default=True,
        description="Set the Secure cookie flag; only disable for local development",
    )

    GATEWAY_MOUNT_PATH: str = Field(
        default="/",
        description="Path the gateway is mounted at; used as the cookie path",
    )

    FLOW_COOKIE_NAME: str = Field(default="gateway_flow")

    FLOW_SECRET_KEY: str = Field(
        ...,
        description="Key used to sign the login-flow cookie",
        min_length=32,
    )

    PENDING_REQUEST_TTL_SECONDS: int = Field(
        default=600,
        description="How long a login may take between redirect and callback",
        ge=30,
    )

    # =========================================================================
    # One-time Code Exchange
    # =========================================================================

    CODE_TTL_SECONDS: int = Field(default=300, ge=10, le=3600)

    CODE_EXCHANGE_SHARED_SECRET: Optional[str] = Field(
        None,
        description="Bearer secret the backend presents when redeeming codes",
    )

    CODE_EXCHANGE_CONSUME_URL: str = Field(
        default="https://app.example.org/auth/consume",
        description="Backend URL the browser is sent to with ?code=...",
    )

    # =========================================================================
    # Endpoint Paths
    # =========================================================================

    LOGIN_PATH: str = "/oauth/login"
    CALLBACK_PATH: str = "/oauth/callback"
    LOGOUT_PATH: str = "/oauth/logout"
    STATUS_PATH: str = "/oauth/status"
    POPUP_COMPLETE_PATH: str = "/oauth/popup"
    SESSION_CREATE_PATH: str = "/oauth/session/create"
    SESSION_DESTROY_PATH: str = "/oauth/session/destroy"
    SESSION_INFO_PATH: str = "/oauth/session/info"
    CREATE_CODE_PATH: str = "/auth/create-code"
    VALIDATE_CODE_PATH: str = "/internal/validate-code"

    # =========================================================================
    # Request Authorization
    # =========================================================================

    AUTH_EXCLUDED_PREFIXES: str = Field(
        default="/oauth/,/internal/,/health,/docs,/openapi.json",
        description="Comma-separated path prefixes that skip the session check",
    )

    STATIC_ASSET_SUFFIXES: str = Field(
        default=".css,.js,.png,.jpg,.jpeg,.gif,.ico,.svg,.woff,.woff2,.ttf,.eot,.map",
        description="Comma-separated file suffixes that skip the session check",
    )

    INCLUDE_ID_TOKEN_HEADER: bool = Field(
        default=False,
        description="Forward the raw ID token downstream as X-Auth-ID-Token",
    )

    ALLOWED_REDIRECT_HOSTS: Optional[str] = Field(
        None,
        description="Comma-separated hosts allowed as absolute post-login/logout targets",
    )

    # =========================================================================
    # Store Backend
    # =========================================================================

    STORE_BACKEND: str = Field(default="memory", description="'memory' or 'redis'")

    REDIS_URL: Optional[str] = Field(None, description="redis://host:6379/0")

    STORE_SWEEP_INTERVAL_SECONDS: float = Field(default=60.0, gt=0)

    # =========================================================================
    # Server / Observability
    # =========================================================================

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated CORS origins for the direct-token endpoints",
    )

    LOG_LEVEL: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def azure_authority(self) -> str:
        """Full authority URL for the tenant's OIDC endpoints."""
        return f"{self.AZURE_AUTHORITY_HOST.rstrip('/')}/{self.AZURE_TENANT_ID}"

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.azure_authority}/oauth2/v2.0/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.azure_authority}/oauth2/v2.0/token"

    @property
    def logout_endpoint(self) -> str:
        return f"{self.azure_authority}/oauth2/v2.0/logout"

    @property
    def jwks_uri(self) -> str:
        return f"{self.azure_authority}/discovery/v2.0/keys"

    @property
    def accepted_issuers(self) -> List[str]:
        """
        Issuer strings accepted on ID tokens.

        The v2.0 issuer is always accepted; the v1.0 form is added when
        ACCEPT_LEGACY_ISSUER is set.
        """
        issuers = [f"{self.azure_authority}/v2.0"]
        if self.ACCEPT_LEGACY_ISSUER:
            issuers.append(f"https://sts.windows.net/{self.AZURE_TENANT_ID}/")
        return issuers

    @property
    def excluded_prefixes_list(self) -> List[str]:
        return _split_csv(self.AUTH_EXCLUDED_PREFIXES)

    @property
    def static_suffixes_list(self) -> List[str]:
        return [suffix.lower() for suffix in _split_csv(self.STATIC_ASSET_SUFFIXES)]

    @property
    def allowed_redirect_hosts_list(self) -> List[str]:
        return [host.lower() for host in _split_csv(self.ALLOWED_REDIRECT_HOSTS)]

    @property
    def allowed_origins_list(self) -> List[str]:
        return _split_csv(self.ALLOWED_ORIGINS)

    @property
    def cookie_path(self) -> str:
        return self.GATEWAY_MOUNT_PATH or "/"

    @property
    def public_origin(self) -> str:
        """Externally visible scheme and host, taken from the registered redirect URI."""
        parsed = urlparse(self.AZURE_REDIRECT_URI)
        return f"{parsed.scheme}://{parsed.netloc}"

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("GATEWAY_MOUNT_PATH")
    @classmethod
    def validate_mount_path(cls, v: str) -> str:
        """Normalize the mount path to a leading slash and no trailing slash."""
        v = v.strip() or "/"
        if not v.startswith("/"):
            v = "/" + v
        if len(v) > 1:
            v = v.rstrip("/")
        return v

    @field_validator("STORE_BACKEND")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("memory", "redis"):
            raise ValueError(f"STORE_BACKEND must be 'memory' or 'redis', got: {v}")
        return v

    @field_validator(
        "LOGIN_PATH",
        "CALLBACK_PATH",
        "LOGOUT_PATH",
        "STATUS_PATH",
        "POPUP_COMPLETE_PATH",
        "SESSION_CREATE_PATH",
        "SESSION_DESTROY_PATH",
        "SESSION_INFO_PATH",
        "CREATE_CODE_PATH",
        "VALIDATE_CODE_PATH",
    )
    @classmethod
    def validate_endpoint_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Endpoint paths must start with '/', got: {v}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid LOG_LEVEL: {v}")
        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Cached so the environment is read once per process. Tests construct
    Settings directly and pass them to create_app instead.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def _is_local_uri(uri: str) -> bool:
    host = (urlparse(uri).hostname or "").lower()
    return host in ("localhost", "127.0.0.1", "::1")


def validate_configuration(settings: Settings) -> Dict[str, Any]:
    """
    Validate critical configuration settings and return a status report.

    Called during application startup; errors make startup fail, warnings
    are logged.

    Returns:
        Dictionary with validation status, errors and warnings.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not settings.AZURE_CLIENT_SECRET:
        errors.append("AZURE_CLIENT_SECRET is not set (required for the server-side code exchange)")

    if settings.STORE_BACKEND == "redis" and not settings.REDIS_URL:
        errors.append("STORE_BACKEND is 'redis' but REDIS_URL is not set")

    if not settings.CODE_EXCHANGE_SHARED_SECRET:
        warnings.append(
            "CODE_EXCHANGE_SHARED_SECRET is not set; all code redemption requests will be rejected"
        )
    elif len(settings.CODE_EXCHANGE_SHARED_SECRET) < 32:
        warnings.append("CODE_EXCHANGE_SHARED_SECRET is shorter than recommended (32+ chars)")

    if not settings.SESSION_COOKIE_SECURE and not _is_local_uri(settings.AZURE_REDIRECT_URI):
        errors.append("SESSION_COOKIE_SECURE must be true for non-local deployments")

    if settings.JWKS_CACHE_SECONDS_DIRECT > settings.JWKS_CACHE_SECONDS_EXCHANGE:
        warnings.append(
            "JWKS_CACHE_SECONDS_DIRECT exceeds JWKS_CACHE_SECONDS_EXCHANGE; "
            "client-pushed tokens are normally revalidated more often"
        )

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
    }


def ensure_valid_configuration(settings: Settings) -> Dict[str, Any]:
    """
    Run validate_configuration and fail closed on errors.

    Raises:
        ConfigurationError: If any configuration error was found.
    """
    report = validate_configuration(settings)
    if not report["valid"]:
        raise ConfigurationError("; ".join(report["errors"]))
    return report
