"""
Configuration Tests

Tests Settings validation, derived endpoint URLs and the startup
configuration report.
"""

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from gateway.config import Settings, ensure_valid_configuration, validate_configuration
from gateway.errors import ConfigurationError
from gateway.main import create_app

REQUIRED = {
    "AZURE_TENANT_ID": "tenant",
    "AZURE_CLIENT_ID": "client",
    "AZURE_REDIRECT_URI": "https://gw.example.com/oauth/callback",
    "FLOW_SECRET_KEY": "k" * 40,
}


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **{**REQUIRED, **overrides})


class TestSettings:
    """Test suite for Settings"""

    def test_defaults_are_production_safe(self):
        settings = make_settings()

        assert settings.SESSION_COOKIE_SECURE is True
        assert settings.CODE_EXCHANGE_SHARED_SECRET is None
        assert settings.SESSION_TTL_SECONDS == 8 * 3600
        assert settings.CODE_TTL_SECONDS == 300
        assert settings.CLOCK_SKEW_SECONDS == 300
        assert settings.JWKS_CACHE_SECONDS_DIRECT == 3600
        assert settings.JWKS_CACHE_SECONDS_EXCHANGE == 86400

    def test_endpoints_derived_from_tenant(self):
        settings = make_settings()

        assert settings.authorize_endpoint == "https://login.microsoftonline.com/tenant/oauth2/v2.0/authorize"
        assert settings.token_endpoint == "https://login.microsoftonline.com/tenant/oauth2/v2.0/token"
        assert settings.jwks_uri == "https://login.microsoftonline.com/tenant/discovery/v2.0/keys"

    def test_accepted_issuers(self):
        assert make_settings().accepted_issuers == [
            "https://login.microsoftonline.com/tenant/v2.0",
            "https://sts.windows.net/tenant/",
        ]
        assert make_settings(ACCEPT_LEGACY_ISSUER=False).accepted_issuers == [
            "https://login.microsoftonline.com/tenant/v2.0",
        ]

    def test_public_origin_from_redirect_uri(self):
        assert make_settings().public_origin == "https://gw.example.com"

    @pytest.mark.parametrize("raw,expected", [("", "/"), ("/", "/"), ("gateway/", "/gateway"), ("/gw", "/gw")])
    def test_mount_path_normalized(self, raw, expected):
        assert make_settings(GATEWAY_MOUNT_PATH=raw).cookie_path == expected

    def test_csv_lists(self):
        settings = make_settings(ALLOWED_REDIRECT_HOSTS=" App.Example.org , other.test ,")
        assert settings.allowed_redirect_hosts_list == ["app.example.org", "other.test"]

    def test_short_flow_secret_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(FLOW_SECRET_KEY="short")

    def test_invalid_store_backend_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(STORE_BACKEND="memcached")

    def test_relative_endpoint_path_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(LOGIN_PATH="oauth/login")


class TestValidateConfiguration:
    """Test suite for the startup configuration report"""

    def test_valid_configuration(self):
        report = validate_configuration(
            make_settings(AZURE_CLIENT_SECRET="s", CODE_EXCHANGE_SHARED_SECRET="x" * 32)
        )
        assert report == {"valid": True, "errors": [], "warnings": []}

    def test_missing_client_secret_is_error(self):
        report = validate_configuration(make_settings())
        assert not report["valid"]
        assert any("AZURE_CLIENT_SECRET" in error for error in report["errors"])

    def test_missing_shared_secret_is_warning(self):
        report = validate_configuration(make_settings(AZURE_CLIENT_SECRET="s"))
        assert report["valid"]
        assert any("CODE_EXCHANGE_SHARED_SECRET" in warning for warning in report["warnings"])

    def test_insecure_cookie_outside_localhost_is_error(self):
        report = validate_configuration(make_settings(AZURE_CLIENT_SECRET="s", SESSION_COOKIE_SECURE=False))
        assert not report["valid"]

    def test_insecure_cookie_on_localhost_allowed(self):
        report = validate_configuration(
            make_settings(
                AZURE_CLIENT_SECRET="s",
                SESSION_COOKIE_SECURE=False,
                AZURE_REDIRECT_URI="http://localhost:8080/oauth/callback",
            )
        )
        assert report["valid"]

    def test_redis_without_url_is_error(self):
        report = validate_configuration(make_settings(AZURE_CLIENT_SECRET="s", STORE_BACKEND="redis"))
        assert any("REDIS_URL" in error for error in report["errors"])

    def test_ensure_raises(self):
        with pytest.raises(ConfigurationError):
            ensure_valid_configuration(make_settings())

    def test_app_refuses_to_start_with_invalid_configuration(self):
        app = create_app(make_settings())

        with pytest.raises(ConfigurationError):
            with TestClient(app):
                pass
