"""
Tests for configuration loading and validation.
"""

import pytest
from pydantic import SecretStr, ValidationError

from hospital_oauth.config import Settings, build_redis_url


class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.OAUTH2_STORE_BACKEND == "memory"
        assert settings.OAUTH2_CLIENT_BACKEND == "memory"
        assert settings.AUTH_CODE_TTL_SECONDS == 600
        assert settings.PKCE_ALLOW_PLAIN is False
        assert settings.default_scopes_list == ["read"]
        assert settings.reserved_subdomains_list == ["www", "api"]
        assert settings.TENANT_BASE_DOMAIN is None

    @pytest.mark.parametrize("ttl", [0, 601, -5])
    def test_auth_code_ttl_bounds(self, ttl):
        with pytest.raises(ValidationError):
            Settings(AUTH_CODE_TTL_SECONDS=ttl)

    @pytest.mark.parametrize("field", ["ACCESS_TOKEN_TTL_SECONDS", "REFRESH_TOKEN_TTL_SECONDS", "CLIENT_CACHE_TTL_SECONDS"])
    def test_lifetimes_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_store_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(STORE_OPERATION_TIMEOUT_SECONDS=0)

    def test_backends_are_normalized_and_validated(self):
        assert Settings(OAUTH2_STORE_BACKEND="Redis").OAUTH2_STORE_BACKEND == "redis"
        assert Settings(OAUTH2_CLIENT_BACKEND="MongoDB").OAUTH2_CLIENT_BACKEND == "mongodb"
        with pytest.raises(ValidationError):
            Settings(OAUTH2_STORE_BACKEND="postgres")
        with pytest.raises(ValidationError):
            Settings(OAUTH2_CLIENT_BACKEND="redis")

    @pytest.mark.parametrize("rounds", [3, 32])
    def test_bcrypt_rounds_bounds(self, rounds):
        with pytest.raises(ValidationError):
            Settings(BCRYPT_ROUNDS=rounds)

    def test_list_settings_are_comma_separated(self):
        settings = Settings(DEFAULT_SCOPES="read, patients:read,", RESERVED_SUBDOMAINS="WWW, auth")

        assert settings.default_scopes_list == ["read", "patients:read"]
        assert settings.reserved_subdomains_list == ["www", "auth"]

    def test_internal_api_enabled(self):
        assert Settings(INTERNAL_API_KEY=None).internal_api_enabled is False
        assert Settings(INTERNAL_API_KEY="").internal_api_enabled is False
        assert Settings(INTERNAL_API_KEY="k3y").internal_api_enabled is True

    def test_settings_from_environment(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "900")
        monkeypatch.setenv("PKCE_ALLOW_PLAIN", "true")

        settings = Settings()

        assert settings.ACCESS_TOKEN_TTL_SECONDS == 900
        assert settings.PKCE_ALLOW_PLAIN is True


class TestRedisUrl:
    def test_explicit_url_wins(self):
        assert build_redis_url(Settings(REDIS_URL="redis://cache:6380/2")) == "redis://cache:6380/2"

    def test_built_from_parts(self):
        settings = Settings(REDIS_URL=None, REDIS_HOST="cache", REDIS_PORT=6380, REDIS_DB=1)

        assert build_redis_url(settings) == "redis://cache:6380/1"

    def test_credentials(self):
        with_user = Settings(REDIS_URL=None, REDIS_USERNAME="svc", REDIS_PASSWORD=SecretStr("pw"))
        password_only = Settings(REDIS_URL=None, REDIS_PASSWORD=SecretStr("pw"))

        assert build_redis_url(with_user) == "redis://svc:pw@127.0.0.1:6379/0"
        assert build_redis_url(password_only) == "redis://:pw@127.0.0.1:6379/0"
