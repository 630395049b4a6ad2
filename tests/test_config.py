"""
tests/test_config.py -- Tests for core/config.py and auth/factory.py.

Settings are built directly (not through get_settings()) so each test sees
only the environment it sets up itself.
"""

from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from auth.factory import build_auth_core
from auth.models import PasswordCredentials, ProviderName, RequestMetadata
from conftest import CHROME_MAC_UA, SECRET_KEY, memory_db_url
from core.config import Settings, get_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("AUTHGATE_SECRET_KEY", "AUTHGATE_DEBUG", "AUTHGATE_AUTH0_DOMAIN", "AUTHGATE_AUTH0_AUDIENCE"):
        monkeypatch.delenv(name, raising=False)


class TestSecretKeyPolicy:
    def test_debug_generates_key(self) -> None:
        settings = Settings(debug=True)
        assert len(settings.secret_key) >= 32

    def test_production_requires_key(self) -> None:
        with pytest.raises(ValidationError):
            Settings(debug=False)

    def test_short_key_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(secret_key="too-short")

    def test_key_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AUTHGATE_SECRET_KEY", SECRET_KEY)
        monkeypatch.setenv("AUTHGATE_BCRYPT_ROUNDS", "10")
        settings = Settings()
        assert settings.secret_key == SECRET_KEY
        assert settings.bcrypt_rounds == 10

    def test_get_settings_is_cached(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AUTHGATE_SECRET_KEY", SECRET_KEY)
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()


class TestFieldValidation:
    def test_defaults(self) -> None:
        settings = Settings(secret_key=SECRET_KEY)
        assert settings.bcrypt_rounds == 12
        assert settings.token_expire_seconds == 3600
        assert settings.require_verified_email is True
        assert settings.auto_provision_external is False
        assert settings.auth0_enabled is False

    @pytest.mark.parametrize("rounds", [3, 32])
    def test_bcrypt_rounds_range(self, rounds: int) -> None:
        with pytest.raises(ValidationError):
            Settings(secret_key=SECRET_KEY, bcrypt_rounds=rounds)

    def test_auth0_needs_domain_and_audience(self) -> None:
        with pytest.raises(ValidationError):
            Settings(secret_key=SECRET_KEY, auth0_domain="tenant.auth0.com")

    def test_auth0_urls(self) -> None:
        settings = Settings(secret_key=SECRET_KEY, auth0_domain="tenant.auth0.com/", auth0_audience="api")
        assert settings.auth0_enabled is True
        assert settings.auth0_issuer == "https://tenant.auth0.com/"
        assert settings.auth0_jwks_url == "https://tenant.auth0.com/.well-known/jwks.json"


class TestBuildAuthCore:
    def test_local_only_by_default(self) -> None:
        core = build_auth_core(Settings(secret_key=SECRET_KEY, database_url=memory_db_url(), bcrypt_rounds=4))
        try:
            assert core.resolver.provider_names == ["LOCAL"]
        finally:
            core.close()

    def test_auth0_registered_when_configured(self) -> None:
        settings = Settings(
            secret_key=SECRET_KEY,
            database_url=memory_db_url(),
            bcrypt_rounds=4,
            auth0_domain="tenant.auth0.com",
            auth0_audience="api",
            jwks_cache_ttl_seconds=120,
        )
        core = build_auth_core(settings)
        try:
            assert core.resolver.provider_names == ["LOCAL", "AUTH0"]
            auth0 = core.resolver.provider(ProviderName.AUTH0)
            assert auth0.issuer == "https://tenant.auth0.com/"
            assert auth0.jwks.jwks_url == "https://tenant.auth0.com/.well-known/jwks.json"
        finally:
            core.close()

    def test_register_then_login(self) -> None:
        settings = Settings(
            secret_key=SECRET_KEY,
            database_url=memory_db_url(),
            bcrypt_rounds=4,
            require_verified_email=False,
        )
        core = build_auth_core(settings)

        async def scenario():
            user = await core.local.register("carol@example.com", "password123")
            outcome = await core.resolver.authenticate(
                PasswordCredentials("carol@example.com", "password123"),
                RequestMetadata(user_agent=CHROME_MAC_UA),
            )
            return user, outcome

        try:
            user, outcome = asyncio.run(scenario())
            assert outcome.ok
            assert outcome.identity.user_id == user.id
            assert len(core.device_store.list_for_user(user.id)) == 1
        finally:
            core.close()
