"""
auth/factory.py -- Assemble the auth core from Settings.

Everything is constructed explicitly from a Settings instance (defaulting to
get_settings()), so tests and applications build as many isolated resolvers
as they need. Auth0 is registered only when both AUTHGATE_AUTH0_DOMAIN and
AUTHGATE_AUTH0_AUDIENCE are set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.hashing import PasswordHasher
from auth.jwks import JWKSCache
from auth.providers.auth0 import Auth0Provider
from auth.providers.base import IdentityProvider
from auth.providers.local import LocalCredentialProvider
from auth.resolver import AuthenticationResolver
from auth.store import UserStore
from core.config import Settings, get_settings
from devices.store import DeviceStore
from devices.tracker import DeviceTracker

logger = logging.getLogger("authgate.auth")


@dataclass
class AuthCore:
    """The wired components. close() releases pools and connections."""

    resolver: AuthenticationResolver
    local: LocalCredentialProvider
    tracker: DeviceTracker
    user_store: UserStore
    device_store: DeviceStore
    hasher: PasswordHasher

    def close(self) -> None:
        self.hasher.close()
        self.user_store.close()
        self.device_store.close()


def build_auth_core(settings: Settings | None = None) -> AuthCore:
    settings = settings or get_settings()
    user_store = UserStore(settings.database_url)
    device_store = DeviceStore(settings.database_url)
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds, max_workers=settings.hash_workers)

    local = LocalCredentialProvider(
        user_store,
        hasher,
        secret_key=settings.secret_key,
        issuer=settings.session_issuer,
        token_expire_seconds=settings.token_expire_seconds,
        refresh_token_expire_seconds=settings.refresh_token_expire_seconds,
        require_verified_email=settings.require_verified_email,
    )
    providers: list[IdentityProvider] = [local]

    if settings.auth0_enabled:
        jwks = JWKSCache(
            settings.auth0_jwks_url,
            ttl_seconds=settings.jwks_cache_ttl_seconds,
            min_refresh_seconds=settings.jwks_min_refresh_seconds,
            timeout=settings.jwks_fetch_timeout_seconds,
        )
        providers.append(Auth0Provider(settings.auth0_domain, settings.auth0_audience, jwks=jwks))
        logger.info("Auth0 provider registered for %s", settings.auth0_issuer)

    tracker = DeviceTracker(device_store)
    resolver = AuthenticationResolver(
        providers,
        user_store,
        tracker,
        fingerprint_secret=settings.secret_key,
        auto_provision_external=settings.auto_provision_external,
    )
    logger.info("Auth core initialized (providers=%s)", ",".join(resolver.provider_names))
    return AuthCore(
        resolver=resolver,
        local=local,
        tracker=tracker,
        user_store=user_store,
        device_store=device_store,
        hasher=hasher,
    )
