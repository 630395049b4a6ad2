"""
tests/conftest.py -- Shared test fixtures for the authgate test suite.

This module provides:
  - memory_db_url(): a fresh named shared-memory SQLite URL per call
  - StepClock: deterministic UTC clock for device timestamp assertions
  - hasher: PasswordHasher at bcrypt's minimum cost (4) so tests stay fast
  - rsa_keys / other_rsa_keys: RS256 key pairs plus a matching JWKS document
  - make_token(): signs Auth0-style access tokens with a given key
  - core: a fully wired resolver with LOCAL and AUTH0 providers

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because every store call runs on a worker thread via asyncio.to_thread.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process; a uuid in the name keeps tests
isolated from each other.

The JWKS endpoint is never contacted. JWKSCache takes an injected fetcher,
so tests serve key sets directly and count fetches.
"""

from __future__ import annotations

import uuid
from collections.abc import Generator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jose import jwk, jwt

from auth.hashing import PasswordHasher
from auth.jwks import JWKSCache
from auth.providers.auth0 import Auth0Provider
from auth.providers.local import LocalCredentialProvider
from auth.resolver import AuthenticationResolver
from auth.store import UserStore
from devices.store import DeviceStore
from devices.tracker import DeviceTracker

AUTH0_DOMAIN = "tenant.example.auth0.com"
AUTH0_ISSUER = f"https://{AUTH0_DOMAIN}/"
AUTH0_AUDIENCE = "https://api.authgate.test"
SECRET_KEY = "test-secret-key-that-is-at-least-32-characters"
CHROME_MAC_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

# ---------------------------------------------------------------------------
# Databases and clocks
# ---------------------------------------------------------------------------


def memory_db_url(prefix: str = "authgate") -> str:
    """Return a named shared-memory SQLite URL no other test uses."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


class StepClock:
    """UTC clock that advances by a fixed step on every call.

    Calling set() moves it to an arbitrary instant, including backwards.
    """

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def set(self, when: datetime) -> None:
        self.now = when


@pytest.fixture
def db_url() -> str:
    return memory_db_url()


@pytest.fixture
def user_store(db_url: str) -> Generator[UserStore, None, None]:
    store = UserStore(db_url)
    yield store
    store.close()


@pytest.fixture
def device_store(db_url: str) -> Generator[DeviceStore, None, None]:
    store = DeviceStore(db_url)
    yield store
    store.close()


@pytest.fixture
def hasher() -> Generator[PasswordHasher, None, None]:
    h = PasswordHasher(rounds=4, max_workers=2)
    yield h
    h.close()


# ---------------------------------------------------------------------------
# RSA keys and Auth0-style tokens
# ---------------------------------------------------------------------------


@dataclass
class KeyPair:
    kid: str
    private_pem: str
    public_jwk: dict[str, Any]

    @property
    def jwks(self) -> dict[str, Any]:
        return {"keys": [self.public_jwk]}


def _generate_key_pair(kid: str) -> KeyPair:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    public_jwk = jwk.construct(public_pem, "RS256").to_dict()
    public_jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return KeyPair(kid=kid, private_pem=private_pem, public_jwk=public_jwk)


@pytest.fixture(scope="session")
def rsa_keys() -> KeyPair:
    return _generate_key_pair("key-1")


@pytest.fixture(scope="session")
def other_rsa_keys() -> KeyPair:
    """An untrusted key pair. Tokens signed with it must never validate."""
    return _generate_key_pair("key-1")


@pytest.fixture(scope="session")
def ec_public_jwk() -> dict[str, Any]:
    """A P-256 verification key, for key sets that mix key types."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    public_jwk = jwk.construct(public_pem, "ES256").to_dict()
    public_jwk.update({"kid": "ec-1", "use": "sig", "alg": "ES256"})
    return public_jwk


def make_token(
    keys: KeyPair,
    sub: str = "auth0|abc123",
    issuer: str = AUTH0_ISSUER,
    audience: str = AUTH0_AUDIENCE,
    expires_in: int = 300,
    kid: str | None = "",
    **extra_claims: Any,
) -> str:
    """Sign an RS256 access token. kid="" uses the key pair's own kid."""
    now = datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "sub": sub,
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in),
    }
    claims.update(extra_claims)
    if kid == "":
        kid = keys.kid
    headers = {"kid": kid} if kid is not None else None
    return jwt.encode(claims, keys.private_pem, algorithm="RS256", headers=headers)


class CountingFetcher:
    """Serves a sequence of JWKS payloads (or exceptions) and counts calls."""

    def __init__(self, *responses: Any) -> None:
        self._responses = list(responses)
        self.calls = 0

    def __call__(self) -> Any:
        index = min(self.calls, len(self._responses) - 1)
        self.calls += 1
        response = self._responses[index]
        if isinstance(response, Exception):
            raise response
        return response


# ---------------------------------------------------------------------------
# Fully wired resolver
# ---------------------------------------------------------------------------


@dataclass
class Core:
    resolver: AuthenticationResolver
    local: LocalCredentialProvider
    auth0: Auth0Provider
    fetcher: CountingFetcher
    tracker: DeviceTracker
    user_store: UserStore
    device_store: DeviceStore
    clock: StepClock


def build_core(
    user_store: UserStore,
    device_store: DeviceStore,
    hasher: PasswordHasher,
    keys: KeyPair,
    auto_provision_external: bool = False,
) -> Core:
    fetcher = CountingFetcher(keys.jwks)
    jwks = JWKSCache(f"{AUTH0_ISSUER}.well-known/jwks.json", fetcher=fetcher)
    auth0 = Auth0Provider(AUTH0_DOMAIN, AUTH0_AUDIENCE, jwks=jwks)
    local = LocalCredentialProvider(user_store, hasher, secret_key=SECRET_KEY)
    clock = StepClock()
    tracker = DeviceTracker(device_store, clock=clock)
    resolver = AuthenticationResolver(
        [local, auth0],
        user_store,
        tracker,
        fingerprint_secret=SECRET_KEY,
        auto_provision_external=auto_provision_external,
    )
    return Core(
        resolver=resolver,
        local=local,
        auth0=auth0,
        fetcher=fetcher,
        tracker=tracker,
        user_store=user_store,
        device_store=device_store,
        clock=clock,
    )


@pytest.fixture
def core(user_store: UserStore, device_store: DeviceStore, hasher: PasswordHasher, rsa_keys: KeyPair) -> Core:
    return build_core(user_store, device_store, hasher, rsa_keys)
