"""
auth/jwks.py -- Cached trust anchors (JSON Web Key Set) for external tokens.

The third-party provider verifies token signatures against public keys
published at https://<domain>/.well-known/jwks.json. Fetching them on every
request would put the identity provider on the hot path, so keys are cached:

  Cold cache: the first caller awaits the fetch. If it fails there is
      nothing to verify against, so ProviderUnavailableError is raised.

  Stale cache (older than ttl_seconds): the stale keys are served right away
      and a refresh runs in a background task. A failed background refresh
      is logged and the stale keys stay in place.

  Unknown kid: the provider may have rotated keys. One forced refresh is
      awaited, at most once per min_refresh_seconds, then the lookup is
      retried. Outside that window an unknown kid is simply not trusted.

Refreshes are single-flight: concurrent callers share one fetch. The HTTP
call is blocking (requests), so it runs in a worker thread; a caller that is
cancelled mid-fetch leaves the cache unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

import requests

from core.errors import ProviderUnavailableError

logger = logging.getLogger("authgate.auth.jwks")

# Module-level session shared across fetches. The JWKS URL is a fixed
# endpoint, so redirects are capped at 3 (requests defaults to 30).
_session = requests.Session()
_session.max_redirects = 3


class JWKSCache:
    """TTL cache of signing keys indexed by key id (kid).

    Usage:
        cache = JWKSCache("https://tenant.auth0.com/.well-known/jwks.json")
        key = await cache.signing_key(kid)   # JWK dict, or None if untrusted
    """

    def __init__(
        self,
        jwks_url: str,
        ttl_seconds: float = 600,
        min_refresh_seconds: float = 30,
        timeout: float = 5.0,
        fetcher: Callable[[], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.jwks_url = jwks_url
        self._ttl = ttl_seconds
        self._min_refresh = min_refresh_seconds
        self._timeout = timeout
        self._fetcher = fetcher or self._fetch_http
        self._clock = clock

        self._keys: dict[str, dict[str, Any]] | None = None
        self._fetched_at = 0.0
        self._last_attempt: float | None = None
        self._generation = 0
        self._lock = asyncio.Lock()
        self._refresh_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_stale(self) -> bool:
        return self._keys is None or self._clock() - self._fetched_at > self._ttl

    async def signing_key(self, kid: str | None, kty: str | None = None) -> dict[str, Any] | None:
        """Return the JWK for kid, or None if no trusted key matches.

        kid None returns the whole set ({"keys": [...]}) so the verifier can
        try each key; providers that omit kid usually publish a single key.
        With kty set, keys of any other type ("EC" when "RSA" is wanted) are
        treated as absent. A kid-less lookup that leaves no keys is None.

        Raises ProviderUnavailableError only when no keys were ever fetched
        and the fetch fails now.
        """
        keys = _of_type(await self._current_keys(), kty)
        if kid is None:
            return {"keys": list(keys.values())} if keys else None
        if kid in keys:
            return keys[kid]

        if not self._refresh_allowed():
            logger.info("Unknown signing key id %s; refresh rate-limited", kid)
            return None
        try:
            await self._refresh()
        except ProviderUnavailableError:
            logger.warning("JWKS refresh for unknown key id %s failed; keeping cached keys", kid)
            return None
        assert self._keys is not None
        return _of_type(self._keys, kty).get(kid)

    def request_refresh(self) -> bool:
        """Schedule a background refresh after a verification failure.

        Rate-limited like the unknown-kid refresh. Returns True if a refresh
        was scheduled (or one is already running). Must be called from
        inside the event loop.
        """
        if self._keys is None or not self._refresh_allowed():
            return False
        self._schedule_background_refresh()
        return True

    async def wait_for_refresh(self) -> None:
        """Wait for an in-flight background refresh, if any."""
        task = self._refresh_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _current_keys(self) -> dict[str, dict[str, Any]]:
        if self._keys is None:
            await self._refresh()
        elif self.is_stale and self._refresh_allowed():
            self._schedule_background_refresh()
        assert self._keys is not None
        return self._keys

    def _refresh_allowed(self) -> bool:
        if self._last_attempt is None:
            return True
        return self._clock() - self._last_attempt >= self._min_refresh

    def _schedule_background_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.get_running_loop().create_task(self._background_refresh())

    async def _background_refresh(self) -> None:
        try:
            await self._refresh()
        except ProviderUnavailableError:
            count = len(self._keys or {})
            logger.warning("Background JWKS refresh failed; serving %d stale keys", count)

    async def _refresh(self) -> None:
        """Fetch the key set once, even if many callers ask at the same time."""
        generation = self._generation
        async with self._lock:
            if self._generation != generation and self._keys is not None:
                # Another caller refreshed while we waited for the lock.
                return
            self._last_attempt = self._clock()
            try:
                payload = await asyncio.to_thread(self._fetcher)
            except (requests.RequestException, ValueError) as exc:
                logger.warning("JWKS fetch from %s failed: %s", self.jwks_url, exc.__class__.__name__)
                raise ProviderUnavailableError("Could not fetch signing keys") from exc
            keys = _index_keys(payload)
            if not keys:
                logger.warning("JWKS from %s contained no usable signing keys", self.jwks_url)
                raise ProviderUnavailableError("Identity provider published no signing keys")
            self._keys = keys
            self._fetched_at = self._clock()
            self._generation += 1
            logger.info("Loaded %d signing keys from %s", len(keys), self.jwks_url)

    def _fetch_http(self) -> Any:
        resp = _session.get(self.jwks_url, timeout=self._timeout)
        resp.raise_for_status()
        return resp.json()


def _index_keys(payload: Any) -> dict[str, dict[str, Any]]:
    """Map kid -> JWK for every signature key in a JWKS document.

    Keys marked for encryption ("use": "enc") are skipped. Keys without a kid
    are indexed by position so they are still tried when a token has no kid.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("keys"), list):
        return {}
    indexed: dict[str, dict[str, Any]] = {}
    for position, key in enumerate(payload["keys"]):
        if not isinstance(key, dict) or "kty" not in key:
            continue
        if key.get("use", "sig") != "sig":
            continue
        indexed[str(key.get("kid") or f"#{position}")] = key
    return indexed


def _of_type(keys: dict[str, dict[str, Any]], kty: str | None) -> dict[str, dict[str, Any]]:
    if kty is None:
        return keys
    return {kid: key for kid, key in keys.items() if key.get("kty") == kty}
