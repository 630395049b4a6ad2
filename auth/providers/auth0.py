"""Auth0 access-token provider.

Verifies RS256 JWTs issued by an Auth0 tenant against the tenant's published
JWKS, then checks issuer, audience and expiry. The "sub" claim becomes the
external subject the resolver maps to an internal account.

A signature that does not verify against a cached key asks the JWKS cache
for a rate-limited background refresh, so a rotated key is picked up without
waiting for the TTL.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JOSEError, JWTClaimsError

from auth.jwks import JWKSCache
from auth.models import ExternalIdentity, ProviderName
from auth.providers.base import IdentityProvider

logger = logging.getLogger("authgate.auth.auth0")

# JWK key type for each signature algorithm family.
_KEY_TYPES = {"RS": "RSA", "PS": "RSA", "ES": "EC"}


class Auth0Provider(IdentityProvider):
    """Verifies Auth0-issued tokens. Never trusts a claim it has not verified."""

    name = ProviderName.AUTH0

    def __init__(
        self,
        domain: str,
        audience: str,
        jwks: JWKSCache | None = None,
        algorithms: Sequence[str] = ("RS256",),
    ) -> None:
        domain = domain.strip("/")
        self._issuer = f"https://{domain}/"
        self._audience = audience
        self._algorithms = list(algorithms)
        self.jwks = jwks or JWKSCache(f"https://{domain}/.well-known/jwks.json")

    @property
    def issuer(self) -> str:
        return self._issuer

    async def validate_token(self, token: str) -> ExternalIdentity | None:
        """Return the token's subject if its signature and claims check out.

        Raises ProviderUnavailableError if signing keys have never been
        fetched and cannot be fetched now. Every other failure is None.
        """
        try:
            header = jwt.get_unverified_header(token)
        except JOSEError:
            return None
        # The header only picks a key; it is not trusted for anything else.
        alg = header.get("alg")
        if alg not in self._algorithms:
            logger.debug("Rejected token with algorithm %r", alg)
            return None
        kty = _KEY_TYPES.get(alg[:2])
        if kty is None:
            return None

        kid = header.get("kid")
        if kid is not None and not isinstance(kid, str):
            return None
        key = await self.jwks.signing_key(kid, kty=kty)
        if key is None:
            return None

        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[alg],
                audience=self._audience,
                issuer=self._issuer,
                options={"require_exp": True, "require_sub": True, "require_aud": True, "require_iss": True},
            )
        except (ExpiredSignatureError, JWTClaimsError) as exc:
            logger.debug("Auth0 token rejected: %s", exc.__class__.__name__)
            return None
        except JOSEError as exc:
            # Signature or key failure against the cached keys.
            if self.jwks.request_refresh():
                logger.info("Auth0 signature check failed (%s); refreshing signing keys", exc.__class__.__name__)
            else:
                logger.debug("Auth0 token rejected: %s", exc.__class__.__name__)
            return None

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            return None
        return ExternalIdentity(provider=self.name, subject=subject, claims=claims)


__all__ = ["Auth0Provider"]
