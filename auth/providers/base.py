"""Identity provider contract."""

from __future__ import annotations

from abc import ABC, abstractmethod

from auth.models import ExternalIdentity, ProviderName


class IdentityProvider(ABC):
    """Provider-neutral token validation interface.

    Implementations must return None -- never raise -- for any malformed,
    expired, unverifiable or unrecognized token. Only infrastructure failures
    (ProviderUnavailableError, StorageFailureError) may escape.

    Decoding a token is not verifying it: an implementation returns an
    ExternalIdentity only after the token's signature has been checked
    against its trust anchor.
    """

    name: ProviderName

    def get_provider_name(self) -> str:
        return self.name.value

    @property
    def issuer(self) -> str | None:
        """The "iss" claim this provider's tokens carry, used for routing."""
        return None

    @abstractmethod
    async def validate_token(self, token: str) -> ExternalIdentity | None:
        """Verify token and return the identity it vouches for, or None."""


__all__ = ["IdentityProvider"]
