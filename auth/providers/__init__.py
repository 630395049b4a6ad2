"""Identity provider implementations."""

from .auth0 import Auth0Provider
from .base import IdentityProvider
from .local import LocalCredentialProvider

__all__ = [
    "IdentityProvider",
    "Auth0Provider",
    "LocalCredentialProvider",
]
