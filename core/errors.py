"""
core/errors.py -- Closed error taxonomy shared by auth/ and devices/.

Two families:
  Rejections are expected outcomes of a bad credential or token. Providers
      recover them locally and the resolver reports them as a RejectionReason
      on the AuthOutcome -- they are never raised past a provider.

  Infrastructure failures (trust anchors unreachable, store unreachable) are
      raised as exceptions so the caller can retry with backoff. The resolver
      never converts them into INVALID_CREDENTIALS.

Every kind carries a fixed public message. Internal details (stack traces,
storage errors, key material) go to logs, never into these messages.

Layer rule: core/ is the kernel. No imports from auth/ or devices/.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Every failure a caller of the auth core can observe."""

    INVALID_CREDENTIALS = "invalid_credentials"
    UNLINKED_IDENTITY = "unlinked_identity"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    MALFORMED_INPUT = "malformed_input"
    STORAGE_FAILURE = "storage_failure"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.PROVIDER_UNAVAILABLE, ErrorKind.STORAGE_FAILURE)

    @property
    def public_message(self) -> str:
        return _PUBLIC_MESSAGES[self]


_PUBLIC_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.INVALID_CREDENTIALS: "Invalid credentials or token.",
    ErrorKind.UNLINKED_IDENTITY: "This identity is not linked to an account.",
    ErrorKind.PROVIDER_UNAVAILABLE: "Identity provider temporarily unavailable. Try again later.",
    ErrorKind.MALFORMED_INPUT: "Malformed credential or token.",
    ErrorKind.STORAGE_FAILURE: "Authentication service temporarily unavailable. Try again later.",
}


class RejectionReason(str, Enum):
    """Non-infrastructure outcomes reported on a rejected attempt."""

    INVALID_CREDENTIALS = ErrorKind.INVALID_CREDENTIALS.value
    UNLINKED_IDENTITY = ErrorKind.UNLINKED_IDENTITY.value
    MALFORMED_INPUT = ErrorKind.MALFORMED_INPUT.value

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind(self.value)


class AuthGateError(Exception):
    """Base class for errors raised by the auth core."""

    kind: ErrorKind | None = None

    @property
    def retryable(self) -> bool:
        return self.kind.retryable if self.kind is not None else False


class ProviderUnavailableError(AuthGateError):
    """Trust anchor material could not be fetched and no usable cache exists."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE


class StorageFailureError(AuthGateError):
    """The credential or device store could not be reached."""

    kind = ErrorKind.STORAGE_FAILURE


class DuplicateAccountError(AuthGateError):
    """A local account with this email already exists."""
