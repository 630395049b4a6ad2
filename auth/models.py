"""
auth/models.py -- Domain dataclasses for authentication.

Pattern: data classes (pure data containers, no I/O). Stores, providers and
the resolver do the work; these types only carry shape between them.

Layer rule: no imports from devices/ except for type annotations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from core.errors import RejectionReason

if TYPE_CHECKING:
    from devices.models import DeviceRecord


class ProviderName(str, Enum):
    """Closed set of identity providers. Dispatch key and audit field."""

    LOCAL = "LOCAL"
    AUTH0 = "AUTH0"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    SUSPENDED = "SUSPENDED"


@dataclass
class CredentialRecord:
    """A user account as the auth core sees it.

    password_hash is None for accounts that only sign in through an external
    provider. external_provider / external_subject are None until an external
    identity is linked.

    id is None before the record is written to the store.
    """

    email: str
    id: str | None = None
    password_hash: str | None = None
    email_verified: bool = False
    status: AccountStatus = AccountStatus.PENDING_VERIFICATION
    external_provider: str | None = None
    external_subject: str | None = None
    created_at: str = ""  # ISO 8601, set by store on insert
    last_login_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status is AccountStatus.ACTIVE

    def __repr__(self) -> str:
        # Keep the hash out of logs and tracebacks.
        return (
            f"CredentialRecord(id={self.id!r}, email={self.email!r}, status={self.status.value}, "
            f"email_verified={self.email_verified!r}, external_provider={self.external_provider!r})"
        )


@dataclass(frozen=True)
class ExternalIdentity:
    """What a provider vouches for after verifying a credential or token.

    subject is provider-local: the internal user id for LOCAL, the "sub"
    claim for AUTH0. The resolver maps it to an internal account.
    """

    provider: ProviderName
    subject: str
    claims: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Identity:
    """Resolved principal: internal user id plus the provider that vouched for it."""

    user_id: str
    provider: ProviderName


# ---------------------------------------------------------------------------
# Resolver inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordCredentials:
    email: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class BearerToken:
    """A bearer token, optionally with an explicit provider hint."""

    token: str = field(repr=False)
    provider: str | None = None


@dataclass(frozen=True)
class RequestMetadata:
    """Request attributes the resolver needs for device tracking.

    fingerprint is normally computed by the caller. When it is None the
    resolver derives one from user_agent and device_hint.
    """

    user_agent: str = ""
    ip_address: str | None = None
    device_hint: str | None = None
    location: str | None = None
    fingerprint: str | None = None


# ---------------------------------------------------------------------------
# Resolver outcome
# ---------------------------------------------------------------------------


class AttemptState(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class AuthOutcome:
    """Terminal state of one authentication attempt."""

    state: AttemptState
    identity: Identity | None = None
    reason: RejectionReason | None = None
    device: DeviceRecord | None = None

    @classmethod
    def resolved(cls, identity: Identity, device: DeviceRecord) -> AuthOutcome:
        return cls(state=AttemptState.RESOLVED, identity=identity, device=device)

    @classmethod
    def rejected(cls, reason: RejectionReason) -> AuthOutcome:
        return cls(state=AttemptState.REJECTED, reason=reason)

    @property
    def ok(self) -> bool:
        return self.state is AttemptState.RESOLVED
