"""
auth/resolver.py -- Turns a credential or bearer token into an Identity.

One call to authenticate() is one attempt:

    PENDING --(provider vouches, account mapped, device recorded)--> RESOLVED
    PENDING --(anything a caller could fix by re-prompting)--------> REJECTED

Provider selection is explicit dispatch over the closed ProviderName set:
  PasswordCredentials            -> LOCAL
  BearerToken(provider="AUTH0")  -> AUTH0 (hint must name a registered provider)
  BearerToken(provider=None)     -> the provider registered for the token's
                                    "iss" claim. The claim is read without
                                    verification purely to pick a verifier;
                                    the chosen provider then verifies it.

Rejection reasons are coarse. Unknown email, wrong password,
bad signature, expired token and unroutable issuer all read as
INVALID_CREDENTIALS, so a caller cannot tell which half of the check failed.

Infrastructure failures (ProviderUnavailableError, StorageFailureError)
propagate as exceptions and are never reported as INVALID_CREDENTIALS.

On resolution the device tracker runs before authenticate() returns, so the
first success a caller observes is also the point where device state is
durable. If the attempt is cancelled before that, nothing was written.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from jose import JWTError, jwt

from auth.models import (
    AccountStatus,
    AttemptState,
    AuthOutcome,
    BearerToken,
    CredentialRecord,
    ExternalIdentity,
    Identity,
    PasswordCredentials,
    ProviderName,
    RequestMetadata,
)
from auth.providers.base import IdentityProvider
from auth.providers.local import LocalCredentialProvider
from auth.store import UserStore
from core.errors import RejectionReason
from core.offload import run_store
from devices.fingerprint import derive_fingerprint
from devices.models import DeviceRecord
from devices.tracker import DeviceTracker

logger = logging.getLogger("authgate.auth")


class AuthAttempt:
    """State of a single authentication attempt. Transitions exactly once."""

    def __init__(self, provider: ProviderName | None = None) -> None:
        self.state = AttemptState.PENDING
        self.provider = provider

    def resolve(self, identity: Identity, device: DeviceRecord) -> AuthOutcome:
        self._leave_pending()
        self.state = AttemptState.RESOLVED
        return AuthOutcome.resolved(identity, device)

    def reject(self, reason: RejectionReason) -> AuthOutcome:
        self._leave_pending()
        self.state = AttemptState.REJECTED
        return AuthOutcome.rejected(reason)

    def _leave_pending(self) -> None:
        if self.state is not AttemptState.PENDING:
            raise RuntimeError(f"Authentication attempt already {self.state.value}")


class AuthenticationResolver:
    """Dispatches credentials to providers and maps results to internal identities.

    Usage:
        resolver = AuthenticationResolver(providers, user_store, tracker, fingerprint_secret)
        outcome = await resolver.authenticate(PasswordCredentials(email, password), metadata)
        if outcome.ok:
            outcome.identity.user_id
        else:
            outcome.reason
    """

    def __init__(
        self,
        providers: Iterable[IdentityProvider],
        user_store: UserStore,
        tracker: DeviceTracker,
        fingerprint_secret: str,
        auto_provision_external: bool = False,
    ) -> None:
        self._providers: dict[ProviderName, IdentityProvider] = {}
        self._by_issuer: dict[str, ProviderName] = {}
        for provider in providers:
            if provider.name in self._providers:
                raise ValueError(f"Provider {provider.name.value} registered twice")
            self._providers[provider.name] = provider
            if provider.issuer:
                self._by_issuer[provider.issuer] = provider.name
        self._user_store = user_store
        self._tracker = tracker
        self._fingerprint_secret = fingerprint_secret
        self._auto_provision = auto_provision_external

    @property
    def provider_names(self) -> list[str]:
        return [name.value for name in self._providers]

    def provider(self, name: ProviderName) -> IdentityProvider | None:
        return self._providers.get(name)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        credential: PasswordCredentials | BearerToken,
        metadata: RequestMetadata,
    ) -> AuthOutcome:
        """Run one authentication attempt.

        Returns a RESOLVED or REJECTED AuthOutcome.

        Raises:
            ProviderUnavailableError: trust anchors could not be fetched.
            StorageFailureError: credential or device store unreachable.
        """
        attempt = AuthAttempt()

        if isinstance(credential, PasswordCredentials):
            external = await self._verify_password(credential, attempt)
        elif isinstance(credential, BearerToken):
            external = await self._verify_bearer(credential, attempt)
        else:
            raise TypeError(f"Unsupported credential type {type(credential).__name__}")

        if isinstance(external, RejectionReason):
            return self._reject(attempt, external, metadata)

        record = await self._map_account(external)
        if isinstance(record, RejectionReason):
            return self._reject(attempt, record, metadata, subject=external.subject)

        identity = Identity(user_id=record.id, provider=external.provider)
        fingerprint = metadata.fingerprint or derive_fingerprint(
            metadata.user_agent, metadata.device_hint, self._fingerprint_secret
        )
        device = await self._tracker.record_login(
            identity.user_id,
            fingerprint,
            metadata.user_agent,
            ip_address=metadata.ip_address,
            location=metadata.location,
        )
        await run_store(self._user_store.update_last_login, identity.user_id)
        logger.info(
            "Authentication resolved: provider=%s user=%s device=%s ip=%s",
            identity.provider.value,
            identity.user_id,
            device.id,
            metadata.ip_address,
        )
        return attempt.resolve(identity, device)

    # ------------------------------------------------------------------
    # Provider selection and validation
    # ------------------------------------------------------------------

    async def _verify_password(
        self, credential: PasswordCredentials, attempt: AuthAttempt
    ) -> ExternalIdentity | RejectionReason:
        attempt.provider = ProviderName.LOCAL
        if not credential.email.strip() or not credential.password:
            return RejectionReason.MALFORMED_INPUT
        provider = self._providers.get(ProviderName.LOCAL)
        if not isinstance(provider, LocalCredentialProvider):
            return RejectionReason.INVALID_CREDENTIALS
        external = await provider.verify_credentials(credential.email, credential.password)
        return external if external is not None else RejectionReason.INVALID_CREDENTIALS

    async def _verify_bearer(self, credential: BearerToken, attempt: AuthAttempt) -> ExternalIdentity | RejectionReason:
        token = credential.token.strip() if credential.token else ""
        if not token:
            return RejectionReason.MALFORMED_INPUT

        if credential.provider is not None:
            try:
                name = ProviderName(credential.provider.strip().upper())
            except ValueError:
                return RejectionReason.MALFORMED_INPUT
        else:
            routed = self._route_by_issuer(token)
            if isinstance(routed, RejectionReason):
                return routed
            name = routed

        attempt.provider = name
        provider = self._providers.get(name)
        if provider is None:
            return RejectionReason.INVALID_CREDENTIALS
        external = await provider.validate_token(token)
        return external if external is not None else RejectionReason.INVALID_CREDENTIALS

    def _route_by_issuer(self, token: str) -> ProviderName | RejectionReason:
        """Pick a provider from the unverified "iss" claim. Routing only, never trust."""
        try:
            claims = jwt.get_unverified_claims(token)
        except JWTError:
            return RejectionReason.MALFORMED_INPUT
        issuer = claims.get("iss")
        if not isinstance(issuer, str) or issuer not in self._by_issuer:
            return RejectionReason.INVALID_CREDENTIALS
        return self._by_issuer[issuer]

    # ------------------------------------------------------------------
    # Account mapping
    # ------------------------------------------------------------------

    async def _map_account(self, external: ExternalIdentity) -> CredentialRecord | RejectionReason:
        """Find the internal account a verified identity belongs to."""
        if external.provider is ProviderName.LOCAL:
            record = await run_store(self._user_store.get_by_id, external.subject)
            if record is None:
                return RejectionReason.INVALID_CREDENTIALS
        else:
            record = await run_store(self._user_store.get_by_external, external.provider.value, external.subject)
            if record is None:
                if not self._auto_provision:
                    return RejectionReason.UNLINKED_IDENTITY
                email = external.claims.get("email") if external.claims.get("email_verified") else None
                record = await run_store(
                    self._user_store.provision_external,
                    external.provider.value,
                    external.subject,
                    email if isinstance(email, str) else None,
                )
                logger.info("Provisioned account %s for %s identity", record.id, external.provider.value)

        if record.status is AccountStatus.SUSPENDED:
            return RejectionReason.INVALID_CREDENTIALS
        return record

    def _reject(
        self,
        attempt: AuthAttempt,
        reason: RejectionReason,
        metadata: RequestMetadata,
        subject: str | None = None,
    ) -> AuthOutcome:
        logger.info(
            "Authentication rejected: provider=%s reason=%s subject=%s ip=%s",
            attempt.provider.value if attempt.provider else None,
            reason.value,
            subject,
            metadata.ip_address,
        )
        return attempt.reject(reason)
