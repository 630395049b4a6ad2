"""
auth/providers/local.py -- Local credential provider.

Three jobs:
  Password login: verify_credentials() checks an email/password pair against
      the stored bcrypt hash.

  Account lifecycle: register() creates the account, mark_email_verified()
      activates it once the owner proves the address, change_password()
      replaces the hash.

  Session tokens: issue_session_token() signs an HS256 JWT for a locally
      authenticated account; validate_token() accepts those tokens back. The
      token carries sub (internal user id), iss, iat, exp and typ.

Security design decisions:
  Timing equalization: bcrypt always runs, against the hasher's dummy hash
      when the email is unknown or the account has no password, so response
      time does not reveal which emails are registered.

  Generic failures: unknown email, wrong password, suspended account and
      unverified email all return None. The resolver reports all of them as
      the same INVALID_CREDENTIALS reason.

  Algorithm pinning: decode accepts HS256 only, so an RS256 or "none" token
      can never be validated with the shared secret.

  Rehash on login: a successful login whose stored hash used a different
      bcrypt cost is re-hashed at the current cost.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.hashing import PasswordHasher
from auth.models import AccountStatus, CredentialRecord, ExternalIdentity, ProviderName
from auth.providers.base import IdentityProvider
from auth.store import UserStore
from core.offload import run_store

logger = logging.getLogger("authgate.auth.local")

_ALGORITHM = "HS256"
_ACCESS = "access"
_REFRESH = "refresh"


class LocalCredentialProvider(IdentityProvider):
    """Validates local passwords and the session tokens issued for them."""

    name = ProviderName.LOCAL

    def __init__(
        self,
        store: UserStore,
        hasher: PasswordHasher,
        secret_key: str,
        issuer: str = "authgate",
        token_expire_seconds: int = 3600,
        refresh_token_expire_seconds: int = 7 * 24 * 3600,
        require_verified_email: bool = True,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._secret_key = secret_key
        self._issuer = issuer
        self._token_expire_seconds = token_expire_seconds
        self._refresh_token_expire_seconds = refresh_token_expire_seconds
        self._require_verified_email = require_verified_email

    @property
    def issuer(self) -> str:
        return self._issuer

    # ------------------------------------------------------------------
    # Password path
    # ------------------------------------------------------------------

    async def verify_credentials(self, email: str, password: str) -> ExternalIdentity | None:
        """Return the account's identity if email/password match, else None.

        Raises StorageFailureError if the credential store is unreachable.
        """
        record = await run_store(self._store.get_by_email, email)

        if record is None or record.password_hash is None:
            # Equalize timing -- do NOT return before running bcrypt.
            await self._hasher.verify_password_async(password, self._hasher.dummy_hash)
            return None

        if not await self._hasher.verify_password_async(password, record.password_hash):
            return None

        if record.status is AccountStatus.SUSPENDED:
            logger.info("Password login refused for suspended account %s", record.id)
            return None
        if self._require_verified_email and not record.email_verified:
            logger.info("Password login refused for unverified account %s", record.id)
            return None

        if self._hasher.needs_rehash(record.password_hash):
            new_hash = await self._hasher.hash_password_async(password)
            await run_store(self._store.update_user, record.id, password_hash=new_hash)
            logger.info("Re-hashed password for account %s at cost %d", record.id, self._hasher.rounds)

        return ExternalIdentity(provider=self.name, subject=record.id)

    async def register(self, email: str, password: str) -> CredentialRecord:
        """Create a local account with a freshly hashed password.

        The account starts PENDING_VERIFICATION when email verification is
        required, ACTIVE otherwise.

        Raises DuplicateAccountError if the email is already registered.
        """
        if not email.strip() or not password:
            raise ValueError("email and password are required")
        password_hash = await self._hasher.hash_password_async(password)
        verified = not self._require_verified_email
        record = CredentialRecord(
            email=email,
            password_hash=password_hash,
            email_verified=verified,
            status=AccountStatus.ACTIVE if verified else AccountStatus.PENDING_VERIFICATION,
        )
        created = await run_store(self._store.create_user, record)
        logger.info("Registered local account %s", created.id)
        return created

    async def mark_email_verified(self, user_id: str) -> CredentialRecord | None:
        """Record that the account owns its email address.

        A PENDING_VERIFICATION account becomes ACTIVE. A suspended account
        stays suspended. Idempotent. Returns the updated record, or None if
        user_id is unknown. Delivery of the verification code is the
        caller's job.
        """
        record = await run_store(self._store.get_by_id, user_id)
        if record is None:
            return None
        fields: dict = {}
        if not record.email_verified:
            fields["email_verified"] = True
        if record.status is AccountStatus.PENDING_VERIFICATION:
            fields["status"] = AccountStatus.ACTIVE
        if fields:
            await run_store(self._store.update_user, user_id, **fields)
            logger.info("Verified email for account %s", user_id)
        return await run_store(self._store.get_by_id, user_id)

    async def change_password(self, user_id: str, new_password: str) -> bool:
        """Replace the account's password hash. False if user_id is unknown.

        Used for both password change and reset; checking the old password
        or a reset code happens before this call. Accounts created through an
        external provider gain a local password this way.
        """
        if not new_password:
            raise ValueError("new password is required")
        new_hash = await self._hasher.hash_password_async(new_password)
        updated = await run_store(self._store.update_user, user_id, password_hash=new_hash)
        if updated:
            logger.info("Changed password for account %s", user_id)
        return updated

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    def issue_session_token(self, user_id: str, expire_seconds: int = 0) -> str:
        """Sign a short-lived access token for user_id.

        expire_seconds of 0 uses the configured token lifetime.
        """
        duration = expire_seconds if expire_seconds > 0 else self._token_expire_seconds
        return self._encode(user_id, _ACCESS, duration)

    def issue_refresh_token(self, user_id: str) -> str:
        """Sign a long-lived refresh token. validate_token() does not accept it."""
        return self._encode(user_id, _REFRESH, self._refresh_token_expire_seconds)

    async def validate_token(self, token: str) -> ExternalIdentity | None:
        """Verify an access token issued by issue_session_token()."""
        return self._decode(token, _ACCESS)

    async def validate_refresh_token(self, token: str) -> ExternalIdentity | None:
        """Verify a refresh token issued by issue_refresh_token()."""
        return self._decode(token, _REFRESH)

    def _encode(self, user_id: str, token_type: str, duration: int) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "iss": self._issuer,
            "iat": now,
            "exp": now + timedelta(seconds=duration),
            "typ": token_type,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def _decode(self, token: str, token_type: str) -> ExternalIdentity | None:
        """Verify signature, expiry, issuer and token type. None on any failure."""
        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={"require_exp": True, "require_sub": True, "require_iss": True},
            )
        except JWTError as exc:
            logger.debug("Local token rejected: %s", exc.__class__.__name__)
            return None
        if claims.get("typ") != token_type or not claims.get("sub"):
            return None
        return ExternalIdentity(provider=self.name, subject=str(claims["sub"]), claims=claims)
