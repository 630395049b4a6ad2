"""
auth/store.py -- SQLAlchemy Core persistence for credential records.

Pattern: Repository + Data Mapper (same as devices/store.py).
UserStore is the repository; _row_to_record is the mapper. Providers and the
resolver never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are stored lowercased so lookups are case-insensitive.
  Password hashes are written and read here but never logged.

External identity links:
  UNIQUE(external_provider, external_subject) is a real constraint. Both
  columns stay NULL for local-only accounts; SQLite and PostgreSQL treat
  NULLs as distinct in UNIQUE constraints, which is what we want here.
  Concurrent auto-provisioning of the same external subject therefore ends
  with one row: the loser's INSERT fails and it re-reads the winner's row.

All methods are synchronous. Async callers go through core.offload.run_store,
which also maps SQLAlchemyError to StorageFailureError.

Layer rule: no imports from devices/.
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import AccountStatus, CredentialRecord
from core.db import make_engine, now_iso
from core.errors import DuplicateAccountError

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for external-only accounts
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("status", String(30), nullable=False, server_default=AccountStatus.PENDING_VERIFICATION.value),
    Column("external_provider", String(30)),  # "AUTH0"
    Column("external_subject", Text),  # provider's stable subject id
    Column("created_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    UniqueConstraint("external_provider", "external_subject", name="uq_users_external"),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for CredentialRecord entities.

    Usage:
        store = UserStore("sqlite:///authgate.db")
        record = store.create_user(CredentialRecord(email="a@example.com", password_hash=h))
        store.get_by_email("A@example.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: str) -> CredentialRecord | None:
        """Look up an account by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def get_by_email(self, email: str) -> CredentialRecord | None:
        """Look up an account by email, case-insensitively."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == _normalize_email(email))).fetchone()
        return _row_to_record(row) if row is not None else None

    def get_by_external(self, provider: str, subject: str) -> CredentialRecord | None:
        """Look up an account by its linked (provider, subject) pair."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.external_provider == provider) & (_users.c.external_subject == subject)
                )
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, record: CredentialRecord) -> CredentialRecord:
        """Insert a new account and return it with id and created_at filled in.

        Raises DuplicateAccountError if the email is already registered.
        """
        user_id = record.id or uuid.uuid4().hex
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _users.insert().values(
                        id=user_id,
                        email=_normalize_email(record.email),
                        password_hash=record.password_hash,
                        email_verified=1 if record.email_verified else 0,
                        status=record.status.value,
                        external_provider=record.external_provider,
                        external_subject=record.external_subject,
                        created_at=now_iso(),
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise DuplicateAccountError("An account with this email already exists") from exc
        created = self.get_by_id(user_id)
        assert created is not None
        return created

    def provision_external(self, provider: str, subject: str, email: str | None) -> CredentialRecord:
        """Create an account linked to an external identity, or return the existing one.

        Safe under concurrent calls for the same (provider, subject): the
        UNIQUE constraint lets exactly one INSERT win and everyone else
        re-reads that row. Federated accounts are ACTIVE and verified because
        the provider vouched for them.

        When the provider supplied no email (or it is taken by a local
        account), a placeholder email keyed by the subject is used so the
        NOT NULL / UNIQUE constraints on email still hold.
        """
        existing = self.get_by_external(provider, subject)
        if existing is not None:
            return existing

        candidates = [email] if email else []
        candidates.append(f"{provider.lower()}|{subject}@external.invalid")
        for candidate in candidates:
            try:
                with self.engine.connect() as conn:
                    conn.execute(
                        _users.insert().values(
                            id=uuid.uuid4().hex,
                            email=_normalize_email(candidate),
                            password_hash=None,
                            email_verified=1,
                            status=AccountStatus.ACTIVE.value,
                            external_provider=provider,
                            external_subject=subject,
                            created_at=now_iso(),
                        )
                    )
                    conn.commit()
            except IntegrityError:
                # Either a concurrent call linked this subject first, or the
                # email belongs to another account. Check which.
                winner = self.get_by_external(provider, subject)
                if winner is not None:
                    return winner
                continue
            break
        provisioned = self.get_by_external(provider, subject)
        if provisioned is None:
            raise DuplicateAccountError("Could not provision external identity")
        return provisioned

    def link_external(self, user_id: str, provider: str, subject: str) -> bool:
        """Associate an external identity with an existing account.

        Returns False if the account does not exist. Raises
        DuplicateAccountError if the identity is already linked elsewhere.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.update()
                    .where(_users.c.id == user_id)
                    .values(external_provider=provider, external_subject=subject)
                )
                conn.commit()
        except IntegrityError as exc:
            raise DuplicateAccountError("External identity already linked to another account") from exc
        return result.rowcount > 0

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing account.

        Accepted fields: status, email_verified, password_hash.
        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - {"status", "email_verified", "password_hash"}
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "status" in fields:
            fields["status"] = AccountStatus(fields["status"]).value
        if "email_verified" in fields:
            fields["email_verified"] = 1 if fields["email_verified"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> None:
        """Stamp the current UTC timestamp as last_login_at for the account."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=now_iso()))
            conn.commit()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers / row mapper
# ---------------------------------------------------------------------------


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _row_to_record(row) -> CredentialRecord:
    return CredentialRecord(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        email_verified=bool(row.email_verified),
        status=AccountStatus(row.status),
        external_provider=row.external_provider,
        external_subject=row.external_subject,
        created_at=row.created_at,
        last_login_at=row.last_login_at,
    )
