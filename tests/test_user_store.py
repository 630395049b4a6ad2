"""
tests/test_user_store.py -- Tests for auth/store.py (credential records and external links).
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from auth.models import AccountStatus, CredentialRecord
from auth.store import UserStore
from core.errors import DuplicateAccountError


class TestCreateAndLookup:
    def test_create_fills_id_and_timestamp(self, user_store: UserStore) -> None:
        record = user_store.create_user(CredentialRecord(email="Alice@Example.com", password_hash="h"))
        assert len(record.id) == 32
        assert record.email == "alice@example.com"
        assert record.created_at
        assert record.last_login_at is None
        assert record.status is AccountStatus.PENDING_VERIFICATION

    def test_explicit_id_kept(self, user_store: UserStore) -> None:
        record = user_store.create_user(CredentialRecord(id="u1", email="u1"))
        assert user_store.get_by_id("u1") == record

    def test_duplicate_email(self, user_store: UserStore) -> None:
        user_store.create_user(CredentialRecord(email="a@example.com"))
        with pytest.raises(DuplicateAccountError):
            user_store.create_user(CredentialRecord(email="A@EXAMPLE.COM"))

    def test_missing_lookups(self, user_store: UserStore) -> None:
        assert user_store.get_by_id("nope") is None
        assert user_store.get_by_email("nope@example.com") is None
        assert user_store.get_by_external("AUTH0", "auth0|nope") is None

    def test_repr_hides_password_hash(self, user_store: UserStore) -> None:
        record = user_store.create_user(CredentialRecord(email="a@example.com", password_hash="$2b$04$secret"))
        assert "secret" not in repr(record)


class TestUpdates:
    def test_update_fields(self, user_store: UserStore) -> None:
        record = user_store.create_user(CredentialRecord(email="a@example.com"))
        assert user_store.update_user(record.id, status="SUSPENDED", email_verified=True) is True
        updated = user_store.get_by_id(record.id)
        assert updated.status is AccountStatus.SUSPENDED
        assert updated.email_verified is True

    def test_update_unknown_field(self, user_store: UserStore) -> None:
        record = user_store.create_user(CredentialRecord(email="a@example.com"))
        with pytest.raises(ValueError):
            user_store.update_user(record.id, email="b@example.com")

    def test_update_missing_user(self, user_store: UserStore) -> None:
        assert user_store.update_user("nope", status="ACTIVE") is False

    def test_update_last_login(self, user_store: UserStore) -> None:
        record = user_store.create_user(CredentialRecord(email="a@example.com"))
        user_store.update_last_login(record.id)
        assert user_store.get_by_id(record.id).last_login_at is not None


class TestExternalLinks:
    def test_provision_creates_active_verified_account(self, user_store: UserStore) -> None:
        record = user_store.provision_external("AUTH0", "auth0|abc", "fed@example.com")
        assert record.email == "fed@example.com"
        assert record.status is AccountStatus.ACTIVE
        assert record.email_verified is True
        assert record.password_hash is None
        assert user_store.get_by_external("AUTH0", "auth0|abc") == record

    def test_provision_is_idempotent(self, user_store: UserStore) -> None:
        first = user_store.provision_external("AUTH0", "auth0|abc", "fed@example.com")
        second = user_store.provision_external("AUTH0", "auth0|abc", "fed@example.com")
        assert first.id == second.id

    def test_provision_with_taken_email_uses_placeholder(self, user_store: UserStore) -> None:
        local = user_store.create_user(CredentialRecord(email="taken@example.com"))
        record = user_store.provision_external("AUTH0", "auth0|abc", "taken@example.com")
        assert record.id != local.id
        assert record.email == "auth0|auth0|abc@external.invalid"

    def test_provision_without_email(self, user_store: UserStore) -> None:
        record = user_store.provision_external("AUTH0", "auth0|xyz", None)
        assert record.email.endswith("@external.invalid")

    def test_concurrent_provisioning_converges(self, tmp_path: Path) -> None:
        store = UserStore(f"sqlite:///{tmp_path / 'users.db'}")
        try:
            with ThreadPoolExecutor(max_workers=6) as pool:
                records = list(
                    pool.map(lambda _: store.provision_external("AUTH0", "auth0|race", "race@example.com"), range(6))
                )
            assert len({r.id for r in records}) == 1
        finally:
            store.close()

    def test_link_external(self, user_store: UserStore) -> None:
        record = user_store.create_user(CredentialRecord(email="a@example.com"))
        assert user_store.link_external(record.id, "AUTH0", "auth0|abc") is True
        assert user_store.get_by_external("AUTH0", "auth0|abc").id == record.id
        assert user_store.link_external("nope", "AUTH0", "auth0|other") is False

    def test_link_already_linked_identity(self, user_store: UserStore) -> None:
        a = user_store.create_user(CredentialRecord(email="a@example.com"))
        b = user_store.create_user(CredentialRecord(email="b@example.com"))
        user_store.link_external(a.id, "AUTH0", "auth0|abc")
        with pytest.raises(DuplicateAccountError):
            user_store.link_external(b.id, "AUTH0", "auth0|abc")
