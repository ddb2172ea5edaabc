"""
tests/test_credential_store.py -- Unit tests for auth/store.py.

Covers:
  - Email normalisation on create and lookup
  - Duplicate email -> PrincipalAlreadyExists (UNIQUE constraint is the arbiter)
  - Secret hashing and verification (incl. secrets past bcrypt's 72 bytes), update_secret
  - set_active / count_active_admins / update_last_login
  - NotFound on updates against a missing id
  - Storage failures surface as StorageUnavailable
"""

from __future__ import annotations

import pytest

from auth.errors import NotFound, PrincipalAlreadyExists, StorageUnavailable
from auth.store import CredentialStore, normalize_email


class TestCreateAndLookup:
    def test_email_is_normalised(self, credentials: CredentialStore) -> None:
        p = credentials.create_principal("  Ann@Example.COM ", "Ann", "s3cret-pass")
        assert p.email == "ann@example.com"
        assert credentials.find_by_email("ANN@example.com").id == p.id

    def test_find_unknown_email_returns_none(self, credentials: CredentialStore) -> None:
        assert credentials.find_by_email("nobody@x.com") is None

    def test_get_by_id(self, credentials: CredentialStore) -> None:
        p = credentials.create_principal("bob@x.com", "Bob", "s3cret-pass", department="Ops", position="Lead")
        loaded = credentials.get_by_id(p.id)
        assert loaded.name == "Bob"
        assert loaded.department == "Ops"
        assert loaded.position == "Lead"
        assert loaded.role == "employee"
        assert loaded.is_active is True
        assert credentials.get_by_id(9999) is None

    def test_duplicate_email_rejected(self, credentials: CredentialStore) -> None:
        credentials.create_principal("dup@x.com", "One", "s3cret-pass")
        with pytest.raises(PrincipalAlreadyExists):
            credentials.create_principal("DUP@x.com", "Two", "other-pass")

    def test_unknown_role_rejected(self, credentials: CredentialStore) -> None:
        with pytest.raises(ValueError):
            credentials.create_principal("r@x.com", "R", "s3cret-pass", role="superuser")

    def test_has_principals(self, credentials: CredentialStore) -> None:
        assert credentials.has_principals() is False
        credentials.create_principal("first@x.com", "First", "s3cret-pass")
        assert credentials.has_principals() is True

    def test_normalize_email(self) -> None:
        assert normalize_email(" A@B.c ") == "a@b.c"


class TestSecrets:
    def test_secret_is_hashed_not_stored_plain(self, credentials: CredentialStore) -> None:
        p = credentials.create_principal("h@x.com", "H", "plain-secret")
        assert p.hashed_password != "plain-secret"
        assert p.hashed_password.startswith("$2")

    def test_verify_secret(self, credentials: CredentialStore) -> None:
        p = credentials.create_principal("v@x.com", "V", "right-secret")
        assert credentials.verify_secret(p, "right-secret") is True
        assert credentials.verify_secret(p, "wrong-secret") is False

    def test_update_secret(self, credentials: CredentialStore) -> None:
        p = credentials.create_principal("u@x.com", "U", "old-secret")
        credentials.update_secret(p.id, "new-secret")
        reloaded = credentials.get_by_id(p.id)
        assert credentials.verify_secret(reloaded, "new-secret") is True
        assert credentials.verify_secret(reloaded, "old-secret") is False

    def test_update_secret_missing_principal(self, credentials: CredentialStore) -> None:
        with pytest.raises(NotFound):
            credentials.update_secret(404, "whatever")

    def test_secret_longer_than_72_bytes(self, credentials: CredentialStore) -> None:
        p = credentials.create_principal("long@x.com", "L", "x" * 80)
        assert credentials.verify_secret(p, "x" * 80) is True
        assert credentials.verify_secret(p, "y" * 80) is False

    def test_multibyte_secret(self, credentials: CredentialStore) -> None:
        secret = "пароль-" * 8  # 104 UTF-8 bytes
        p = credentials.create_principal("mb@x.com", "MB", secret)
        assert credentials.verify_secret(p, secret) is True
        assert credentials.verify_secret(p, "пароль") is False

    def test_malformed_stored_hash_never_matches(self, credentials: CredentialStore) -> None:
        p = credentials.create_principal("m@x.com", "M", "secret-m")
        p.hashed_password = "not-a-bcrypt-hash"
        assert credentials.verify_secret(p, "secret-m") is False


class TestActivation:
    def test_set_active_round_trip(self, credentials: CredentialStore) -> None:
        p = credentials.create_principal("a@x.com", "A", "s3cret-pass")
        credentials.set_active(p.id, False)
        assert credentials.get_by_id(p.id).is_active is False
        credentials.set_active(p.id, True)
        assert credentials.get_by_id(p.id).is_active is True

    def test_set_active_missing_principal(self, credentials: CredentialStore) -> None:
        with pytest.raises(NotFound):
            credentials.set_active(404, False)

    def test_count_active_admins(self, credentials: CredentialStore) -> None:
        a1 = credentials.create_principal("a1@x.com", "A1", "s3cret-pass", role="admin")
        credentials.create_principal("a2@x.com", "A2", "s3cret-pass", role="admin")
        credentials.create_principal("e@x.com", "E", "s3cret-pass")
        assert credentials.count_active_admins() == 2
        credentials.set_active(a1.id, False)
        assert credentials.count_active_admins() == 1

    def test_update_last_login_uses_server_clock(self, credentials: CredentialStore, clock) -> None:
        p = credentials.create_principal("l@x.com", "L", "s3cret-pass")
        assert credentials.get_by_id(p.id).last_login is None
        clock.advance(minutes=5)
        credentials.update_last_login(p.id)
        assert credentials.get_by_id(p.id).last_login == "2026-01-01T12:05:00.000000+00:00"


class TestStorageFailure:
    def test_driver_failure_becomes_storage_unavailable(self, credentials: CredentialStore, engine) -> None:
        with engine.begin() as conn:
            conn.exec_driver_sql("DROP TABLE principals")
        with pytest.raises(StorageUnavailable):
            credentials.find_by_email("x@x.com")
