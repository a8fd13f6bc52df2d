"""Tests for the in-memory durable store contract."""

from datetime import datetime, timedelta, timezone

import pytest

from bizmarket.storage.errors import ConstraintViolation
from bizmarket.storage.models import Session

NOW = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


def _session(user_id, token="a" * 64, *, created=NOW, minutes=60):
    return Session(
        token=token,
        user_id=user_id,
        created_at=created,
        expires_at=created + timedelta(minutes=minutes),
    )


class TestUsers:
    def test_create_and_lookup_by_email(self, memory_store):
        user = memory_store.create_user("Owner@Example.com", "hash")
        assert user.email == "owner@example.com"
        assert memory_store.get_user_by_email("OWNER@example.com").id == user.id
        assert memory_store.get_user(user.id).email == "owner@example.com"

    def test_duplicate_email_violates_constraint(self, memory_store):
        memory_store.create_user("owner@example.com", "hash")
        with pytest.raises(ConstraintViolation):
            memory_store.create_user("OWNER@example.com", "hash")

    def test_returned_users_are_copies(self, memory_store):
        user = memory_store.create_user("owner@example.com", "hash")
        user.is_active = True
        assert not memory_store.get_user(user.id).is_active

    def test_activate_user_by_token_clears_token(self, memory_store):
        user = memory_store.create_user(
            "owner@example.com", "hash", email_verification_token="verify-me"
        )
        activated = memory_store.activate_user_by_token("verify-me")
        assert activated.id == user.id
        assert activated.is_active
        assert activated.email_verification_token is None
        assert memory_store.activate_user_by_token("verify-me") is None

    def test_update_password_hash(self, memory_store):
        user = memory_store.create_user("owner@example.com", "old")
        assert memory_store.update_password_hash(user.id, "new")
        assert memory_store.get_user(user.id).password_hash == "new"
        assert not memory_store.update_password_hash("missing", "new")


class TestSessions:
    def test_insert_requires_existing_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.insert_session(_session("missing"))

    def test_token_must_be_unique(self, memory_store):
        user = memory_store.create_user("owner@example.com", "hash")
        memory_store.insert_session(_session(user.id))
        with pytest.raises(ConstraintViolation):
            memory_store.insert_session(_session(user.id))

    def test_expiry_boundary(self, memory_store):
        user = memory_store.create_user("owner@example.com", "hash")
        session = _session(user.id)
        memory_store.insert_session(session)

        assert memory_store.get_active_session(session.token, session.expires_at - timedelta(seconds=1))
        assert memory_store.get_active_session(session.token, session.expires_at) is None

    def test_delete_session_reports_presence(self, memory_store):
        user = memory_store.create_user("owner@example.com", "hash")
        memory_store.insert_session(_session(user.id))
        assert memory_store.delete_session("a" * 64) is True
        assert memory_store.delete_session("a" * 64) is False

    def test_delete_expired_sessions(self, memory_store):
        user = memory_store.create_user("owner@example.com", "hash")
        memory_store.insert_session(_session(user.id, "a" * 64, minutes=10))
        memory_store.insert_session(_session(user.id, "b" * 64, minutes=120))

        assert memory_store.delete_expired_sessions(NOW + timedelta(minutes=30)) == 1
        assert list(memory_store.sessions) == ["b" * 64]


class TestResetTokens:
    def test_consume_once(self, memory_store):
        user = memory_store.create_user("owner@example.com", "hash")
        memory_store.create_reset_token(user.id, "digest", NOW + timedelta(minutes=30))

        assert memory_store.consume_reset_token("digest", NOW) == user.id
        assert memory_store.consume_reset_token("digest", NOW) is None

    def test_expired_token_not_consumed(self, memory_store):
        user = memory_store.create_user("owner@example.com", "hash")
        memory_store.create_reset_token(user.id, "digest", NOW)
        assert memory_store.consume_reset_token("digest", NOW) is None

    def test_unknown_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_reset_token("missing", "digest", NOW)
