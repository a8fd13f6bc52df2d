"""Tests for the login path: credential checks, lockout and session issue."""

import pytest
from argon2 import PasswordHasher, Type

from bizmarket.service.errors import (
    AccountLockedError,
    AccountUnverifiedError,
    InvalidCredentialsError,
)
from bizmarket.service.login_guard import LoginGuard
from bizmarket.service.passwords import PasswordService
from bizmarket.service.rate_limit import RateLimiter
from bizmarket.service.sessions import SessionManager

PASSWORD = "Corr3ct-Horse!"


@pytest.fixture(scope="module")
def passwords():
    return PasswordService()


@pytest.fixture
def sessions(memory_store, redis_cache, clock):
    return SessionManager(memory_store, redis_cache, clock=clock)


@pytest.fixture
def guard(memory_store, sessions, redis_cache, passwords):
    return LoginGuard(
        memory_store,
        sessions,
        RateLimiter(redis_cache),
        passwords,
        max_attempts=5,
        lockout_seconds=900,
    )


@pytest.fixture
def user(memory_store, passwords):
    return memory_store.create_user(
        "seller@example.com", passwords.hash(PASSWORD), is_active=True
    )


class TestSuccessfulLogin:
    async def test_login_issues_session(self, guard, user, sessions):
        result = await guard.login("seller@example.com", PASSWORD, ip_address="192.0.2.1")

        assert result.user.id == user.id
        assert result.session.user_id == user.id
        assert await sessions.get(result.session.token) is not None

    async def test_email_is_case_insensitive(self, guard, user):
        result = await guard.login("  Seller@Example.COM ", PASSWORD)
        assert result.user.id == user.id

    async def test_last_login_is_recorded_in_background(self, guard, user, memory_store):
        result = await guard.login("seller@example.com", PASSWORD)
        await guard.drain()
        assert memory_store.get_user(user.id).last_login_at == result.session.created_at

    async def test_current_hash_is_left_alone(self, guard, user, memory_store):
        await guard.login("seller@example.com", PASSWORD)
        await guard.drain()
        assert memory_store.get_user(user.id).password_hash == user.password_hash

    async def test_outdated_hash_is_upgraded_on_login(self, guard, memory_store, passwords):
        weak = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
        legacy = memory_store.create_user(
            "legacy@example.com", weak.hash(PASSWORD), is_active=True
        )

        await guard.login("legacy@example.com", PASSWORD)
        await guard.drain()

        stored = memory_store.get_user(legacy.id).password_hash
        assert stored != legacy.password_hash
        assert passwords.verify(stored, PASSWORD)
        assert not passwords.needs_rehash(stored)


class TestRejectedLogin:
    async def test_wrong_password(self, guard, user):
        with pytest.raises(InvalidCredentialsError):
            await guard.login("seller@example.com", "wrong-password")

    async def test_unknown_email_is_indistinguishable(self, guard, user):
        with pytest.raises(InvalidCredentialsError) as unknown:
            await guard.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await guard.login("seller@example.com", "wrong-password")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_unverified_account(self, guard, memory_store, passwords):
        memory_store.create_user("new@example.com", passwords.hash(PASSWORD), is_active=False)
        with pytest.raises(AccountUnverifiedError) as excinfo:
            await guard.login("new@example.com", PASSWORD)
        assert excinfo.value.status_code == 403
        assert excinfo.value.error_code == "account_unverified"

    async def test_failures_do_not_issue_sessions(self, guard, user, memory_store):
        with pytest.raises(InvalidCredentialsError):
            await guard.login("seller@example.com", "wrong-password")
        assert memory_store.sessions == {}


class TestLockout:
    """Lockout after repeated failures, keyed by email."""

    async def _fail(self, guard, email, times):
        for _ in range(times):
            with pytest.raises(InvalidCredentialsError):
                await guard.login(email, "wrong-password")

    async def test_correct_password_refused_after_max_failures(
        self, guard, user, memory_store
    ):
        await self._fail(guard, "seller@example.com", 5)

        with pytest.raises(AccountLockedError) as excinfo:
            await guard.login("seller@example.com", PASSWORD)

        assert excinfo.value.status_code == 429
        assert excinfo.value.error_code == "account_locked"
        assert 0 < excinfo.value.retry_after <= 900
        assert memory_store.sessions == {}

    async def test_fewer_failures_do_not_lock(self, guard, user):
        await self._fail(guard, "seller@example.com", 4)
        result = await guard.login("seller@example.com", PASSWORD)
        assert result.session is not None

    async def test_success_does_not_reset_counter(self, guard, user):
        await self._fail(guard, "seller@example.com", 4)
        await guard.login("seller@example.com", PASSWORD)
        await self._fail(guard, "seller@example.com", 1)

        with pytest.raises(AccountLockedError):
            await guard.login("seller@example.com", PASSWORD)

    async def test_unknown_email_locks_too(self, guard):
        await self._fail(guard, "ghost@example.com", 5)
        with pytest.raises(AccountLockedError):
            await guard.login("ghost@example.com", "anything")

    async def test_lock_is_per_email(self, guard, user, memory_store, passwords):
        memory_store.create_user("buyer@example.com", passwords.hash(PASSWORD), is_active=True)
        await self._fail(guard, "seller@example.com", 5)

        result = await guard.login("buyer@example.com", PASSWORD)

        assert result.user.email == "buyer@example.com"

    async def test_lock_lapses_with_counter_window(self, guard, user, fake_redis):
        await self._fail(guard, "seller@example.com", 5)
        await fake_redis.delete(LoginGuard.failed_key("seller@example.com"))

        result = await guard.login("seller@example.com", PASSWORD)

        assert result.user.id == user.id

    async def test_no_cache_means_no_lockout(self, memory_store, user, passwords, clock):
        sessions = SessionManager(memory_store, None, clock=clock)
        guard = LoginGuard(
            memory_store, sessions, RateLimiter(None), passwords, max_attempts=2
        )
        await self._fail(guard, "seller@example.com", 4)

        result = await guard.login("seller@example.com", PASSWORD)

        assert result.user.id == user.id
