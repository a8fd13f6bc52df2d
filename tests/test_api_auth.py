"""End-to-end tests for the /v1 auth and contact routes.

Tests the HTTP surface including:
- Signup, email verification and login with the session cookie
- Logout and sign-out-everywhere
- Login lockout and per-IP rate limits
- Honeypot and timing checks on public forms
- Behaviour when the cache or the durable store is down
"""

import time
from unittest.mock import AsyncMock, patch

import pytest
from fakeredis import aioredis as fake_aioredis
from fastapi.testclient import TestClient

from bizmarket import app as app_module
from bizmarket.service.runtime import reset_runtime_for_tests
from bizmarket.storage.errors import CacheUnavailable, StoreUnavailable
from bizmarket.storage.redis_cache import RedisCache

PASSWORD = "Str0ng-Passw0rd"


def _runtime_with_cache():
    cache = RedisCache(client=fake_aioredis.FakeRedis(decode_responses=True))
    return reset_runtime_for_tests(cache=cache)


@pytest.fixture
def runtime():
    return _runtime_with_cache()


@pytest.fixture
def client(runtime):
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def active_user(runtime):
    return runtime.store.create_user(
        "seller@example.com", runtime.passwords.hash(PASSWORD), is_active=True
    )


def _login(client, email="seller@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _past_ms(seconds=5):
    return int(time.time() * 1000) - seconds * 1000


class TestLoginAndCookie:
    """Tests for session issue and the cookie contract."""

    def test_login_sets_session_cookie(self, client, active_user, runtime):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["email"] == "seller@example.com"
        assert "password_hash" not in body["data"]["user"]

        cookie = response.headers["set-cookie"]
        assert cookie.startswith("sid=")
        assert f"Max-Age={runtime.settings.session_ttl_minutes * 60}" in cookie
        assert "HttpOnly" in cookie
        assert "Path=/" in cookie
        assert "samesite=lax" in cookie.lower()

    def test_cookie_authenticates_me(self, client, active_user):
        _login(client)

        response = client.get("/v1/me")

        assert response.status_code == 200
        assert response.json()["data"]["id"] == active_user.id

    def test_me_without_cookie_is_unauthorized(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    @pytest.mark.parametrize("token", ["garbage", "0" * 64, "Z" * 64])
    def test_forged_cookie_is_unauthorized(self, client, active_user, token):
        client.cookies.set("sid", token)
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "authentication required"

    def test_wrong_password_is_generic(self, client, active_user):
        wrong = _login(client, password="Wrong-Passw0rd")
        unknown = _login(client, email="nobody@example.com")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert "set-cookie" not in wrong.headers

    def test_unverified_account_is_forbidden(self, client, runtime):
        runtime.store.create_user("new@example.com", runtime.passwords.hash(PASSWORD))
        response = _login(client, email="new@example.com")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_unverified"

    def test_security_headers(self, client):
        response = client.get("/v1/me")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
        assert response.headers["X-Request-ID"]


class TestLogout:
    def test_logout_revokes_session(self, client, active_user, runtime):
        token = _login(client).cookies.get("sid")

        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        assert token not in runtime.store.sessions
        client.cookies.clear()
        client.cookies.set("sid", token)
        assert client.get("/v1/me").status_code == 401

    def test_logout_without_session_is_ok(self, client):
        assert client.post("/v1/auth/logout").status_code == 200

    def test_logout_reports_failed_cache_delete(self, client, active_user, runtime):
        token = _login(client).cookies.get("sid")

        with patch.object(
            runtime.cache,
            "revoke_session",
            side_effect=CacheUnavailable("revoke_session", "timeout"),
        ):
            response = client.post("/v1/auth/logout")

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"
        assert response.headers["Retry-After"]
        assert "set-cookie" not in response.headers
        assert token not in runtime.store.sessions

        # Retrying once the cache is back finishes the job
        assert client.post("/v1/auth/logout").status_code == 200
        client.cookies.clear()
        client.cookies.set("sid", token)
        assert client.get("/v1/me").status_code == 401


class TestSessionManagement:
    def test_list_sessions_marks_current(self, client, active_user):
        _login(client)
        client.cookies.clear()
        _login(client)

        response = client.get("/v1/auth/sessions")

        items = response.json()["data"]["items"]
        assert len(items) == 2
        assert [item["current"] for item in items].count(True) == 1
        assert all("token" not in item for item in items)

    def test_revoke_all_signs_out_everywhere(self, client, active_user, runtime):
        first = _login(client).cookies.get("sid")
        client.cookies.clear()
        _login(client)

        response = client.delete("/v1/auth/sessions")

        assert response.status_code == 200
        assert response.json()["data"] == {"total": 2, "revoked": 2, "failed": 0}
        assert runtime.store.list_active_sessions(active_user.id, runtime.sessions._now()) == []
        client.cookies.clear()
        client.cookies.set("sid", first)
        assert client.get("/v1/me").status_code == 401


class TestLockoutAndRateLimits:
    def test_sixth_login_attempt_creates_no_session(self, client, active_user, runtime):
        for _ in range(5):
            assert _login(client, password="Wrong-Passw0rd").status_code == 401

        response = _login(client)

        assert response.status_code == 429
        assert response.json()["error"]["code"] in {"rate_limited", "account_locked"}
        assert int(response.headers["Retry-After"]) > 0
        assert runtime.store.list_active_sessions(active_user.id, runtime.sessions._now()) == []

    def test_locked_account_refuses_correct_password(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_LOGIN_PER_MINUTE", "100")
        runtime = _runtime_with_cache()
        runtime.store.create_user(
            "seller@example.com", runtime.passwords.hash(PASSWORD), is_active=True
        )
        with TestClient(app_module.app) as client:
            for _ in range(5):
                _login(client, password="Wrong-Passw0rd")

            response = _login(client)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "account_locked"
        assert 0 < int(response.headers["Retry-After"]) <= runtime.settings.lockout_window_seconds
        assert runtime.store.sessions == {}

    def test_signup_rate_limited_per_ip(self, client):
        statuses = [
            client.post(
                "/v1/auth/signup",
                json={"email": f"user{i}@example.com", "password": PASSWORD},
            ).status_code
            for i in range(4)
        ]
        assert statuses == [201, 201, 201, 429]


class TestSignupFlow:
    def test_signup_verify_login(self, client, runtime):
        response = client.post(
            "/v1/auth/signup",
            json={
                "email": "Buyer@Example.com",
                "password": PASSWORD,
                "first_name": "Ana",
                "form_time": _past_ms(),
            },
        )
        assert response.status_code == 201
        user = response.json()["data"]
        assert user["email"] == "buyer@example.com"
        assert user["is_active"] is False

        token = runtime.store.users[user["id"]].email_verification_token
        verified = client.post("/v1/auth/verify-email", json={"token": token})
        assert verified.status_code == 200
        assert verified.json()["data"]["is_active"] is True

        assert _login(client, email="buyer@example.com").status_code == 200

    def test_duplicate_signup_conflicts(self, client, active_user):
        response = client.post(
            "/v1/auth/signup", json={"email": "seller@example.com", "password": PASSWORD}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize("website", ["http://spam.example", "   "])
    def test_honeypot_signup_creates_no_user(self, client, runtime, website):
        response = client.post(
            "/v1/auth/signup",
            json={
                "email": "bot@example.com",
                "password": PASSWORD,
                "website": website,
            },
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid request"
        assert runtime.store.get_user_by_email("bot@example.com") is None

    def test_invalid_email_rejected(self, client):
        response = client.post(
            "/v1/auth/signup", json={"email": "not-an-email", "password": PASSWORD}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestPasswordReset:
    def test_forgot_password_is_uniform(self, client, active_user):
        known = client.post("/v1/auth/forgot-password", json={"email": "seller@example.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 202
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_revokes_existing_sessions(self, client, active_user, runtime):
        _login(client)
        token = client.portal.call(runtime.accounts.request_password_reset, "seller@example.com")

        response = client.post(
            "/v1/auth/reset-password", json={"token": token, "new_password": "N3w-Passw0rd!"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 1
        assert client.get("/v1/me").status_code == 401
        assert _login(client, password="N3w-Passw0rd!").status_code == 200

    def test_reset_reports_sessions_left_in_cache(self, client, active_user, runtime):
        _login(client)
        token = client.portal.call(runtime.accounts.request_password_reset, "seller@example.com")

        with patch.object(
            runtime.cache,
            "revoke_session",
            side_effect=CacheUnavailable("revoke_session", "timeout"),
        ):
            response = client.post(
                "/v1/auth/reset-password", json={"token": token, "new_password": "N3w-Passw0rd!"}
            )

        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "service_unavailable"
        assert response.headers["Retry-After"]

    def test_bad_reset_token(self, client):
        response = client.post(
            "/v1/auth/reset-password", json={"token": "nope", "new_password": "N3w-Passw0rd!"}
        )
        assert response.status_code == 400


class TestContact:
    def _payload(self, **overrides):
        payload = {
            "listing_id": "lst_123",
            "name": "Ana Buyer",
            "email": "buyer@example.com",
            "message": "Is the business still for sale?",
            "form_time": _past_ms(),
        }
        payload.update(overrides)
        return payload

    def test_contact_accepted(self, client):
        response = client.post("/v1/contact", json=self._payload())
        assert response.status_code == 202

    def test_too_fast_submission_rejected(self, client):
        response = client.post(
            "/v1/contact", json=self._payload(form_time=int(time.time() * 1000))
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid request"

    def test_contact_rate_limited_per_sender(self, client, runtime):
        limit = runtime.settings.rate_limit_contact_per_hour
        for _ in range(limit):
            assert client.post("/v1/contact", json=self._payload()).status_code == 202
        assert client.post("/v1/contact", json=self._payload()).status_code == 429
        other = self._payload(email="someone-else@example.com")
        assert client.post("/v1/contact", json=other).status_code == 202


class TestDegradedStores:
    """Cache outages degrade silently; durable outages fail closed."""

    def _broken_cache(self):
        cache = AsyncMock()
        for name in (
            "cache_session",
            "get_session",
            "revoke_session",
            "get_counter",
            "increment_counter",
            "counter_ttl",
            "ping",
        ):
            getattr(cache, name).side_effect = CacheUnavailable(name, "connection refused")
        return cache

    def test_login_and_lookup_survive_cache_outage(self):
        runtime = reset_runtime_for_tests(cache=self._broken_cache())
        runtime.store.create_user(
            "seller@example.com", runtime.passwords.hash(PASSWORD), is_active=True
        )
        with TestClient(app_module.app) as client:
            assert _login(client).status_code == 200
            assert client.get("/v1/me").status_code == 200

            health = client.get("/healthz")

        assert health.status_code == 200
        assert health.json()["status"] == "degraded"

    def test_durable_outage_fails_closed(self, client, active_user, runtime):
        _login(client)
        # Force the durable path by dropping the cache tier
        runtime.sessions.cache = None
        with patch.object(
            runtime.store,
            "get_active_session",
            side_effect=StoreUnavailable("get_active_session", "down"),
        ):
            response = client.get("/v1/me")

        assert response.status_code == 503
        assert response.json()["error"] == {
            "code": "service_unavailable",
            "message": "service unavailable",
            "details": None,
        }


class TestHealth:
    def test_healthy_with_cache(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_degraded_without_cache(self):
        reset_runtime_for_tests(cache=None)
        with TestClient(app_module.app) as client:
            response = client.get("/healthz")
        assert response.json()["status"] == "degraded"
        assert response.json()["checks"]["redis"]["status"] == "not_configured"
