"""Integration tests for the account API.

Tests the complete auth flow including:
- Registration
- Login with and without two-factor verification
- Code expiry, attempt ceiling and resend interval
- Profile, sessions and preferences
- Password change and reset
- Admin user listing
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from coursegate import app as app_module
from coursegate.service.runtime import get_runtime

PASSWORD = "TestPassword123"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def runtime(clock, mailer):
    """Runtime with a controllable clock and a mailer that records codes."""
    rt = get_runtime()
    rt.verification.clock = clock
    rt.verification.mailer = mailer
    return rt


def _register(client, email="alice@example.com", name="Alice", role="student"):
    response = client.post(
        "/api/users/register",
        json={"email": email, "password": PASSWORD, "name": name, "role": role},
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _login(client, email="alice@example.com", password=PASSWORD, **extra):
    return client.post("/api/users/login", json={"email": email, "password": password, **extra})


def _enable_two_factor(client, token):
    response = client.put("/api/users/two-factor", json={"enabled": True}, headers=_bearer(token))
    assert response.status_code == 200, response.text


def _start_two_factor_login(client, runtime):
    """Register Alice with 2FA on and begin a login; returns the user id."""
    data = _register(client)
    _enable_two_factor(client, data["token"])
    response = _login(client)
    assert response.status_code == 200, response.text
    return response.json()["data"]["userId"]


def _wrong(code):
    return "000000" if code != "000000" else "111111"


class TestRegistration:
    """Tests for account creation."""

    def test_register_returns_token_and_user(self, client):
        data = _register(client, role="teacher")

        assert data["token"]
        assert data["sessionId"]
        assert data["user"]["email"] == "alice@example.com"
        assert data["user"]["role"] == "teacher"
        assert data["user"]["twoFactorEnabled"] is False
        assert "passwordHash" not in data["user"]

    def test_duplicate_registration(self, client):
        """Registering the same email twice fails the second time."""
        _register(client)

        response = client.post(
            "/api/users/register",
            json={"email": "alice@example.com", "password": PASSWORD, "name": "Alice"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "duplicate_email"

    def test_admin_role_is_not_self_service(self, client):
        response = client.post(
            "/api/users/register",
            json={"email": "root@example.com", "password": PASSWORD, "name": "Root", "role": "admin"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "not-an-email", "password": PASSWORD, "name": "Alice"},
            {"email": "alice@example.com", "password": "short", "name": "Alice"},
            {"email": "alice@example.com", "password": PASSWORD, "name": "A"},
            {"email": "alice@example.com", "password": PASSWORD},
        ],
    )
    def test_invalid_payloads(self, client, payload):
        response = client.post("/api/users/register", json=payload)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert isinstance(error["details"], list)
        assert all({"loc", "msg", "type"} <= set(d) for d in error["details"])


class TestLogin:
    """Tests for password login without a second factor."""

    def test_login_without_two_factor(self, client):
        _register(client)

        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token"]
        assert "requires2FA" not in data
        assert data["user"]["email"] == "alice@example.com"

    def test_wrong_password(self, client):
        _register(client)
        response = _login(client, password="WrongPassword1")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_unknown_email_matches_wrong_password(self, client):
        _register(client)
        unknown = _login(client, email="nobody@example.com")
        wrong = _login(client, password="WrongPassword1")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]

    def test_role_mismatch(self, client):
        _register(client, role="student")
        response = _login(client, role="teacher")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "role_mismatch"

    def test_login_rate_limited_per_email(self, client):
        _register(client)
        statuses = [_login(client, password="WrongPassword1").status_code for _ in range(11)]

        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429
        limited = _login(client)
        assert limited.json()["error"]["code"] == "rate_limited"
        assert int(limited.headers["Retry-After"]) >= 1


class TestTwoFactorLogin:
    """Tests for the emailed one-time code handshake."""

    def test_challenge_then_verify_then_replay(self, client, runtime, mailer):
        data = _register(client)
        _enable_two_factor(client, data["token"])

        response = _login(client)

        assert response.status_code == 200
        challenge = response.json()["data"]
        assert challenge["requires2FA"] is True
        assert challenge["userId"] == data["user"]["id"]
        assert challenge["maskedEmail"] == "al***@example.com"
        assert "token" not in challenge

        code = mailer.last_code
        verified = client.post(
            "/api/users/verify-2fa", json={"userId": challenge["userId"], "code": code}
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["token"]

        replay = client.post(
            "/api/users/verify-2fa", json={"userId": challenge["userId"], "code": code}
        )
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "no_pending_code"

    def test_numeric_code_is_accepted(self, client, runtime, mailer):
        user_id = _start_two_factor_login(client, runtime)
        code = mailer.last_code

        response = client.post("/api/users/verify-2fa", json={"userId": user_id, "code": int(code)})

        assert response.status_code == 200

    def test_expired_code(self, client, runtime, mailer, clock):
        user_id = _start_two_factor_login(client, runtime)
        clock.advance(minutes=11)

        response = client.post(
            "/api/users/verify-2fa", json={"userId": user_id, "code": mailer.last_code}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "code_expired"

    def test_attempt_ceiling(self, client, runtime, mailer):
        user_id = _start_two_factor_login(client, runtime)
        code = mailer.last_code

        for remaining in (2, 1, 0):
            response = client.post(
                "/api/users/verify-2fa", json={"userId": user_id, "code": _wrong(code)}
            )
            assert response.status_code == 400
            error = response.json()["error"]
            assert error["code"] == "invalid_code"
            assert error["details"] == {"remainingAttempts": remaining}

        response = client.post("/api/users/verify-2fa", json={"userId": user_id, "code": code})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "attempts_exhausted"

    def test_resend_interval(self, client, runtime, mailer, clock):
        user_id = _start_two_factor_login(client, runtime)
        clock.advance(seconds=61)

        first = client.post("/api/users/resend-2fa", json={"userId": user_id})
        assert first.status_code == 200
        assert first.json()["data"]["maskedEmail"] == "al***@example.com"

        clock.advance(seconds=10)
        second = client.post("/api/users/resend-2fa", json={"userId": user_id})

        assert second.status_code == 429
        error = second.json()["error"]
        assert error["code"] == "resend_too_soon"
        assert error["details"] == {"waitTime": 50}
        assert second.headers["Retry-After"] == "50"
        assert len(mailer.sent) == 2

    def test_resend_replaces_code(self, client, runtime, mailer, clock):
        user_id = _start_two_factor_login(client, runtime)
        clock.advance(seconds=61)
        client.post("/api/users/resend-2fa", json={"userId": user_id})

        response = client.post(
            "/api/users/verify-2fa", json={"userId": user_id, "code": mailer.last_code}
        )
        assert response.status_code == 200

    def test_resend_without_two_factor(self, client, runtime):
        data = _register(client)
        response = client.post("/api/users/resend-2fa", json={"userId": data["user"]["id"]})
        assert response.status_code == 400

    def test_resend_unknown_user(self, client, runtime):
        response = client.post("/api/users/resend-2fa", json={"userId": "missing"})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_delivery_failure(self, client, runtime, mailer):
        data = _register(client)
        _enable_two_factor(client, data["token"])
        mailer.succeed = False

        response = _login(client)

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "delivery_failed"
        status = client.get(f"/api/users/2fa-status/{data['user']['id']}")
        assert status.json()["data"] == {"hasPendingCode": False}

    def test_status_endpoint(self, client, runtime, clock):
        user_id = _start_two_factor_login(client, runtime)
        clock.advance(seconds=30)

        response = client.get(f"/api/users/2fa-status/{user_id}")

        assert response.status_code == 200
        assert response.json()["data"] == {
            "hasPendingCode": True,
            "timeRemaining": 570,
            "attemptsUsed": 0,
            "maxAttempts": 3,
            "maskedEmail": "al***@example.com",
        }

    def test_disable_two_factor(self, client, runtime):
        data = _register(client)
        _enable_two_factor(client, data["token"])

        response = client.put(
            "/api/users/two-factor", json={"enabled": False}, headers=_bearer(data["token"])
        )

        assert response.status_code == 200
        assert response.json()["data"]["twoFactorEnabled"] is False
        assert "token" in _login(client).json()["data"]


class TestAccount:
    """Tests for authenticated profile and session management."""

    def test_me_requires_token(self, client):
        response = client.get("/api/users/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_lists_sessions(self, client):
        data = _register(client)
        second = _login(client).json()["data"]

        response = client.get("/api/users/me", headers=_bearer(second["token"]))

        assert response.status_code == 200
        profile = response.json()["data"]
        assert profile["email"] == "alice@example.com"
        assert len(profile["sessions"]) == 2
        current = [s for s in profile["sessions"] if s["current"]]
        assert [s["sessionId"] for s in current] == [second["sessionId"]]
        assert data["sessionId"] in [s["sessionId"] for s in profile["sessions"]]
        assert response.headers["Cache-Control"].startswith("no-store")

    def test_logout_all_keeps_current_session(self, client):
        _register(client)
        _login(client)
        latest = _login(client).json()["data"]

        response = client.post("/api/users/logout-all", headers=_bearer(latest["token"]))

        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 2
        sessions = client.get("/api/users/me", headers=_bearer(latest["token"])).json()["data"][
            "sessions"
        ]
        assert [s["sessionId"] for s in sessions] == [latest["sessionId"]]

    def test_update_profile(self, client):
        data = _register(client)
        response = client.put(
            "/api/users/me", json={"name": "Alice Liddell"}, headers=_bearer(data["token"])
        )
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Alice Liddell"

    def test_update_preferences(self, client):
        data = _register(client)

        response = client.put(
            "/api/users/preferences",
            json={"theme": "dark", "emailNotifications": False},
            headers=_bearer(data["token"]),
        )

        assert response.status_code == 200
        prefs = response.json()["data"]["preferences"]
        assert prefs == {
            "language": "en",
            "theme": "dark",
            "emailNotifications": False,
            "courseRecommendations": True,
        }

    def test_unknown_preference_value(self, client):
        data = _register(client)
        response = client.put(
            "/api/users/preferences", json={"theme": "neon"}, headers=_bearer(data["token"])
        )
        assert response.status_code == 400

    def test_delete_account(self, client):
        data = _register(client)

        response = client.delete("/api/users/me", headers=_bearer(data["token"]))

        assert response.status_code == 200
        assert client.get("/api/users/me", headers=_bearer(data["token"])).status_code == 401
        assert _login(client).status_code == 401


class TestPasswords:
    """Tests for password change and the emailed reset flow."""

    def test_change_password(self, client):
        data = _register(client)

        response = client.put(
            "/api/users/change-password",
            json={"currentPassword": PASSWORD, "newPassword": "AnotherPass456"},
            headers=_bearer(data["token"]),
        )

        assert response.status_code == 200
        assert _login(client).status_code == 401
        assert _login(client, password="AnotherPass456").status_code == 200

    def test_change_password_wrong_current(self, client):
        data = _register(client)
        response = client.put(
            "/api/users/change-password",
            json={"currentPassword": "Nope12345", "newPassword": "AnotherPass456"},
            headers=_bearer(data["token"]),
        )
        assert response.status_code == 401

    def test_reset_flow(self, client, monkeypatch):
        _register(client)
        rt = get_runtime()
        captured = []

        def capture(to_email, token):
            captured.append(token)
            return True

        monkeypatch.setattr(rt.email, "send_password_reset", capture)

        known = client.post("/api/users/request-password-reset", json={"email": "alice@example.com"})
        unknown = client.post(
            "/api/users/request-password-reset", json={"email": "nobody@example.com"}
        )

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert len(captured) == 1

        reset = client.post(
            "/api/users/reset-password",
            json={"token": captured[0], "newPassword": "ResetPass789"},
        )
        assert reset.status_code == 200
        assert _login(client, password="ResetPass789").status_code == 200

        replay = client.post(
            "/api/users/reset-password",
            json={"token": captured[0], "newPassword": "ResetPass000"},
        )
        assert replay.status_code == 400

    def test_reset_with_bad_token(self, client):
        response = client.post(
            "/api/users/reset-password", json={"token": "bogus", "newPassword": "ResetPass789"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestAdmin:
    """Tests for the admin-only user listing."""

    def _admin_token(self):
        _, token, _ = asyncio.run(
            get_runtime().auth.register(
                "admin@example.com", PASSWORD, "Admin", role="admin", allow_privileged=True
            )
        )
        return token

    def test_admin_lists_users(self, client):
        _register(client, email="s1@example.com", name="Student One")
        _register(client, email="t1@example.com", name="Teacher One", role="teacher")
        token = self._admin_token()

        response = client.get("/api/users?page=1&limit=2", headers=_bearer(token))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 3
        assert data["page"] == 1
        assert data["limit"] == 2
        assert len(data["users"]) == 2

    def test_non_admin_is_forbidden(self, client):
        data = _register(client)
        response = client.get("/api/users", headers=_bearer(data["token"]))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_limit_is_bounded(self, client):
        token = self._admin_token()
        response = client.get("/api/users?limit=500", headers=_bearer(token))
        assert response.status_code == 400


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert response.headers["API-Version"] == app_module.__version__
        assert "X-Request-ID" in response.headers
