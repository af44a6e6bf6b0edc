"""Integration tests for the two-step login flow.

Covers:
- Login with password, then OTP verification
- OTP attempt exhaustion and resend
- Account lockout and its expiry
- Token refresh, logout and revocation
"""

from dataclasses import replace
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from gatehouse import app as app_module
from gatehouse.config import get_settings
from gatehouse.service import runtime as runtime_module
from gatehouse.storage.ttl_store import MemoryTTLStore

READER = {"email": "reader@example.com", "password": "Reader#Pass2024"}


@pytest.fixture
def runtime(clock, dispatcher):
    """Runtime on a hand-driven clock with a recording dispatcher."""
    rt = runtime_module.Runtime(
        get_settings(), store=MemoryTTLStore(clock=clock), dispatcher=dispatcher
    )
    rt.sleep = AsyncMock()
    # Lockout scenarios need more than five attempts from one IP
    rt.guard.policies["login"] = replace(rt.guard.policy("login"), limit=50)
    runtime_module.runtime = rt
    return rt


@pytest.fixture
def client(runtime):
    return TestClient(app_module.app)


def _login(client, creds=READER):
    return client.post("/v1/auth/login", json=creds)


def _login_and_verify(client, dispatcher):
    token = _login(client).json()["data"]["otpToken"]
    response = client.post(
        "/v1/auth/verify-otp", json={"otpToken": token, "otp": dispatcher.last_code}
    )
    assert response.status_code == 200
    return response


class TestLoginAndVerify:
    """Password step followed by OTP verification."""

    def test_full_login_then_replay_rejected(self, client, dispatcher):
        login = _login(client)
        assert login.status_code == 200
        data = login.json()["data"]
        assert data["maskedEmail"] == "re***@example.com"
        assert data["expiresIn"] == 600
        assert "X-RateLimit-Limit" in login.headers

        verify = client.post(
            "/v1/auth/verify-otp",
            json={"otpToken": data["otpToken"], "otp": dispatcher.last_code},
        )
        assert verify.status_code == 200
        body = verify.json()["data"]
        assert body["user"]["email"] == "reader@example.com"
        assert body["user"]["isActive"] is True
        assert body["permissions"] == ["read", "comment"]
        assert body["accessToken"]
        set_cookie = verify.headers["set-cookie"]
        assert "refreshToken=" in set_cookie
        assert "HttpOnly" in set_cookie
        assert "samesite=strict" in set_cookie.lower()

        replay = client.post(
            "/v1/auth/verify-otp",
            json={"otpToken": data["otpToken"], "otp": dispatcher.last_code},
        )
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "otp_session_not_found"

    def test_three_wrong_codes_then_exhausted(self, client, dispatcher):
        token = _login(client).json()["data"]["otpToken"]
        code = dispatcher.last_code
        wrong = "000000" if code != "000000" else "111111"

        remaining = []
        for _ in range(3):
            response = client.post(
                "/v1/auth/verify-otp", json={"otpToken": token, "otp": wrong}
            )
            assert response.status_code == 400
            assert response.json()["error"]["code"] == "otp_mismatch"
            remaining.append(response.json()["error"]["details"]["remainingAttempts"])
        assert remaining == [2, 1, 0]

        response = client.post("/v1/auth/verify-otp", json={"otpToken": token, "otp": code})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "otp_attempts_exhausted"

    def test_resend_then_verify_with_new_code(self, client, dispatcher):
        token = _login(client).json()["data"]["otpToken"]
        resend = client.post("/v1/auth/resend-otp", json={"otpToken": token})
        assert resend.status_code == 200
        assert resend.json()["data"] == {"resendCount": 1, "remainingResends": 2}
        verify = client.post(
            "/v1/auth/verify-otp", json={"otpToken": token, "otp": dispatcher.last_code}
        )
        assert verify.status_code == 200

    def test_inactive_account(self, client):
        response = _login(
            client, {"email": "dormant@example.com", "password": "Dormant#Pass2024"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "account_inactive"


class TestLockout:
    """Lockout after repeated password failures."""

    def test_lockout_and_recovery(self, client, runtime, clock):
        bad = {"email": "a@b.com", "password": "wrong"}
        runtime.directory.add_user("a@b.com", "Right#Pass2024")

        codes = [_login(client, bad).json()["error"]["code"] for _ in range(6)]
        assert codes[:4] == ["invalid_credentials"] * 4
        assert codes[4:] == ["account_locked", "account_locked"]

        locked = _login(client, {"email": "a@b.com", "password": "Right#Pass2024"})
        assert locked.status_code == 401
        assert locked.json()["error"]["code"] == "account_locked"

        clock.advance(15 * 60)
        recovered = _login(client, {"email": "a@b.com", "password": "Right#Pass2024"})
        assert recovered.status_code == 200

    def test_unregistered_email_locks_after_five_failures(self, client):
        bad = {"email": "ghost@example.com", "password": "wrong"}
        codes = [_login(client, bad).json()["error"]["code"] for _ in range(6)]
        assert codes == ["invalid_credentials"] * 4 + ["account_locked"] * 2

    def test_backoff_sleep_applied_after_threshold(self, client, runtime):
        bad = {"email": "reader@example.com", "password": "wrong"}
        for _ in range(7):
            _login(client, bad)
        delays = [call.args[0] for call in runtime.sleep.await_args_list]
        assert delays == [2.0, 4.0]


class TestLoginRateLimit:
    def test_sixth_login_within_window_is_429(self, client, runtime):
        runtime.guard.policies["login"] = replace(runtime.guard.policy("login"), limit=5)
        creds = {"email": "nobody@example.com", "password": "wrong"}
        for _ in range(5):
            assert _login(client, creds).status_code == 401
        response = _login(client, creds)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        retry_after = int(response.headers["Retry-After"])
        assert 1 <= retry_after <= 900 + 60
        assert response.json()["error"]["details"]["penaltyLevel"] == 1

        again = _login(client, creds)
        assert again.status_code == 429
        assert again.json()["error"]["details"]["penaltyLevel"] == 2


class TestTokensAndLogout:
    """Refresh rotation, logout and revocation."""

    def test_refresh_issues_new_pair(self, client, dispatcher):
        _login_and_verify(client, dispatcher)
        old_cookie = client.cookies.get("refreshToken")

        refreshed = client.post("/v1/auth/refresh-token")
        assert refreshed.status_code == 200
        assert refreshed.json()["data"]["accessToken"]
        new_cookie = client.cookies.get("refreshToken")
        assert new_cookie and new_cookie != old_cookie
        assert "X-RateLimit-Remaining" in refreshed.headers

    def test_refresh_without_cookie(self, client):
        response = client.post("/v1/auth/refresh-token")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_me_and_permissions(self, client, dispatcher):
        access = _login_and_verify(client, dispatcher).json()["data"]["accessToken"]
        headers = {"Authorization": f"Bearer {access}", "User-Agent": "pytest"}

        me = client.get("/v1/auth/me", headers=headers)
        assert me.status_code == 200
        data = me.json()["data"]
        assert data["user"]["id"] == "user-reader"
        assert data["activity"][0]["userAgent"] == "pytest"
        assert me.headers["X-RateLimit-Limit"] == "1000"

        perms = client.get("/v1/auth/permissions", headers=headers)
        assert perms.json()["data"] == {"role": "user", "permissions": ["read", "comment"]}

    def test_logout_revokes_and_is_idempotent(self, client, dispatcher):
        access = _login_and_verify(client, dispatcher).json()["data"]["accessToken"]
        headers = {"Authorization": f"Bearer {access}"}

        first = client.post("/v1/auth/logout", headers=headers)
        second = client.post("/v1/auth/logout", headers=headers)
        assert first.status_code == 200
        assert second.status_code == 200
        assert first.json()["data"] == second.json()["data"]
        assert 'refreshToken=""' in second.headers["set-cookie"]
        assert client.cookies.get("refreshToken") is None

        me = client.get("/v1/auth/me", headers=headers)
        assert me.status_code == 401
        assert me.json()["error"]["code"] == "token_revoked"

    def test_logout_ignores_garbage_bearer(self, client):
        response = client.post(
            "/v1/auth/logout", headers={"Authorization": "Bearer not-a-token"}
        )
        assert response.status_code == 200
