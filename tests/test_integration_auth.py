"""Integration tests for the membership HTTP flows.

Tests the complete flow including:
- Registration and first sign-in
- Mandatory 2FA setup and recovery codes
- Single live session per account
- Lockout after repeated failures
- Password change, expiry and reset
- Cookie handling and sliding refresh
"""

from datetime import datetime
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from memberguard import app as app_module
from memberguard.service import audit as actions
from memberguard.service.runtime import get_runtime

PASSWORD = "Abcdef1!ghij"
NEW_PASSWORD = "Bcdefg2@hijk"
EMAIL = "reader@example.com"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def other_client():
    """A second browser for the same account."""
    return TestClient(app_module.app)


@pytest.fixture
def runtime():
    return get_runtime()


def _registration(email=EMAIL, password=PASSWORD, **overrides):
    payload = {
        "email": email,
        "password": password,
        "confirm_password": password,
        "first_name": "Ada",
        "last_name": "Reader",
        "mobile_no": "+65 9123 4567",
        "billing_address": "1 Library Lane",
        "shipping_address": "1 Library Lane",
        "credit_card": "4111 1111 1111 4242",
        "captcha_token": "token",
    }
    payload.update(overrides)
    return payload


def _register(client, email=EMAIL):
    response = client.post("/v1/register", json=_registration(email))
    assert response.status_code == 201, response.text
    return response.json()["data"]["account_id"]


def _login(client, email=EMAIL, password=PASSWORD):
    return client.post(
        "/v1/login", json={"email": email, "password": password, "captcha_token": "token"}
    )


def _enable_two_factor(client, runtime, clock):
    """Provision and confirm 2FA, returning (secret, recovery codes)."""
    setup = client.get("/v1/setup2fa")
    assert setup.status_code == 200, setup.text
    uri = setup.json()["data"]["otpauth_uri"]
    secret = parse_qs(urlparse(uri).query)["secret"][0]

    code = runtime.two_factor.generate_code(secret, clock())
    confirm = client.post("/v1/setup2fa", json={"code": code})
    assert confirm.status_code == 200, confirm.text
    assert confirm.json()["data"]["redirect"] == "/show2farecoverycodes"

    codes = client.get("/v1/show2farecoverycodes").json()["data"]["recovery_codes"]
    return secret, codes


def _keep_alive(client, clock, seconds, step=40):
    """Advance the clock while refreshing the sliding session cookies."""
    while seconds > 0:
        tick = min(step, seconds)
        clock.advance(seconds=tick)
        seconds -= tick
        assert client.get("/v1/checksession").json()["data"]["valid"]


def _error(response):
    return response.json()["error"]


class TestRegistrationScenario:
    """Registration through to an enforced password history."""

    def test_full_first_visit(self, client, runtime, clock):
        account_id = _register(client)
        assert len(runtime.store.list_password_history(account_id, 10)) == 1

        login = _login(client)
        assert login.status_code == 200
        assert login.json()["data"]["stage"] == "authenticated"
        assert login.json()["data"]["redirect"] == "/setup2fa?mandatory=true"

        # Protected pages are gated on 2FA
        gated = client.get("/v1/me")
        assert gated.status_code == 403
        assert _error(gated)["details"]["redirect"] == "/setup2fa?mandatory=true"
        assert gated.headers["location"] == "/setup2fa?mandatory=true"

        _, codes = _enable_two_factor(client, runtime, clock)
        assert len(codes) == 10
        assert len(set(codes)) == 10
        # Codes are only shown once
        again = client.get("/v1/show2farecoverycodes").json()["data"]
        assert again["recovery_codes"] == []
        assert again["remaining"] == 10

        profile = client.get("/v1/me")
        assert profile.status_code == 200
        assert profile.json()["data"]["credit_card"] == "****-****-****-4242"
        assert profile.json()["data"]["two_factor_enabled"] is True

        _keep_alive(client, clock, 65)
        reuse = client.post(
            "/v1/changepassword",
            json={
                "current_password": PASSWORD,
                "new_password": PASSWORD,
                "confirm_password": PASSWORD,
            },
        )
        assert reuse.status_code == 400
        assert _error(reuse)["code"] == "policy_violation"
        assert _error(reuse)["details"]["reason"] == "reuse"

    def test_duplicate_registration_conflicts(self, client):
        _register(client)
        response = client.post("/v1/register", json=_registration("Reader+x@Example.com"))

        assert response.status_code == 409
        assert _error(response)["code"] == "conflict"

    def test_weak_password_is_a_validation_error(self, client):
        response = client.post("/v1/register", json=_registration(password="short"))

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert "password" in [d["field"] for d in body["error"]["details"]]

    def test_mismatched_confirmation_is_rejected(self, client):
        response = client.post(
            "/v1/register", json=_registration(confirm_password="Different1!pass")
        )
        assert response.status_code == 400


class TestSingleSession:
    """A new sign-in ends every other session of the account."""

    def test_second_sign_in_signs_out_first_browser(self, client, other_client, runtime):
        _register(client)
        assert _login(client).status_code == 200
        assert client.get("/v1/checksession").json()["data"]["valid"] is True

        assert _login(other_client).status_code == 200

        response = client.get("/v1/me")
        assert response.status_code == 401
        assert _error(response)["code"] == "session_expired"
        assert _error(response)["details"]["redirect"] == "/login?sessionExpired=true"
        assert "member_auth" not in client.cookies

        status = client.get("/v1/checksession").json()["data"]
        assert status == {"valid": False, "redirect": "/login?sessionExpired=true"}

        recorded = [e.action for e in runtime.audit.entries()]
        assert actions.SESSION_INVALIDATED in recorded
        assert actions.SESSION_INVALID in recorded

        # The newer browser is still signed in
        assert other_client.get("/v1/checksession").json()["data"]["valid"] is True


class TestLockout:
    def test_two_failures_lock_for_a_minute(self, client, clock):
        _register(client)

        first = _login(client, password="Wrong1!password")
        assert first.status_code == 401
        assert _error(first)["message"] == "Email or Password incorrect"

        second = _login(client, password="Wrong1!password")
        assert second.status_code == 423
        assert _error(second)["code"] == "locked_out"
        assert second.headers["retry-after"] == "60"

        assert _login(client).status_code == 423

        clock.advance(seconds=61)
        assert _login(client).status_code == 200


class TestTwoFactorSignIn:
    def _signed_out_with_two_factor(self, client, runtime, clock):
        _register(client)
        _login(client)
        secret, codes = _enable_two_factor(client, runtime, clock)
        client.post("/v1/logout")
        return secret, codes

    def test_password_then_authenticator_code(self, client, runtime, clock):
        secret, _ = self._signed_out_with_two_factor(client, runtime, clock)

        login = _login(client)
        assert login.json()["data"]["stage"] == "pending_2fa"
        assert login.json()["data"]["redirect"] == "/verify2fa"
        assert "SessionId" not in client.cookies
        assert client.get("/v1/me").status_code == 401

        code = runtime.two_factor.generate_code(secret, clock())
        verify = client.post("/v1/verify2fa", json={"code": f"{code[:3]} {code[3:]}"})
        assert verify.status_code == 200
        assert verify.json()["data"]["stage"] == "authenticated"
        assert client.get("/v1/me").status_code == 200

    def test_recovery_code_works_once(self, client, runtime, clock):
        _, codes = self._signed_out_with_two_factor(client, runtime, clock)

        _login(client)
        used = client.post("/v1/verify2fa", json={"code": codes[0], "use_recovery_code": True})
        assert used.status_code == 200
        assert client.get("/v1/me").json()["data"]["recovery_codes_remaining"] == 9

        client.post("/v1/logout")
        _login(client)
        reused = client.post(
            "/v1/verify2fa", json={"code": codes[0], "use_recovery_code": True}
        )
        assert reused.status_code == 401

    def test_verify_without_pending_sign_in(self, client):
        response = client.post("/v1/verify2fa", json={"code": "123456"})
        assert response.status_code == 401
        assert _error(response)["code"] == "unauthorized"


class TestPasswordExpiry:
    def test_expired_password_forces_change(self, client, runtime, clock):
        _register(client)
        _login(client)
        _enable_two_factor(client, runtime, clock)

        _keep_alive(client, clock, 121)

        gated = client.get("/v1/me")
        assert gated.status_code == 403
        assert _error(gated)["details"] == {
            "redirect": "/changepassword?passwordExpired=true",
            "reason": "password_expired",
        }

        changed = client.post(
            "/v1/changepassword",
            json={
                "current_password": PASSWORD,
                "new_password": NEW_PASSWORD,
                "confirm_password": NEW_PASSWORD,
            },
        )
        assert changed.status_code == 200, changed.text
        assert changed.json()["data"]["redirect"] == "/"
        # Changing the password keeps the caller signed in
        assert client.get("/v1/me").status_code == 200

    def test_change_too_soon_reports_wait(self, client, runtime, clock):
        _register(client)
        _login(client)
        _enable_two_factor(client, runtime, clock)
        clock.advance(seconds=20)

        response = client.post(
            "/v1/changepassword",
            json={
                "current_password": PASSWORD,
                "new_password": NEW_PASSWORD,
                "confirm_password": NEW_PASSWORD,
            },
        )
        assert response.status_code == 400
        assert _error(response)["details"] == {"reason": "min_age", "remaining_seconds": 40}


class TestPasswordReset:
    @pytest.fixture
    def outbox(self, runtime, monkeypatch):
        sent = []

        def _capture(to_email, token, *, valid_minutes):
            sent.append({"to": to_email, "token": token, "valid_minutes": valid_minutes})
            return True

        monkeypatch.setattr(runtime.email, "send_password_reset", _capture)
        return sent

    def _request(self, client, email=EMAIL):
        response = client.post("/v1/forgotpassword", json={"email": email})
        assert response.status_code == 200
        return response.json()["data"]["message"]

    def _reset(self, client, token, password=NEW_PASSWORD):
        return client.post(
            "/v1/resetpassword",
            json={"token": token, "new_password": password, "confirm_password": password},
        )

    def test_response_does_not_reveal_registration(self, client, outbox):
        _register(client)
        assert self._request(client) == self._request(client, "ghost@example.com")
        assert len(outbox) == 1
        assert outbox[0]["valid_minutes"] == 60

    def test_token_resets_once(self, client, other_client, outbox):
        _register(client)
        _login(client)
        self._request(other_client)
        token = outbox[0]["token"]

        # Redeemed from another browser; the signed-in one loses its session
        reused = self._reset(other_client, token, PASSWORD)
        assert reused.status_code == 400
        assert _error(reused)["details"]["reason"] == "reuse"

        done = self._reset(other_client, token)
        assert done.status_code == 200
        assert done.json()["data"]["redirect"] == "/login"
        assert client.get("/v1/checksession").json()["data"]["valid"] is False

        again = self._reset(other_client, token, "Cdefgh3#ijkl")
        assert again.status_code == 400
        assert _error(again)["code"] == "validation_error"

        assert _login(other_client, password=NEW_PASSWORD).status_code == 200

    def test_token_expires_after_an_hour(self, client, outbox, clock):
        _register(client)
        self._request(client)

        clock.advance(hours=1)
        assert self._reset(client, outbox[0]["token"]).status_code == 400


class TestSessionCookies:
    def test_sign_in_cookies_are_hardened(self, client):
        _register(client)
        response = _login(client)

        cookies = response.headers.get_list("set-cookie")
        assert len(cookies) == 2
        for header in cookies:
            lowered = header.lower()
            assert "httponly" in lowered
            assert "samesite=strict" in lowered
            assert "max-age=60" in lowered
            assert "path=/" in lowered

    def test_requests_slide_the_session(self, client):
        _register(client)
        _login(client)

        response = client.get("/v1/checksession")

        refreshed = [h.split("=", 1)[0] for h in response.headers.get_list("set-cookie")]
        assert sorted(refreshed) == ["SessionId", "member_auth"]

    def test_idle_session_expires(self, client, clock):
        _register(client)
        _login(client)

        clock.advance(seconds=61)

        assert client.get("/v1/checksession").json()["data"]["valid"] is False
        assert client.get("/v1/me").status_code == 401

    def test_logout_clears_cookies_and_session(self, client, runtime):
        _register(client)
        _login(client)

        response = client.post("/v1/logout")

        assert response.status_code == 200
        assert "member_auth" not in client.cookies
        assert "SessionId" not in client.cookies
        assert runtime.audit.entries()[-1].action == actions.LOGOUT
        assert client.get("/v1/me").status_code == 401

    def test_logout_without_session_still_succeeds(self, client):
        assert client.post("/v1/logout").status_code == 200


class TestServiceSurface:
    def test_healthz_reports_memory_store(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert body["checks"]["filesystem"]["status"] == "healthy"
        assert datetime.fromisoformat(body["timestamp"]).utcoffset() is not None

    def test_security_headers_and_request_id(self, client):
        response = client.get("/v1/checksession", headers={"X-Request-ID": "req-123"})

        assert response.headers["x-request-id"] == "req-123"
        assert response.headers["x-frame-options"] == "DENY"
        assert response.headers["x-content-type-options"] == "nosniff"
        assert "no-store" in response.headers["cache-control"]
