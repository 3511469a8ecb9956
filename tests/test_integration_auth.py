"""Integration tests for the /auth HTTP surface.

Covers registration, login and lockout, the OTP password reset flow,
password change, logout and the profile endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from brewbean import app as app_module
from brewbean.service.runtime import get_runtime

PASSWORD = "Abcd123!"
NEW_PASSWORD = "Brewed456#"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="a@b.com", **extra):
    body = {"name": "Ada Roast", "email": email, "password": PASSWORD, **extra}
    return client.post("/auth/register", json=body)


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegisterFlow:
    def test_register_returns_user_and_token(self, client):
        response = _register(client, phone="+91 98765 43210", dateOfBirth="1990-05-17")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        user = body["data"]["user"]
        assert user["email"] == "a@b.com"
        assert user["role"] == "customer"
        assert user["accountStatus"] == "pending_verification"
        assert user["address"]["country"] == "India"
        assert user["preferences"]["notifyEmail"] is True
        assert body["data"]["token"].count(".") == 2
        for secret_field in ("password", "passwordHash", "password_hash", "otp", "loginAttempts"):
            assert secret_field not in user

    def test_register_rejects_duplicate_email(self, client):
        assert _register(client).status_code == 201
        response = _register(client, email="A@b.com")
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "conflict"
        assert error["message"] == "User with this email already exists"

    def test_register_rejects_unknown_fields(self, client):
        response = _register(client, role="admin")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["field"] == "role"

    def test_register_rejects_bad_email(self, client):
        response = _register(client, email="not-an-email")
        assert response.status_code == 400
        assert response.json()["error"]["details"] == [
            {"field": "email", "message": "Please provide a valid email"}
        ]

    def test_register_rejects_weak_password(self, client):
        response = client.post(
            "/auth/register",
            json={"name": "Ada Roast", "email": "a@b.com", "password": "abcd1234"},
        )
        assert response.status_code == 400
        assert (
            response.json()["error"]["message"]
            == "Password must contain at least one uppercase letter"
        )

    def test_register_rejects_underage_customer(self, client):
        response = _register(client, dateOfBirth="2020-01-01")
        assert response.status_code == 400
        assert response.json()["error"]["details"][0]["field"] == "dateOfBirth"


class TestLoginFlow:
    def test_login_and_profile(self, client):
        _register(client)
        response = client.post(
            "/auth/login", json={"email": "a@b.com", "password": PASSWORD, "rememberMe": True}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["expiresIn"] == 30 * 24 * 3600

        me = client.get("/auth/me", headers=_auth(data["token"]))
        assert me.status_code == 200
        profile = me.json()["data"]["user"]
        assert profile["email"] == "a@b.com"
        assert profile["lastLogin"] is not None

    def test_lockout_after_five_failures(self, client):
        _register(client)
        statuses = [
            client.post("/auth/login", json={"email": "a@b.com", "password": "Wrong123!"}).status_code
            for _ in range(5)
        ]
        assert statuses == [401, 401, 401, 401, 423]

        # The lock outlasts a correct password; rate limit allows 8 per window
        response = client.post("/auth/login", json={"email": "a@b.com", "password": PASSWORD})
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "locked"
        assert 0 < int(response.headers["Retry-After"]) <= 30 * 60

    def test_login_after_lock_expires_resets_attempts(self, client):
        from datetime import datetime, timedelta, timezone

        _register(client)
        for _ in range(5):
            client.post("/auth/login", json={"email": "a@b.com", "password": "Wrong123!"})

        runtime = get_runtime()
        runtime.auth._clock = lambda: datetime.now(timezone.utc) + timedelta(minutes=31)

        response = client.post("/auth/login", json={"email": "a@b.com", "password": PASSWORD})
        assert response.status_code == 200
        assert runtime.store.get_user_by_email("a@b.com").login_attempts == 0

    def test_login_rate_limit_sets_headers(self, client):
        limit = get_runtime().settings.login_rate_limit
        body = {"email": "nobody@b.com", "password": PASSWORD}
        for _ in range(limit):
            response = client.post("/auth/login", json=body)
            assert response.status_code == 401
        response = client.post("/auth/login", json=body)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.headers["X-RateLimit-Limit"] == str(limit)
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert int(response.headers["X-RateLimit-Reset"]) > 0

    def test_me_requires_token(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Access denied. No token provided."


class TestPasswordResetFlow:
    def test_forgot_password_does_not_reveal_accounts(self, client, outbox):
        _register(client)
        known = client.post("/auth/forgot-password", json={"email": "a@b.com"})
        unknown = client.post("/auth/forgot-password", json={"email": "nobody@b.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert [mail["to"] for mail in outbox] == ["a@b.com"]

    def test_full_reset_flow(self, client, outbox):
        token = _register(client).json()["data"]["token"]
        client.post("/auth/forgot-password", json={"email": "a@b.com"})
        otp = outbox[-1]["otp"]

        verified = client.post("/auth/verify-otp", json={"email": "a@b.com", "otp": otp})
        assert verified.status_code == 200
        reset_token = verified.json()["data"]["resetToken"]

        reset = client.post(
            "/auth/reset-password",
            json={"resetToken": reset_token, "newPassword": NEW_PASSWORD},
        )
        assert reset.status_code == 200
        assert outbox[-1]["kind"] == "reset_confirmation"

        assert client.get("/auth/me", headers=_auth(token)).status_code == 401
        old = client.post("/auth/login", json={"email": "a@b.com", "password": PASSWORD})
        assert old.status_code == 401
        new = client.post("/auth/login", json={"email": "a@b.com", "password": NEW_PASSWORD})
        assert new.status_code == 200

    def test_verify_otp_is_rate_limited_per_ip(self, client, outbox):
        _register(client)
        client.post("/auth/forgot-password", json={"email": "a@b.com"})
        wrong = "000000" if outbox[-1]["otp"] != "000000" else "111111"
        codes = [
            client.post("/auth/verify-otp", json={"email": "a@b.com", "otp": wrong}).status_code
            for _ in range(3)
        ]
        assert codes == [400, 400, 429]

    def test_reset_password_rejects_malformed_token(self, client):
        response = client.post(
            "/auth/reset-password",
            json={"resetToken": "xyz", "newPassword": NEW_PASSWORD},
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"][0]["field"] == "resetToken"

    def test_delivery_failure_returns_server_error(self, client, monkeypatch):
        _register(client)
        monkeypatch.setattr(
            get_runtime().email, "send_otp_email", lambda to, otp, name="User": False
        )
        response = client.post("/auth/forgot-password", json={"email": "a@b.com"})
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert get_runtime().store.get_user_by_email("a@b.com").otp is None


class TestSessionFlow:
    def test_change_password_keeps_current_device(self, client):
        first = _register(client).json()["data"]["token"]
        second = client.post(
            "/auth/login", json={"email": "a@b.com", "password": PASSWORD}
        ).json()["data"]["token"]

        response = client.put(
            "/auth/change-password",
            headers=_auth(first),
            json={"currentPassword": PASSWORD, "newPassword": NEW_PASSWORD},
        )
        assert response.status_code == 200
        assert client.get("/auth/me", headers=_auth(first)).status_code == 200
        assert client.get("/auth/me", headers=_auth(second)).status_code == 401

        relogin = client.post("/auth/login", json={"email": "a@b.com", "password": NEW_PASSWORD})
        assert relogin.status_code == 200

    def test_change_password_wrong_current(self, client):
        token = _register(client).json()["data"]["token"]
        response = client.put(
            "/auth/change-password",
            headers=_auth(token),
            json={"currentPassword": "Wrong123!", "newPassword": NEW_PASSWORD},
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Current password is incorrect"

    def test_logout_revokes_token(self, client):
        token = _register(client).json()["data"]["token"]
        response = client.post("/auth/logout", headers=_auth(token))
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Logged out successfully"
        assert client.get("/auth/me", headers=_auth(token)).status_code == 401

    def test_logout_all_revokes_every_token(self, client):
        first = _register(client).json()["data"]["token"]
        second = client.post(
            "/auth/login", json={"email": "a@b.com", "password": PASSWORD}
        ).json()["data"]["token"]

        response = client.post("/auth/logout-all", headers=_auth(first))
        assert response.status_code == 200
        assert response.json()["data"]["sessionsRevoked"] == 2
        for token in (first, second):
            assert client.get("/auth/me", headers=_auth(token)).status_code == 401


class TestProfileFlow:
    def test_update_profile_is_visible_on_me(self, client):
        token = _register(client).json()["data"]["token"]
        response = client.put(
            "/auth/profile",
            headers=_auth(token),
            json={
                "name": "  Ada   Lovelace ",
                "phone": "9876543210",
                "address": {"street": "12 Bean Lane", "city": "Pune", "postalCode": "411001"},
                "preferences": {"newsletter": True},
            },
        )
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "10"
        data = response.json()["data"]
        assert data["message"] == "Profile updated successfully"
        assert data["user"]["name"] == "Ada Lovelace"

        user = client.get("/auth/me", headers=_auth(token)).json()["data"]["user"]
        assert user["phone"] == "9876543210"
        assert user["address"]["postalCode"] == "411001"
        assert user["address"]["country"] == "India"
        assert user["preferences"]["newsletter"] is True
        assert user["preferences"]["notifyEmail"] is True

    def test_phone_taken_by_another_account(self, client):
        _register(client, phone="9876543210")
        token = _register(client, email="other@b.com").json()["data"]["token"]
        response = client.put(
            "/auth/profile", headers=_auth(token), json={"phone": "9876543210"}
        )
        assert response.status_code == 409
        body = response.json()
        assert body["error"]["code"] == "conflict"
        assert body["error"]["message"] == "User with this phone number already exists"

    @pytest.mark.parametrize(
        "payload, field",
        [
            ({"email": "new@b.com"}, "email"),
            ({"name": "R2D2"}, "name"),
            ({"address": {"postalCode": "12AB"}}, "address.postalCode"),
            ({"address": {"city": "X"}}, "address.city"),
        ],
    )
    def test_invalid_or_unknown_fields_are_rejected(self, client, payload, field):
        token = _register(client).json()["data"]["token"]
        response = client.put("/auth/profile", headers=_auth(token), json=payload)
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["field"] == field

    def test_requires_a_token(self, client):
        response = client.put("/auth/profile", json={"name": "Ada Lovelace"})
        assert response.status_code == 401


def test_full_lifecycle(client):
    """register -> login -> change password -> login with the new password."""
    assert _register(client).status_code == 201
    token = client.post(
        "/auth/login", json={"email": "a@b.com", "password": PASSWORD}
    ).json()["data"]["token"]
    changed = client.put(
        "/auth/change-password",
        headers=_auth(token),
        json={"currentPassword": PASSWORD, "newPassword": NEW_PASSWORD},
    )
    assert changed.status_code == 200
    assert client.post(
        "/auth/login", json={"email": "a@b.com", "password": NEW_PASSWORD}
    ).status_code == 200
    assert client.post(
        "/auth/login", json={"email": "a@b.com", "password": PASSWORD}
    ).status_code == 401
