"""Integration tests for the auth HTTP surface.

Runs the full app against the in-memory store, cache and event bus:
- registration and email verification
- login, refresh rotation and reuse detection
- logout for one device or all of them
- forgot and reset password
"""

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from airsocial import app as app_module
from airsocial.api.routes import FORGOT_PASSWORD_MESSAGE
from airsocial.service.errors import PublishError
from airsocial.service.events import EVENT_EMAIL_RESET_PASSWORD, EVENT_EMAIL_VERIFY
from airsocial.service.runtime import get_runtime

API = "/api/v1/auth"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="a@x.io", username="a", password="pw12345678"):
    return client.post(
        f"{API}/register",
        json={"email": email, "username": username, "password": password},
    )


def _login(client, device_id, email="a@x.io", password="pw12345678"):
    response = client.post(
        f"{API}/login",
        json={"email": email, "password": password, "device_id": device_id},
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]["token"]


def _last_token(routing_key):
    message = get_runtime().bus.messages(routing_key)[-1]
    return parse_qs(urlparse(message["data"]["link"]).query)["token"][0]


def _bearer(token):
    return {"Authorization": f"Bearer {token['access_token']}"}


class TestRegisterAndVerify:
    def test_register_then_verify(self, client):
        response = _register(client)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == "a@x.io"
        assert body["data"]["verified"] is False
        assert "password_hash" not in body["data"]

        messages = get_runtime().bus.messages(EVENT_EMAIL_VERIFY)
        assert len(messages) == 1
        token = _last_token(EVENT_EMAIL_VERIFY)

        page = client.get(f"{API}/verify-email", params={"token": token})
        assert page.status_code == 200
        assert "Email verified" in page.text
        assert get_runtime().store.get_user_by_email("a@x.io").verified

        again = client.get(f"{API}/verify-email", params={"token": token})
        assert again.status_code == 400
        assert "Verification failed" in again.text

    def test_verify_without_token(self, client):
        assert client.get(f"{API}/verify-email").status_code == 400

    def test_duplicate_email_conflicts(self, client):
        _register(client)
        response = _register(client, username="other")
        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "already_exists"
        assert body["error"]["details"] == {"field": "email"}

    def test_invalid_body_is_validation_error(self, client):
        response = _register(client, email="not-an-email")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_short_registration_password_rejected(self, client):
        assert _register(client, password="short").status_code == 400

    def test_broker_outage_does_not_fail_registration(self, client):
        bus = get_runtime().bus
        bus.fail_with = PublishError("broker unavailable")
        assert _register(client).status_code == 200
        assert bus.messages() == []

        bus.fail_with = None
        response = client.post(f"{API}/resend-verification", json={"email": "a@x.io"})
        assert response.status_code == 200
        assert len(bus.messages(EVENT_EMAIL_VERIFY)) == 1
        assert len(get_runtime().store.users) == 1


class TestLoginAndRefresh:
    def test_login_returns_user_and_tokens(self, client):
        _register(client)
        response = client.post(
            f"{API}/login",
            json={"email": "a@x.io", "password": "pw12345678", "device_id": "d1"},
        )
        data = response.json()["data"]
        assert data["user"]["username"] == "a"
        assert data["token"]["token_type"] == "Bearer"
        assert data["token"]["expires_in"] > 0

    def test_wrong_password(self, client):
        _register(client)
        response = client.post(
            f"{API}/login",
            json={"email": "a@x.io", "password": "wrong-password", "device_id": "d1"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_rotate_then_reuse_revokes_everything(self, client):
        _register(client)
        first = _login(client, "d1")

        rotated = client.post(f"{API}/refresh", json={"refresh_token": first["refresh_token"]})
        assert rotated.status_code == 200
        second = rotated.json()["data"]
        assert second["refresh_token"] != first["refresh_token"]

        reuse = client.post(f"{API}/refresh", json={"refresh_token": first["refresh_token"]})
        assert reuse.status_code == 401
        assert reuse.json()["error"]["code"] == "token_revoked"

        after = client.post(f"{API}/refresh", json={"refresh_token": second["refresh_token"]})
        assert after.status_code == 401

    def test_unknown_refresh_token(self, client):
        response = client.post(f"{API}/refresh", json={"refresh_token": "nope"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestLogout:
    def test_logout_single_device(self, client):
        _register(client)
        d1 = _login(client, "d1")
        d2 = _login(client, "d2")

        response = client.post(f"{API}/logout", json={"device_id": "d1"}, headers=_bearer(d1))
        assert response.status_code == 200
        assert response.json()["data"] == {"message": "logout success"}

        assert (
            client.post(f"{API}/refresh", json={"refresh_token": d1["refresh_token"]}).status_code
            == 401
        )
        assert (
            client.post(f"{API}/refresh", json={"refresh_token": d2["refresh_token"]}).status_code
            == 200
        )

    def test_logout_blocks_access_token(self, client):
        _register(client)
        d1 = _login(client, "d1")
        client.post(f"{API}/logout", json={}, headers=_bearer(d1))

        again = client.post(f"{API}/logout", json={}, headers=_bearer(d1))
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "token_revoked"

    def test_logout_all_devices(self, client):
        _register(client)
        d1 = _login(client, "d1")
        d2 = _login(client, "d2")

        response = client.post(f"{API}/logout", json={"all_devices": True}, headers=_bearer(d1))
        assert response.status_code == 200
        for tokens in (d1, d2):
            refresh = client.post(f"{API}/refresh", json={"refresh_token": tokens["refresh_token"]})
            assert refresh.status_code == 401

    def test_logout_requires_bearer(self, client):
        response = client.post(f"{API}/logout", json={"device_id": "d1"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestPasswordReset:
    def test_forgot_then_reset(self, client):
        _register(client)
        old = _login(client, "d1")

        response = client.post(f"{API}/forgot-password", json={"email": "a@x.io"})
        assert response.status_code == 200
        assert response.json()["data"]["message"] == FORGOT_PASSWORD_MESSAGE
        token = _last_token(EVENT_EMAIL_RESET_PASSWORD)

        form = client.get(f"{API}/reset-password", params={"token": token})
        assert form.status_code == 200
        assert "Choose a new password" in form.text

        reset = client.post(f"{API}/reset-password", json={"token": token, "password": "newpw"})
        assert reset.status_code == 200
        assert reset.json()["data"]["message"] == "password update successfully"

        failed = client.post(
            f"{API}/login",
            json={"email": "a@x.io", "password": "pw12345678", "device_id": "d1"},
        )
        assert failed.status_code == 401
        assert _login(client, "d1", password="newpw")["access_token"]
        assert (
            client.post(f"{API}/refresh", json={"refresh_token": old["refresh_token"]}).status_code
            == 401
        )

        expired = client.get(f"{API}/reset-password", params={"token": token})
        assert expired.status_code == 400
        assert "Link expired" in expired.text

    def test_forgot_unknown_email_looks_successful(self, client):
        response = client.post(f"{API}/forgot-password", json={"email": "nobody@x.io"})
        assert response.status_code == 200
        assert response.json()["data"]["message"] == FORGOT_PASSWORD_MESSAGE
        assert get_runtime().bus.messages(EVENT_EMAIL_RESET_PASSWORD) == []

    def test_reset_with_unknown_token(self, client):
        response = client.post(f"{API}/reset-password", json={"token": "bogus", "password": "newpw"})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestAppSurface:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "ok"
        assert set(data["checks"]) == {"database", "redis", "rabbitmq"}

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_api_responses_are_not_cached(self, client):
        response = client.post(f"{API}/refresh", json={"refresh_token": "nope"})
        assert "no-store" in response.headers["Cache-Control"]
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_unknown_route_uses_error_envelope(self, client):
        response = client.get("/api/v1/nothing-here")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
