"""End-to-end auth flows through the HTTP API.

Runs against the in-memory store and session cache configured in conftest.
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

import apitemplate.app as app_module
from apitemplate.service import tokens
from apitemplate.service.auth import refresh_key
from apitemplate.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="alice@example.com", password="secret123", name="Alice"):
    resp = client.post(
        "/api/v1/users/register", json={"name": name, "email": email, "password": password}
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _login(client, email="alice@example.com", password="secret123", **headers):
    return client.post(
        "/api/v1/auth/login", json={"email": email, "password": password}, headers=headers
    )


def _auth_headers(access_token):
    return {"Authorization": f"Bearer {access_token}"}


class TestLoginEndpoint:
    def test_login_returns_token_pair_and_user(self, client):
        user = _register(client)

        resp = _login(client)

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["message"] == "Login successful"
        data = body["data"]
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["token_type"] == "bearer"
        assert data["user"]["id"] == user["id"]
        assert "password_hash" not in data["user"]

    def test_login_marks_user_online(self, client):
        user = _register(client)
        data = _login(client).json()["data"]

        resp = client.get(
            f"/api/v1/users/{user['id']}/online", headers=_auth_headers(data["access_token"])
        )
        assert resp.json()["data"] == {"user_id": user["id"], "online": True}

    def test_login_email_is_case_insensitive(self, client):
        _register(client)
        assert _login(client, email="ALICE@example.com").status_code == 200

    def test_bad_credentials(self, client):
        _register(client)

        wrong_password = _login(client, password="not-the-password")
        unknown_user = _login(client, email="bob@example.com")

        for resp in (wrong_password, unknown_user):
            assert resp.status_code == 401
            body = resp.json()
            assert body["status"] == "error"
            assert body["error"]["code"] == "unauthorized"
            assert body["error"]["message"] == "invalid credentials"
            assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_missing_fields_are_validation_errors(self, client):
        resp = client.post("/api/v1/auth/login", json={"email": "alice@example.com"})

        assert resp.status_code == 400
        body = resp.json()
        assert body["error"]["code"] == "validation_error"
        assert any(d["loc"][-1] == "password" for d in body["error"]["details"])

    def test_localized_success_message(self, client):
        _register(client)
        resp = _login(client, **{"Accept-Language": "es-ES,es;q=0.9"})
        translations = get_runtime().translations
        assert resp.json()["message"] == translations.translate("es", "login_success")


class TestRefreshEndpoint:
    def test_refresh_issues_new_access_token(self, client):
        _register(client)
        login = _login(client).json()["data"]

        resp = client.post(
            "/api/v1/auth/refresh", json={"refresh_token": login["refresh_token"]}
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["access_token"] != login["access_token"]
        assert data["refresh_token"] == login["refresh_token"]
        me = client.get("/api/v1/auth/me", headers=_auth_headers(data["access_token"]))
        assert me.status_code == 200

    def test_refresh_with_access_token_fails(self, client):
        _register(client)
        login = _login(client).json()["data"]

        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": login["access_token"]})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "invalid refresh token"

    def test_refresh_with_non_ascii_token(self, client):
        header = "eyJhbGciOiJIUzI1NiJ9"  # {"alg":"HS256"}
        resp = client.post(
            "/api/v1/auth/refresh", json={"refresh_token": f"{header}.e30.\u00e9\u00e9"}
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "invalid refresh token"

    def test_refresh_unknown_token(self, client):
        user = _register(client)
        secret = get_runtime().settings.jwt_refresh_secret
        orphan = tokens.issue_token(user["id"], secret, 3600, token_type=tokens.REFRESH)

        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": orphan})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "refresh token not found or expired"

    def test_expired_refresh_token_in_store(self, client):
        user = _register(client)
        runtime = get_runtime()
        expired = tokens.issue_token(
            user["id"],
            runtime.settings.jwt_refresh_secret,
            60,
            token_type=tokens.REFRESH,
            now=time.time() - 3600,
        )
        asyncio.run(runtime.cache.set(refresh_key(expired), str(user["id"]), 3600))

        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": expired})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "invalid refresh token"


class TestLogoutEndpoint:
    def test_logout_revokes_refresh_token(self, client):
        _register(client)
        login = _login(client).json()["data"]

        resp = client.post("/api/v1/auth/logout", json={"refresh_token": login["refresh_token"]})
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

        again = client.post("/api/v1/auth/refresh", json={"refresh_token": login["refresh_token"]})
        assert again.status_code == 401

    def test_logout_twice_is_ok(self, client):
        _register(client)
        login = _login(client).json()["data"]

        for _ in range(2):
            resp = client.post(
                "/api/v1/auth/logout", json={"refresh_token": login["refresh_token"]}
            )
            assert resp.status_code == 200

    def test_logout_with_bearer_clears_presence(self, client):
        user = _register(client)
        login = _login(client).json()["data"]
        headers = _auth_headers(login["access_token"])

        client.post(
            "/api/v1/auth/logout",
            json={"refresh_token": login["refresh_token"]},
            headers=headers,
        )

        resp = client.get(f"/api/v1/users/{user['id']}/online", headers=headers)
        assert resp.json()["data"]["online"] is False

    def test_access_token_survives_logout(self, client):
        _register(client)
        login = _login(client).json()["data"]
        client.post("/api/v1/auth/logout", json={"refresh_token": login["refresh_token"]})

        resp = client.get("/api/v1/auth/me", headers=_auth_headers(login["access_token"]))
        assert resp.status_code == 200


class TestProtectedRoutes:
    def test_me_requires_bearer(self, client):
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_rejects_refresh_token(self, client):
        _register(client)
        login = _login(client).json()["data"]
        resp = client.get("/api/v1/auth/me", headers=_auth_headers(login["refresh_token"]))
        assert resp.status_code == 401


    def test_me_rejects_non_ascii_bearer(self, client):
        _register(client)
        header = _login(client).json()["data"]["access_token"].split(".")[0]
        value = f"Bearer {header}.e30.\u00e9".encode("utf-8")
        resp = client.get("/api/v1/auth/me", headers={"Authorization": value})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_returns_current_user(self, client):
        user = _register(client)
        login = _login(client).json()["data"]
        resp = client.get("/api/v1/auth/me", headers=_auth_headers(login["access_token"]))
        assert resp.json()["data"]["id"] == user["id"]

    def test_me_for_deleted_user(self, client):
        user = _register(client)
        login = _login(client).json()["data"]
        headers = _auth_headers(login["access_token"])
        client.delete(f"/api/v1/users/{user['id']}", headers=headers)

        resp = client.get("/api/v1/auth/me", headers=headers)
        assert resp.status_code == 404

    def test_presence_heartbeat_and_clear(self, client):
        user = _register(client)
        headers = _auth_headers(_login(client).json()["data"]["access_token"])

        assert client.delete("/api/v1/auth/presence", headers=headers).status_code == 200
        status = client.get(f"/api/v1/users/{user['id']}/online", headers=headers)
        assert status.json()["data"]["online"] is False

        assert client.post("/api/v1/auth/presence", headers=headers).status_code == 200
        status = client.get(f"/api/v1/users/{user['id']}/online", headers=headers)
        assert status.json()["data"]["online"] is True


class TestPasswordReset:
    def test_forgot_always_succeeds(self, client):
        resp = client.post("/api/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_full_reset_flow(self, client):
        user = _register(client)

        resp = client.post("/api/v1/auth/password/forgot", json={"email": "alice@example.com"})
        assert resp.status_code == 200
        token = get_runtime().store.get_user(user["id"]).reset_token
        assert token

        reset = client.post(
            "/api/v1/auth/password/reset",
            json={"token": token, "new_password": "fresh-pass-99"},
        )
        assert reset.status_code == 200
        assert _login(client, password="secret123").status_code == 401
        assert _login(client, password="fresh-pass-99").status_code == 200

        reuse = client.post(
            "/api/v1/auth/password/reset",
            json={"token": token, "new_password": "another-pass-99"},
        )
        assert reuse.status_code == 400
        assert reuse.json()["error"]["message"] == "invalid or expired token"

    def test_reset_rejects_weak_password(self, client):
        resp = client.post(
            "/api/v1/auth/password/reset", json={"token": "abc", "new_password": "short"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestAppSurface:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["session_store"]["status"] == "healthy"

    def test_healthz_reports_unhealthy_session_store(self, client, monkeypatch):
        def _down():
            raise ConnectionError("redis down")

        monkeypatch.setattr(get_runtime().cache, "verify_connection", _down)
        resp = client.get("/healthz")
        assert resp.status_code == 503
        assert resp.json()["checks"]["session_store"]["status"] == "unhealthy"

    def test_request_id_is_echoed(self, client):
        resp = client.post(
            "/api/v1/auth/login",
            json={"email": "nobody@example.com", "password": "x"},
            headers={"X-Request-ID": "req-123"},
        )
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"

    def test_security_headers(self, client):
        resp = client.get("/healthz")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["Cache-Control"] == "no-store"
