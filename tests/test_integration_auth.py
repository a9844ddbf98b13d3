"""Integration tests for the HTTP surface.

Tests the complete flow including:
- Login with username or email
- Profile lookup
- Token refresh and rotation
- Logout
- Menu tree, paths and path checks
- Cleanup endpoints
"""

import pytest
from fastapi.testclient import TestClient

from yishan_auth import app as app_module
from yishan_auth.service.runtime import get_runtime, reset_runtime_for_tests
from yishan_auth.storage.models import UserStatus

ADMIN_PASSWORD = "admin123"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def super_admin():
    runtime = get_runtime()
    role = runtime.store.get_role_by_code("superAdmin")
    return runtime.auth.create_user(
        "admin", ADMIN_PASSWORD, email="admin@yishan.com", role_ids=[role.id]
    )


@pytest.fixture
def operator():
    runtime = get_runtime()
    role = runtime.store.get_role_by_code("admin")
    return runtime.auth.create_user(
        "operator", ADMIN_PASSWORD, email="operator@yishan.com", role_ids=[role.id]
    )


def _login(client, username="admin", password=ADMIN_PASSWORD, **extra):
    return client.post(
        "/api/v1/auth/login", json={"username": username, "password": password, **extra}
    )


def _bearer(access_token: str) -> dict:
    return {"Authorization": f"Bearer {access_token}"}


class TestLogin:
    """Tests for POST /api/v1/auth/login."""

    def test_login_returns_token_pair(self, client, super_admin):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["message"] == "login succeeded"
        data = body["data"]
        assert data["tokenType"] == "Bearer"
        assert data["accessToken"] != data["refreshToken"]
        assert data["accessTokenExpiresIn"] == 24 * 60 * 60
        assert data["refreshTokenExpiresIn"] == 7 * 24 * 60 * 60

    def test_login_by_email(self, client, super_admin):
        response = client.post(
            "/api/v1/auth/login",
            json={"email": "admin@yishan.com", "password": ADMIN_PASSWORD},
        )

        assert response.status_code == 200

    def test_remember_me_extends_lifetimes(self, client, super_admin):
        data = _login(client, rememberMe=True).json()["data"]

        assert data["accessTokenExpiresIn"] == 30 * 24 * 60 * 60
        assert data["refreshTokenExpiresIn"] == 90 * 24 * 60 * 60

    def test_wrong_password_and_unknown_user_look_alike(self, client, super_admin):
        wrong = _login(client, password="not-the-password")
        unknown = _login(client, username="ghost")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["code"] == "invalid_credentials"

    def test_disabled_account_rejected(self, client, super_admin):
        runtime = get_runtime()
        runtime.store.set_user_status(super_admin.id, UserStatus.DISABLED)

        response = _login(client)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_disabled"

    def test_missing_identifier_is_validation_error(self, client):
        response = client.post("/api/v1/auth/login", json={"password": ADMIN_PASSWORD})

        assert response.status_code == 422

    def test_successful_login_updates_bookkeeping(self, client, super_admin):
        _login(client)

        runtime = get_runtime()
        user = runtime.store.get_user(super_admin.id)
        assert user.login_count == 1
        assert user.last_login_ip
        assert runtime.store.list_login_events(1)[0].success


class TestProfile:
    """Tests for GET /api/v1/auth/me."""

    def test_me_returns_profile(self, client, super_admin):
        access = _login(client).json()["data"]["accessToken"]

        response = client.get("/api/v1/auth/me", headers=_bearer(access))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["username"] == "admin"
        assert data["email"] == "admin@yishan.com"
        assert data["roleIds"] == [1]
        assert data["loginCount"] == 1

    def test_me_without_token(self, client):
        response = client.get("/api/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["status"] == "error"

    def test_me_with_garbage_token(self, client):
        response = client.get("/api/v1/auth/me", headers=_bearer("not-a-jwt"))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_me_rejects_refresh_token(self, client, super_admin):
        refresh = _login(client).json()["data"]["refreshToken"]

        response = client.get("/api/v1/auth/me", headers=_bearer(refresh))

        assert response.status_code == 401


class TestRefresh:
    """Tests for POST /api/v1/auth/refresh."""

    def test_refresh_rotates_both_tokens(self, client, super_admin):
        first = _login(client).json()["data"]

        response = client.post(
            "/api/v1/auth/refresh", json={"refreshToken": first["refreshToken"]}
        )

        assert response.status_code == 200
        second = response.json()["data"]
        assert second["accessToken"] != first["accessToken"]
        assert second["refreshToken"] != first["refreshToken"]
        me = client.get("/api/v1/auth/me", headers=_bearer(second["accessToken"]))
        assert me.status_code == 200

    def test_rotated_refresh_token_is_single_use(self, client, super_admin):
        first = _login(client).json()["data"]
        client.post("/api/v1/auth/refresh", json={"refreshToken": first["refreshToken"]})

        replay = client.post(
            "/api/v1/auth/refresh", json={"refreshToken": first["refreshToken"]}
        )

        assert replay.status_code == 401
        assert replay.json()["status"] == "error"

    def test_superseded_access_token_stops_working(self, client, super_admin):
        first = _login(client).json()["data"]
        client.post("/api/v1/auth/refresh", json={"refreshToken": first["refreshToken"]})

        response = client.get("/api/v1/auth/me", headers=_bearer(first["accessToken"]))

        assert response.status_code == 401

    def test_non_ascii_refresh_token_is_401(self, client):
        token = "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9.e30.éé"

        response = client.post("/api/v1/auth/refresh", json={"refreshToken": token})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_access_token_cannot_refresh(self, client, super_admin):
        access = _login(client).json()["data"]["accessToken"]

        response = client.post("/api/v1/auth/refresh", json={"refreshToken": access})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"


class TestLogout:
    """Tests for POST /api/v1/auth/logout."""

    def test_logout_revokes_session(self, client, super_admin):
        pair = _login(client).json()["data"]

        response = client.post("/api/v1/auth/logout", headers=_bearer(pair["accessToken"]))

        assert response.status_code == 200
        assert response.json()["data"] == {"loggedOut": True}
        me = client.get("/api/v1/auth/me", headers=_bearer(pair["accessToken"]))
        assert me.status_code == 401
        refresh = client.post(
            "/api/v1/auth/refresh", json={"refreshToken": pair["refreshToken"]}
        )
        assert refresh.status_code == 401

    def test_logout_is_repeatable(self, client, super_admin):
        access = _login(client).json()["data"]["accessToken"]

        first = client.post("/api/v1/auth/logout", headers=_bearer(access))
        second = client.post("/api/v1/auth/logout", headers=_bearer(access))

        assert first.status_code == second.status_code == 200

    def test_logout_leaves_other_sessions(self, client, super_admin):
        first = _login(client).json()["data"]["accessToken"]
        second = _login(client).json()["data"]["accessToken"]

        client.post("/api/v1/auth/logout", headers=_bearer(first))

        assert client.get("/api/v1/auth/me", headers=_bearer(second)).status_code == 200

    def test_logout_without_token(self, client):
        response = client.post("/api/v1/auth/logout")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestMenus:
    """Tests for the /api/v1/menus routes."""

    def test_super_admin_sees_every_active_menu(self, client, super_admin):
        access = _login(client).json()["data"]["accessToken"]

        response = client.get("/api/v1/menus/tree", headers=_bearer(access))

        assert response.status_code == 200
        tree = response.json()["data"]
        assert [node["name"] for node in tree] == ["Dashboard", "System", "Documentation"]
        system = tree[1]
        assert [child["name"] for child in system["children"]] == ["Users", "Roles", "Menus"]
        assert system["children"][0]["children"][0]["hideInMenu"] is True

    def test_role_tree_includes_ancestors(self, client, operator):
        access = _login(client, username="operator").json()["data"]["accessToken"]

        tree = client.get("/api/v1/menus/tree", headers=_bearer(access)).json()["data"]

        assert [node["name"] for node in tree] == ["Dashboard", "System"]
        assert [child["name"] for child in tree[1]["children"]] == ["Users", "Roles"]

    def test_paths_skip_external_links(self, client, super_admin):
        access = _login(client).json()["data"]["accessToken"]

        paths = client.get("/api/v1/menus/paths", headers=_bearer(access)).json()["data"]

        assert paths == [
            "/dashboard",
            "/system/users",
            "/system/roles",
            "/system/menus",
            "/system",
        ]

    def test_role_paths(self, client, operator):
        access = _login(client, username="operator").json()["data"]["accessToken"]

        paths = client.get("/api/v1/menus/paths", headers=_bearer(access)).json()["data"]

        assert set(paths) == {"/dashboard", "/system", "/system/users", "/system/roles"}

    def test_path_access_granted(self, client, operator):
        access = _login(client, username="operator").json()["data"]["accessToken"]

        response = client.get(
            "/api/v1/menus/access", params={"path": "/system/users"}, headers=_bearer(access)
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"path": "/system/users", "allowed": True}

    def test_path_access_denied(self, client, operator):
        access = _login(client, username="operator").json()["data"]["accessToken"]

        response = client.get(
            "/api/v1/menus/access", params={"path": "/system/menus"}, headers=_bearer(access)
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_menus_require_token(self, client):
        assert client.get("/api/v1/menus/tree").status_code == 401


class TestCleanupEndpoints:
    """Tests for the key-protected /api/v1/system/cleanup routes."""

    def test_cleanup_requires_key(self, client):
        response = client.post("/api/v1/system/cleanup/tokens")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid cleanup key"

    def test_cleanup_rejects_wrong_key(self, client):
        response = client.get(
            "/api/v1/system/cleanup/status", headers={"X-Cleanup-Key": "guess"}
        )

        assert response.status_code == 401

    def test_cleanup_runs_with_key(self, client, super_admin):
        _login(client)

        response = client.post(
            "/api/v1/system/cleanup/tokens", headers={"X-Cleanup-Key": "test-cleanup-key"}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["deletedCount"] == 0
        assert data["executionTimeMs"] >= 0

    def test_status_reports_counts(self, client, super_admin):
        _login(client)

        response = client.get(
            "/api/v1/system/cleanup/status", headers={"X-Cleanup-Key": "test-cleanup-key"}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["serviceType"] == "token_cleanup"
        assert data["totalTokens"] == 1
        assert data["expiredTokens"] == 0
        assert data["lastCleanupTime"] is None

    def test_unset_key_rejects_everything(self, client, monkeypatch):
        monkeypatch.setenv("CLEANUP_API_KEY", "")
        reset_runtime_for_tests()

        response = client.post(
            "/api/v1/system/cleanup/tokens", headers={"X-Cleanup-Key": "test-cleanup-key"}
        )

        assert response.status_code == 401


class TestServiceSurface:
    """Health check and cross-cutting middleware."""

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert body["checks"]["token_cleanup"]["healthy"] is True

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Request-ID"]

    def test_error_envelope_carries_request_id(self, client):
        response = client.get("/api/v1/auth/me", headers={"X-Request-ID": "req-456"})

        assert response.json()["request_id"] == "req-456"

    def test_security_headers(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]
        assert response.headers["API-Version"] == app_module.__version__
