"""HTTP-level tests for the auth routes and route guards.

Covers the complete flow over the FastAPI app:
- Registration and login
- Authenticated profile lookup
- Refresh rotation
- Logout (single session and everywhere)
- Password change
- Role, permission and ownership guards on application routes
"""

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from warden import app as app_module
from warden.api.dependencies import require
from warden.api.error_handling import register_exception_handlers
from warden.service.pipeline import ResourceCheck, RoutePolicy
from warden.service.runtime import get_runtime

PASSWORD = "CorrectHorse9!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def registered(client):
    response = client.post(
        "/v1/auth/register",
        json={"email": "ada@example.com", "username": "ada", "password": PASSWORD},
    )
    assert response.status_code == 201
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegisterAndLogin:
    def test_register_returns_token_pair(self, client, registered):
        assert registered["token_type"] == "bearer"
        assert registered["roles"] == ["user"]
        assert registered["access_token"] != registered["refresh_token"]

    def test_register_duplicate_conflicts(self, client, registered):
        response = client.post(
            "/v1/auth/register",
            json={"email": "ADA@example.com", "username": "other", "password": PASSWORD},
        )
        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"
        assert body["error"]["reason"] == "duplicate_identifier"

    def test_register_validates_payload(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "not-an-email", "username": "ada", "password": "short"},
        )
        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_login_by_username(self, client, registered):
        response = client.post(
            "/v1/auth/login", json={"identifier": "ada", "password": PASSWORD}
        )
        assert response.status_code == 200
        assert response.json()["data"]["principal_id"] == registered["principal_id"]

    def test_login_failure_is_uniform(self, client, registered):
        unknown = client.post(
            "/v1/auth/login", json={"identifier": "nobody", "password": PASSWORD}
        )
        wrong = client.post(
            "/v1/auth/login", json={"identifier": "ada", "password": "WrongHorse9!"}
        )
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"]["message"] == wrong.json()["error"]["message"]
        assert unknown.json()["error"]["reason"] == "invalid_credentials"
        assert unknown.headers["WWW-Authenticate"] == "Bearer"


class TestAuthenticatedRoutes:
    def test_me_requires_credentials(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["reason"] == "missing_credential"

    def test_me_rejects_garbage_token(self, client):
        response = client.get("/v1/auth/me", headers=_auth("garbage"))
        assert response.status_code == 401
        assert response.json()["error"]["reason"] == "token_invalid"

    def test_me_rejects_refresh_token(self, client, registered):
        response = client.get("/v1/auth/me", headers=_auth(registered["refresh_token"]))
        assert response.status_code == 401

    def test_me_returns_profile(self, client, registered):
        response = client.get("/v1/auth/me", headers=_auth(registered["access_token"]))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["username"] == "ada"
        assert data["email"] == "ada@example.com"
        assert data["roles"] == ["user"]
        assert "user:read" in data["permissions"]

    def test_request_id_is_echoed(self, client, registered):
        response = client.get(
            "/v1/auth/me",
            headers={**_auth(registered["access_token"]), "X-Request-ID": "req-42"},
        )
        assert response.headers["X-Request-ID"] == "req-42"
        assert response.json()["request_id"] == "req-42"


class TestRefreshAndLogout:
    def test_refresh_rotates(self, client, registered):
        first = client.post(
            "/v1/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        assert first.status_code == 200
        replay = client.post(
            "/v1/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        assert replay.status_code == 401
        assert replay.json()["error"]["reason"] == "token_revoked"

    def test_logout_revokes_presented_tokens(self, client, registered):
        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": registered["refresh_token"]},
            headers=_auth(registered["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"revoked_entries": 2, "everywhere": False}

        me = client.get("/v1/auth/me", headers=_auth(registered["access_token"]))
        assert me.status_code == 401
        assert me.json()["error"]["reason"] == "token_revoked"
        refresh = client.post(
            "/v1/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        assert refresh.status_code == 401

    def test_logout_without_body(self, client, registered):
        response = client.post("/v1/auth/logout", headers=_auth(registered["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"]["revoked_entries"] == 1

    def test_logout_everywhere_reports_flag(self, client, registered):
        response = client.post(
            "/v1/auth/logout",
            json={"everywhere": True},
            headers=_auth(registered["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"revoked_entries": 2, "everywhere": True}


class TestChangePassword:
    def test_change_password(self, client, registered):
        response = client.post(
            "/v1/auth/password",
            json={"old_password": PASSWORD, "new_password": "N3w-Passphrase!"},
            headers=_auth(registered["access_token"]),
        )
        assert response.status_code == 200
        new_access = response.json()["data"]["access_token"]
        assert client.get("/v1/auth/me", headers=_auth(new_access)).status_code == 200

        old_login = client.post(
            "/v1/auth/login", json={"identifier": "ada", "password": PASSWORD}
        )
        assert old_login.status_code == 401
        new_login = client.post(
            "/v1/auth/login", json={"identifier": "ada", "password": "N3w-Passphrase!"}
        )
        assert new_login.status_code == 200

    def test_change_password_wrong_old(self, client, registered):
        response = client.post(
            "/v1/auth/password",
            json={"old_password": "WrongHorse9!", "new_password": "N3w-Passphrase!"},
            headers=_auth(registered["access_token"]),
        )
        assert response.status_code == 401


@pytest.fixture
def guarded_client():
    """A small application guarded by role, permission and ownership policies."""
    guarded = FastAPI()
    register_exception_handlers(guarded)

    @guarded.get("/admin/stats")
    async def admin_stats(ctx=Depends(require(RoutePolicy(required_roles=("admin",))))):
        return {"principal_id": ctx.principal_id}

    @guarded.delete("/users/{id}")
    async def delete_user(ctx=Depends(require(RoutePolicy(required_permissions=("user:delete",))))):
        return {"deleted": True}

    @guarded.get("/documents/{id}")
    async def read_document(
        id: str,
        ctx=Depends(require(RoutePolicy(resource=ResourceCheck("documents")))),
    ):
        return {"id": id}

    get_runtime().register_owned_resource("documents")
    return TestClient(guarded)


class TestRouteGuards:
    def _login(self, client, email, username, roles=()):
        runtime = get_runtime()
        principal = runtime.store.create_principal(
            email, username, runtime.hasher.hash(PASSWORD)
        )
        for code in roles:
            runtime.store.assign_role(principal.id, runtime.store.get_role_by_code(code).id)
        tokens = client.post(
            "/v1/auth/login", json={"identifier": username, "password": PASSWORD}
        ).json()["data"]
        return principal, tokens["access_token"]

    def test_role_guard(self, client, guarded_client):
        _, user_token = self._login(client, "ada@example.com", "ada", roles=("user",))
        _, admin_token = self._login(client, "root@example.com", "root", roles=("admin",))

        denied = guarded_client.get("/admin/stats", headers=_auth(user_token))
        assert denied.status_code == 403
        assert denied.json()["error"]["reason"] == "role_required"
        assert guarded_client.get("/admin/stats", headers=_auth(admin_token)).status_code == 200

    def test_permission_guard(self, client, guarded_client):
        _, user_token = self._login(client, "ada@example.com", "ada", roles=("user",))
        denied = guarded_client.delete("/users/u-1", headers=_auth(user_token))
        assert denied.status_code == 403
        assert denied.json()["error"]["reason"] == "permission_required"

    def test_ownership_guard(self, client, guarded_client):
        owner, owner_token = self._login(client, "ada@example.com", "ada", roles=("user",))
        _, other_token = self._login(client, "bob@example.com", "bob", roles=("user",))
        get_runtime().store.put_resource("documents", {"id": "doc-1", "user_id": owner.id})

        allowed = guarded_client.get("/documents/doc-1", headers=_auth(owner_token))
        assert allowed.status_code == 200
        denied = guarded_client.get("/documents/doc-1", headers=_auth(other_token))
        missing = guarded_client.get("/documents/doc-404", headers=_auth(owner_token))
        assert denied.status_code == missing.status_code == 403
        assert denied.json()["error"]["message"] == missing.json()["error"]["message"]


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
