"""
tests/test_api_auth.py -- Integration tests for /api/v1/auth/* routes.

Runs through the real ASGI stack (identity middleware, rate limiter,
exception handlers) with a patched lifespan and a tmp_path database.

Coverage:
  - Password login: success, generic failure, provisioned accounts, local
    auth disabled, remember-me TTL, no-store caching header
  - Logout: revocation, cookie clearing, proxy logout override
  - /me: session identity, stale cookie cleanup
  - Session listing and ownership-checked revocation
  - Admin user management and authorization failures
  - Login rate limit
"""

from __future__ import annotations

from auth.config_store import SystemConfigStore
from auth.models import User
from auth.passwords import make_unusable_password
from auth.sessions import SessionStore
from auth.store import UserStore


def _login(client, username: str, password: str, remember_me: bool = False):
    return client.post(
        "/api/v1/auth/login",
        json={"username": username, "password": password, "remember_me": remember_me},
    )


def _session_for(env, username: str, group_id: str = "user") -> str:
    users = UserStore(env.engine)
    uid = users.create_user(User(username=username, group_id=group_id))
    return SessionStore(env.engine, secret_key=env.settings.secret_key).create(users.get_by_id(uid), ttl=600).token


class TestLogin:
    def test_login_sets_session_cookie(self, api_client, make_user) -> None:
        make_user("alice", "alicepass123")
        client = api_client.client
        client.cookies.clear()

        resp = _login(client, "alice", "alicepass123")

        assert resp.status_code == 200
        body = resp.json()
        assert body["username"] == "alice"
        assert body["expires_in"] == 86_400
        assert resp.headers["cache-control"] == "no-store"
        set_cookie = resp.headers["set-cookie"].lower()
        assert "session_id=" in set_cookie
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie

        me = client.get("/api/v1/auth/me")
        assert me.status_code == 200
        assert me.json()["username"] == "alice"
        assert me.json()["auth_method"] == "session"

    def test_login_stamps_last_login(self, api_client, make_user, user_store: UserStore) -> None:
        make_user("alice", "alicepass123")
        api_client.client.cookies.clear()
        _login(api_client.client, "alice", "alicepass123")
        assert user_store.get_by_username("alice").last_login is not None

    def test_remember_me_uses_long_ttl(self, api_client, make_user) -> None:
        make_user("alice", "alicepass123")
        api_client.client.cookies.clear()
        resp = _login(api_client.client, "alice", "alicepass123", remember_me=True)
        assert resp.json()["expires_in"] == 2_592_000
        assert "max-age=2592000" in resp.headers["set-cookie"].lower()

    def test_wrong_password_is_generic_401(self, api_client, make_user) -> None:
        make_user("alice", "alicepass123")
        api_client.client.cookies.clear()
        wrong = _login(api_client.client, "alice", "nope-nope")
        unknown = _login(api_client.client, "nobody", "nope-nope")

        for resp in (wrong, unknown):
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "bad_credentials"
            assert resp.headers["cache-control"] == "no-store"
            assert "set-cookie" not in resp.headers

    def test_provisioned_account_cannot_log_in(self, api_client, user_store: UserStore) -> None:
        placeholder = make_unusable_password()
        user_store.create_user(User(username="proxied", hashed_password=placeholder))
        api_client.client.cookies.clear()
        assert _login(api_client.client, "proxied", placeholder).status_code == 401

    def test_login_refused_when_local_auth_disabled(self, api_client, make_user, config_store: SystemConfigStore) -> None:
        make_user("alice", "alicepass123")
        config_store.set_local_enabled(False)
        resp = _login(api_client.client, "alice", "alicepass123")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "local_auth_disabled"

    def test_login_rotates_existing_session(self, api_client, make_user) -> None:
        make_user("alice", "alicepass123")
        client = api_client.client
        old_admin_token = api_client.admin_token

        _login(client, "alice", "alicepass123")

        client.cookies.clear()
        client.cookies.set("session_id", old_admin_token)
        assert client.get("/api/v1/auth/me").status_code == 401

    def test_login_validation_error_envelope(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/login", json={"username": "alice"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_long_multibyte_password_is_422(self, api_client) -> None:
        api_client.client.cookies.clear()
        resp = _login(api_client.client, "nobody", "\u00e9" * 40)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_login_is_rate_limited(self, api_client) -> None:
        client = api_client.client
        client.cookies.clear()
        statuses = [_login(client, "nobody", "wrong-password").status_code for _ in range(11)]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429
        assert _login(client, "nobody", "wrong-password").json()["error"]["code"] == "rate_limited"


class TestLogout:
    def test_logout_revokes_session(self, api_client) -> None:
        client = api_client.client
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert resp.json()["redirect_url"] is None

        client.cookies.set("session_id", api_client.admin_token)
        assert client.get("/api/v1/auth/me").status_code == 401

    def test_logout_without_session_is_fine(self, api_client) -> None:
        api_client.client.cookies.clear()
        assert api_client.client.post("/api/v1/auth/logout").status_code == 200

    def test_logout_returns_proxy_logout_url(self, api_client, config_store: SystemConfigStore) -> None:
        config_store.update_proxy(override_logout=True, logout_url="https://auth.example.com/logout")
        resp = api_client.client.post("/api/v1/auth/logout")
        assert resp.json()["redirect_url"] == "https://auth.example.com/logout"

    def test_get_logout_redirects(self, api_client, config_store: SystemConfigStore) -> None:
        resp = api_client.client.get("/api/v1/auth/logout", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"

        config_store.update_proxy(override_logout=True, logout_url="https://auth.example.com/logout")
        resp = api_client.client.get("/api/v1/auth/logout", follow_redirects=False)
        assert resp.headers["location"] == "https://auth.example.com/logout"


class TestMe:
    def test_me_requires_auth(self, api_client) -> None:
        api_client.client.cookies.clear()
        resp = api_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert "set-cookie" not in resp.headers

    def test_stale_cookie_is_cleared(self, api_client) -> None:
        client = api_client.client
        client.cookies.clear()
        client.cookies.set("session_id", "stale-token")
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert "session_id=" in resp.headers["set-cookie"]

    def test_me_reports_group(self, api_client) -> None:
        data = api_client.client.get("/api/v1/auth/me").json()
        assert data["username"] == "testadmin"
        assert data["group_id"] == "admin"


class TestSessions:
    def test_list_marks_current_session(self, api_client) -> None:
        SessionStore(api_client.engine, secret_key=api_client.settings.secret_key).create(api_client.admin, ttl=60)
        rows = api_client.client.get("/api/v1/auth/sessions").json()
        assert len(rows) == 2
        assert sum(r["current"] for r in rows) == 1

    def test_revoke_own_other_session(self, api_client) -> None:
        other = SessionStore(api_client.engine, secret_key=api_client.settings.secret_key).create(
            api_client.admin, ttl=60
        )
        resp = api_client.client.delete(f"/api/v1/auth/sessions/{other.token_hash}")
        assert resp.status_code == 204
        ids = [r["id"] for r in api_client.client.get("/api/v1/auth/sessions").json()]
        assert other.token_hash not in ids

    def test_cannot_revoke_someone_elses_session(self, api_client, make_user) -> None:
        bob = make_user("bob")
        bobs = SessionStore(api_client.engine, secret_key=api_client.settings.secret_key).create(bob, ttl=60)
        resp = api_client.client.delete(f"/api/v1/auth/sessions/{bobs.token_hash}")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


class TestUserManagement:
    def test_admin_creates_user(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/users",
            json={"username": "carol", "password": "carolpass123", "group_id": "guest"},
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["username"] == "carol"
        assert data["group_id"] == "guest"
        assert data["is_setup_admin"] is False

        api_client.client.cookies.clear()
        assert _login(api_client.client, "carol", "carolpass123").status_code == 200

    def test_long_multibyte_password_is_422(self, api_client, user_store: UserStore) -> None:
        resp = api_client.client.post("/api/v1/auth/users", json={"username": "dave", "password": "\u00e9" * 40})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert user_store.get_by_username("dave") is None

    def test_72_byte_multibyte_password_is_accepted(self, api_client) -> None:
        password = "\u00e9" * 36
        resp = api_client.client.post("/api/v1/auth/users", json={"username": "dave", "password": password})
        assert resp.status_code == 201
        api_client.client.cookies.clear()
        assert _login(api_client.client, "dave", password).status_code == 200

    def test_duplicate_username_is_409(self, api_client) -> None:
        body = {"username": "carol", "password": "carolpass123"}
        assert api_client.client.post("/api/v1/auth/users", json=body).status_code == 201
        resp = api_client.client.post("/api/v1/auth/users", json=body)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_admin_lists_users(self, api_client) -> None:
        names = [u["username"] for u in api_client.client.get("/api/v1/auth/users").json()]
        assert names == ["testadmin"]

    def test_non_admin_is_forbidden(self, api_client) -> None:
        client = api_client.client
        client.cookies.clear()
        client.cookies.set("session_id", _session_for(api_client, "plain"))
        resp = client.get("/api/v1/auth/users")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_anonymous_is_unauthorized(self, api_client) -> None:
        api_client.client.cookies.clear()
        assert api_client.client.get("/api/v1/auth/users").status_code == 401
