from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from meme_collection.app import create_app
from meme_collection.constants import OAUTH_STATE_COOKIE

from tests._helpers import FakeGoogleOAuthClient, login_as, make_settings, profile_payload, start_login


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": {"success": True, "error": None}, "data": {"status": "ok"}}


def test_login_redirects_to_google_with_pkce(client):
    resp, state = start_login(client)
    assert resp.status_code == 302

    location = urlparse(resp.headers["location"])
    assert location.netloc == "accounts.google.com"
    query = parse_qs(location.query)
    assert query["client_id"] == ["test-client-id"]
    assert query["redirect_uri"] == ["http://api.test/auth/google/callback"]
    assert query["code_challenge_method"] == ["S256"]
    assert query["scope"] == ["openid email profile"]
    assert state

    set_cookie = resp.headers["set-cookie"]
    assert OAUTH_STATE_COOKIE in set_cookie
    assert "httponly" in set_cookie.lower()
    assert client.cookies.get(OAUTH_STATE_COOKIE)


def test_callback_success_sets_session_and_redirects_to_frontend(client, fake_oauth, app_settings):
    resp = login_as(client, fake_oauth, code="code-alice")

    assert resp.status_code == 302
    assert resp.headers["location"] == "http://frontend.test/"
    assert client.cookies.get(app_settings.session_cookie_name)
    cookies = ",".join(resp.headers.get_list("set-cookie"))
    assert "httponly" in cookies.lower()


def test_current_user_after_login(alice):
    resp = alice.get("/auth/current_user")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"]["success"] is True
    assert body["data"]["googleId"] == "g-alice"
    assert body["data"]["displayName"] == "Alice"
    assert body["data"]["email"] == "alice@example.com"
    assert body["data"]["profileImage"] == "http://img.example/alice.png"


def test_current_user_anonymous_is_null(client):
    resp = client.get("/auth/current_user")
    assert resp.status_code == 200
    assert resp.json() == {"status": {"success": True, "error": None}, "data": None}


def test_current_user_with_garbage_cookie_is_null(client, app_settings):
    client.cookies.set(app_settings.session_cookie_name, "not-a-session")
    resp = client.get("/auth/current_user")
    assert resp.json()["data"] is None


def test_relogin_refreshes_profile(client, fake_oauth):
    login_as(client, fake_oauth, code="c1", name="Alice")
    first = client.get("/auth/current_user").json()["data"]
    login_as(client, fake_oauth, code="c2", name="Alice Cooper", picture="http://img.example/new.png")
    second = client.get("/auth/current_user").json()["data"]

    assert second["id"] == first["id"]
    assert second["displayName"] == "Alice Cooper"
    assert second["profileImage"] == "http://img.example/new.png"


def test_callback_with_provider_error_redirects_to_failure(client, fake_oauth, app_settings):
    start_login(client)
    resp = client.get("/auth/google/callback", params={"error": "access_denied"}, follow_redirects=False)

    assert resp.status_code == 302
    assert resp.headers["location"] == "http://frontend.test/login"
    assert client.cookies.get(app_settings.session_cookie_name) is None
    assert fake_oauth.calls == []


def test_callback_with_forged_state_fails(client, fake_oauth, app_settings):
    fake_oauth.profiles["code-alice"] = profile_payload()
    start_login(client)
    resp = client.get(
        "/auth/google/callback", params={"code": "code-alice", "state": "forged"}, follow_redirects=False
    )

    assert resp.headers["location"] == "http://frontend.test/login"
    assert client.cookies.get(app_settings.session_cookie_name) is None
    assert fake_oauth.calls == []


def test_callback_without_state_cookie_fails(client, fake_oauth, app_settings):
    fake_oauth.profiles["code-alice"] = profile_payload()
    _resp, state = start_login(client)
    client.cookies.clear()
    resp = client.get(
        "/auth/google/callback", params={"code": "code-alice", "state": state}, follow_redirects=False
    )
    assert resp.headers["location"] == "http://frontend.test/login"
    assert client.cookies.get(app_settings.session_cookie_name) is None


def test_callback_with_rejected_code_fails(client, fake_oauth, app_settings):
    _resp, state = start_login(client)
    resp = client.get(
        "/auth/google/callback", params={"code": "expired", "state": state}, follow_redirects=False
    )
    assert resp.headers["location"] == "http://frontend.test/login"
    assert client.cookies.get(app_settings.session_cookie_name) is None
    assert client.get("/auth/current_user").json()["data"] is None


def test_logout_clears_session(alice, app_settings):
    resp = alice.get("/auth/logout", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == "http://frontend.test/login"
    assert alice.cookies.get(app_settings.session_cookie_name) is None
    assert alice.get("/auth/current_user").json()["data"] is None
    assert alice.get("/api/memes").status_code == 401


def test_logout_is_idempotent(client):
    first = client.get("/auth/logout", follow_redirects=False)
    second = client.get("/auth/logout", follow_redirects=False)
    assert first.status_code == second.status_code == 302


def test_old_token_is_dead_after_logout(alice, app_settings):
    token = alice.cookies.get(app_settings.session_cookie_name)
    alice.get("/auth/logout", follow_redirects=False)

    alice.cookies.set(app_settings.session_cookie_name, token)
    assert alice.get("/auth/current_user").json()["data"] is None


def test_sessions_are_per_browser(alice, bob):
    assert alice.get("/auth/current_user").json()["data"]["googleId"] == "g-alice"
    assert bob.get("/auth/current_user").json()["data"]["googleId"] == "g-bob"


def test_login_with_unconfigured_client_redirects_to_failure(engine):
    settings = make_settings(google_client_id=None)
    app = create_app(settings, engine=engine, oauth_client=FakeGoogleOAuthClient(settings))
    with TestClient(app) as c:
        resp = c.get("/auth/google", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == "http://frontend.test/login"


def test_session_store_failure_is_server_error_not_anonymous(app, alice, monkeypatch):
    def unavailable(token):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(app.state.authenticator.store, "resolve", unavailable)

    for path in ("/auth/current_user", "/api/memes"):
        resp = alice.get(path)
        assert resp.status_code == 500
        body = resp.json()
        assert body["status"]["error"]["code"] == "INTERNAL_ERROR"
        assert body["data"] is None
