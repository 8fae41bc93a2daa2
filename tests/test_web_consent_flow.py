"""
tests/test_web_consent_flow.py -- Integration tests for the login / consent pages.

Uses the web_harness fixture (follow_redirects=False) and asserts on
redirect Location headers and rendered HTML directly. The authorization
server is the in-process fake from conftest.py.

Coverage:
  - GET / and GET /me bootstrap (anonymous -> authorize URL)
  - login failure: 401, same challenge in the form, generic message, no cookie
  - login success: cookie written, continues to /consent?challenge=
  - consent: unauthenticated -> /login?challenge=, trusted bypass
    auto-grants, third party gets the form, form grants only checked scopes,
    deny, missing challenge 400, upstream failure 502
  - registration carries the challenge through and logs the user in
  - deactivated principal's cookie no longer counts as a session
  - every POST form needs the session's CSRF token; without it nothing happens
  - /callback only accepts the state issued by /me, once
"""

from __future__ import annotations

import re
from urllib.parse import parse_qs, urlparse

BYPASS = "nonconsentual"

_CSRF_FIELD = re.compile(r'name="csrf_token" value="([^"]+)"')


def _csrf(harness) -> str:
    """Fetch the form token bound to this client's session cookie."""
    match = _CSRF_FIELD.search(harness.client.get("/register").text)
    assert match is not None
    return match.group(1)


def _login(harness, email: str = "alice@example.com", password: str = "correct horse", challenge: str = ""):
    return harness.client.post(
        "/login",
        data={"email": email, "password": password, "challenge": challenge, "csrf_token": _csrf(harness)},
    )


def _post(harness, path: str, data: dict):
    return harness.client.post(path, data={**data, "csrf_token": _csrf(harness)})


class TestBootstrap:
    def test_root_redirects_to_me(self, web_harness) -> None:
        resp = web_harness.client.get("/")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/me"

    def test_anonymous_me_starts_authorize_flow(self, web_harness) -> None:
        resp = web_harness.client.get("/me")
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert location.path == "/oauth2/auth"
        assert parse_qs(location.query)["state"]

    def test_signed_in_me_shows_account(self, web_harness) -> None:
        web_harness.register("Alice", "alice@example.com", "correct horse")
        _login(web_harness)
        resp = web_harness.client.get("/me")
        assert resp.status_code == 200
        assert "alice@example.com" in resp.text


class TestLogin:
    def test_failure_keeps_challenge_and_sets_no_cookie(self, web_harness) -> None:
        web_harness.register("Alice", "alice@example.com", "correct horse")
        resp = _login(web_harness, password="wrong", challenge="ch-123")
        assert resp.status_code == 401
        assert 'value="ch-123"' in resp.text
        assert "Invalid email or password." in resp.text
        assert "session" not in resp.cookies

    def test_unknown_email_gets_same_message(self, web_harness) -> None:
        resp = _login(web_harness, email="nobody@example.com", password="wrong")
        assert resp.status_code == 401
        assert "Invalid email or password." in resp.text

    def test_success_continues_to_consent(self, web_harness) -> None:
        web_harness.register("Alice", "alice@example.com", "correct horse")
        resp = _login(web_harness, challenge="ch-123")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/consent?challenge=ch-123"
        assert "session" in resp.cookies

    def test_login_page_skips_ahead_when_signed_in(self, web_harness) -> None:
        web_harness.register("Alice", "alice@example.com", "correct horse")
        _login(web_harness)
        resp = web_harness.client.get("/login?challenge=abc")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/consent?challenge=abc"

    def test_logout(self, web_harness) -> None:
        web_harness.register("Alice", "alice@example.com", "correct horse")
        _login(web_harness)
        resp = web_harness.client.get("/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"
        assert web_harness.client.get("/me").headers["location"].startswith("http://hydra.test/")


class TestConsent:
    def test_unauthenticated_goes_to_login(self, web_harness) -> None:
        ch = web_harness.server.add_challenge("thirdparty", ["openid"])
        resp = web_harness.client.get(f"/consent?challenge={ch}")
        assert resp.status_code == 302
        assert resp.headers["location"] == f"/login?challenge={ch}"

    def test_full_first_party_flow_is_silent(self, web_harness) -> None:
        uid = web_harness.register("Alice", "alice@example.com", "correct horse")
        ch = web_harness.server.add_challenge("account", ["offline", BYPASS, "openid"])

        first = web_harness.client.get(f"/consent?challenge={ch}")
        assert first.headers["location"] == f"/login?challenge={ch}"
        login = _login(web_harness, challenge=ch)
        consent = web_harness.client.get(login.headers["location"])

        assert consent.status_code == 302
        assert consent.headers["location"].startswith("https://client.example/callback")
        assert web_harness.server.grants == [
            {"challenge": ch, "subject": uid, "scopes": ["offline", BYPASS, "openid"]}
        ]

    def test_third_party_sees_the_form(self, web_harness) -> None:
        web_harness.register("Alice", "alice@example.com", "correct horse")
        _login(web_harness)
        ch = web_harness.server.add_challenge("thirdparty", ["openid", "profile", BYPASS])
        resp = web_harness.client.get(f"/consent?challenge={ch}")
        assert resp.status_code == 200
        assert "thirdparty" in resp.text
        assert 'value="profile"' in resp.text
        assert f'value="{BYPASS}"' not in resp.text
        assert web_harness.server.grants == []

    def test_form_grants_only_checked_scopes(self, web_harness) -> None:
        uid = web_harness.register("Alice", "alice@example.com", "correct horse")
        _login(web_harness)
        ch = web_harness.server.add_challenge("thirdparty", ["openid", "profile", "email"])
        resp = _post(
            web_harness,
            "/consent",
            {"challenge": ch, "scope": ["email", "openid", "admin"], "action": "allow"},
        )
        assert resp.status_code == 302
        assert web_harness.server.grants == [{"challenge": ch, "subject": uid, "scopes": ["openid", "email"]}]

    def test_deny(self, web_harness) -> None:
        web_harness.register("Alice", "alice@example.com", "correct horse")
        _login(web_harness)
        ch = web_harness.server.add_challenge("thirdparty", ["openid"])
        resp = _post(web_harness, "/consent", {"challenge": ch, "scope": ["openid"], "action": "deny"})
        assert resp.status_code == 302
        assert "error=access_denied" in resp.headers["location"]
        assert web_harness.server.rejections == [ch]

    def test_post_without_challenge(self, web_harness) -> None:
        web_harness.register("Alice", "alice@example.com", "correct horse")
        _login(web_harness)
        resp = _post(web_harness, "/consent", {"scope": ["openid"]})
        assert resp.status_code == 400
        assert "no_challenge" in resp.text

    def test_get_without_challenge_goes_to_me(self, web_harness) -> None:
        resp = web_harness.client.get("/consent")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/me"

    def test_upstream_error_parameter(self, web_harness) -> None:
        resp = web_harness.client.get("/consent?error=invalid_request&error_description=Bad+things")
        assert resp.status_code == 400
        assert "Bad things" in resp.text

    def test_authorization_server_down(self, web_harness) -> None:
        web_harness.register("Alice", "alice@example.com", "correct horse")
        _login(web_harness)
        ch = web_harness.server.add_challenge("thirdparty", ["openid"])
        web_harness.server.down = True
        resp = web_harness.client.get(f"/consent?challenge={ch}")
        assert resp.status_code == 502
        assert "having a problem on our end" in resp.text


class TestRegistration:
    def test_register_continues_the_flow(self, web_harness) -> None:
        resp = _post(
            web_harness,
            "/register",
            {
                "name": "Alice",
                "email": "Alice@Example.com",
                "password": "correct horse",
                "confirm_password": "correct horse",
                "challenge": "ch-9",
            },
        )
        assert resp.status_code == 302
        assert resp.headers["location"] == "/consent?challenge=ch-9"
        assert "session" in resp.cookies

    def test_duplicate_email_inline_error(self, web_harness) -> None:
        web_harness.register("Alice", "alice@example.com")
        resp = _post(
            web_harness,
            "/register",
            {
                "name": "Other",
                "email": "ALICE@example.com",
                "password": "correct horse",
                "confirm_password": "correct horse",
                "challenge": "ch-9",
            },
        )
        assert resp.status_code == 409
        assert "already exists" in resp.text
        assert 'value="ch-9"' in resp.text

    def test_password_mismatch(self, web_harness) -> None:
        resp = _post(
            web_harness,
            "/register",
            {"name": "A", "email": "a@example.com", "password": "correct horse", "confirm_password": "nope"},
        )
        assert resp.status_code == 400
        assert "Passwords do not match." in resp.text


def test_deactivated_principal_loses_session(web_harness) -> None:
    uid = web_harness.register("Bob", "bob@example.com", "correct horse")
    _login(web_harness, email="bob@example.com")
    web_harness.state.principals.delete_user(uid)
    resp = web_harness.client.get("/me")
    assert resp.status_code == 302
    assert resp.headers["location"].startswith("http://hydra.test/")


class TestFormTokens:
    def test_consent_post_without_token_grants_nothing(self, web_harness) -> None:
        web_harness.register("Alice", "alice@example.com", "correct horse")
        _login(web_harness)
        ch = web_harness.server.add_challenge("thirdparty", ["openid", "email"])
        resp = web_harness.client.post("/consent", data={"challenge": ch, "scope": ["openid", "email"]})
        assert resp.status_code == 403
        assert "csrf_failed" in resp.text
        assert web_harness.server.grants == []
        assert web_harness.server.rejections == []

    def test_consent_post_with_wrong_token_grants_nothing(self, web_harness) -> None:
        web_harness.register("Alice", "alice@example.com", "correct horse")
        _login(web_harness)
        ch = web_harness.server.add_challenge("thirdparty", ["openid"])
        resp = web_harness.client.post(
            "/consent",
            data={"challenge": ch, "scope": ["openid"], "csrf_token": "forged"},
        )
        assert resp.status_code == 403
        assert web_harness.server.grants == []

    def test_login_with_wrong_token_sets_no_cookie(self, web_harness) -> None:
        web_harness.register("Alice", "alice@example.com", "correct horse")
        _csrf(web_harness)
        resp = web_harness.client.post(
            "/login",
            data={"email": "alice@example.com", "password": "correct horse", "csrf_token": "forged"},
        )
        assert resp.status_code == 403
        assert "session" not in resp.cookies

    def test_register_without_token_creates_nothing(self, web_harness) -> None:
        resp = web_harness.client.post(
            "/register",
            data={
                "name": "Mallory",
                "email": "mallory@example.com",
                "password": "correct horse",
                "confirm_password": "correct horse",
            },
        )
        assert resp.status_code == 403
        assert web_harness.state.principal_store.get_by_email("mallory@example.com") is None

    def test_forms_render_the_token(self, web_harness) -> None:
        token = _csrf(web_harness)
        assert f'value="{token}"' in web_harness.client.get("/login").text


class TestCallback:
    def _state(self, web_harness) -> str:
        location = web_harness.client.get("/me").headers["location"]
        return parse_qs(urlparse(location).query)["state"][0]

    def test_matching_state_returns_to_account(self, web_harness) -> None:
        state = self._state(web_harness)
        resp = web_harness.client.get(f"/callback?state={state}&code=abc")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/me"

    def test_state_is_single_use(self, web_harness) -> None:
        state = self._state(web_harness)
        web_harness.client.get(f"/callback?state={state}&code=abc")
        resp = web_harness.client.get(f"/callback?state={state}&code=abc")
        assert resp.status_code == 400
        assert "state_mismatch" in resp.text

    def test_mismatched_state(self, web_harness) -> None:
        self._state(web_harness)
        resp = web_harness.client.get("/callback?state=not-ours&code=abc")
        assert resp.status_code == 400
        assert "state_mismatch" in resp.text

    def test_callback_without_flow(self, web_harness) -> None:
        resp = web_harness.client.get("/callback?state=anything")
        assert resp.status_code == 400

    def test_error_from_authorization_server(self, web_harness) -> None:
        state = self._state(web_harness)
        resp = web_harness.client.get(f"/callback?state={state}&error=access_denied")
        assert resp.status_code == 400
        assert "access_denied" in resp.text
