from __future__ import annotations

from http.cookies import SimpleCookie

import pytest

from app import create_app
from tests.fakes import MEMBER, auth_response, auth_user, make_settings, seeded_supabase


@pytest.fixture
def sqlite_db_url(tmp_path, monkeypatch):
    db_path = tmp_path / "session.db"
    monkeypatch.setenv("SUPABASE_DB_POOL_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("FLASK_SECRET_KEY", "testing-secret")
    monkeypatch.setenv("FLASK_ENV", "development")
    monkeypatch.setenv("SESSION_COOKIE_SECURE", "1")
    monkeypatch.setenv("SESSION_COOKIE_SAMESITE", "Lax")
    monkeypatch.setenv("SESSION_COOKIE_DOMAIN", "localhost")
    monkeypatch.setenv("SESSION_COOKIE_NAME", "gymdesk_session")
    monkeypatch.delenv("VERCEL", raising=False)
    monkeypatch.delenv("VERCEL_ENV", raising=False)
    yield f"sqlite:///{db_path}"


def _extract_cookie(response, name: str) -> SimpleCookie | None:
    header = response.headers.get("Set-Cookie")
    if not header:
        return None
    cookie = SimpleCookie()
    cookie.load(header)
    return cookie.get(name)


def _build_app():
    supabase = seeded_supabase()
    member = auth_user(MEMBER["id"], MEMBER["email"], role="member", first_name="Mia", last_name="Member")
    supabase.auth.sign_in_with_password.return_value = auth_response(member)
    return create_app(make_settings(), supabase=supabase, auth_client_factory=lambda: supabase)


def test_session_survives_cold_start(sqlite_db_url):
    # First invocation simulates the initial cold start.
    app_one = _build_app()
    client_one = app_one.test_client()

    login_response = client_one.post(
        "/api/auth/login",
        json={"email": MEMBER["email"], "password": "secret1", "portal": "member"},
    )
    assert login_response.status_code == 200
    assert login_response.get_json()["redirect"] == "/member"

    cookie = _extract_cookie(login_response, "gymdesk_session")
    assert cookie is not None
    assert "Secure" in cookie.output()
    assert "SameSite=Lax" in cookie.output()

    assert client_one.get("/api/auth/me").status_code == 200

    # Simulate a brand new process (second cold start) using the same database.
    app_two = _build_app()
    client_two = app_two.test_client()
    client_two.set_cookie(
        key="gymdesk_session",
        value=cookie.value,
        domain="localhost",
        path=cookie["path"] if "path" in cookie else "/",
    )

    second_response = client_two.get("/api/auth/me")
    assert second_response.status_code == 200
    assert second_response.get_json()["user"]["id"] == MEMBER["id"]
    assert "access_token" not in second_response.get_json()["user"]


def test_logout_clears_session(sqlite_db_url):
    client = _build_app().test_client()
    client.post("/api/auth/login", json={"email": MEMBER["email"], "password": "secret1"})

    assert client.post("/api/auth/logout").status_code == 200
    assert client.get("/api/auth/me").status_code == 401
