from __future__ import annotations

import json
from typing import Any, Dict, List

import httpx
import pytest

from app import create_app
from app.config import Settings
from tests.fakes import make_settings, seeded_supabase


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def supabase():
    return seeded_supabase()


@pytest.fixture
def sent_emails() -> List[Dict[str, Any]]:
    return []


@pytest.fixture
def email_transport(sent_emails):
    def handler(request: httpx.Request) -> httpx.Response:
        sent_emails.append(
            {
                'url': str(request.url),
                'authorization': request.headers.get('Authorization'),
                'body': json.loads(request.content),
            }
        )
        return httpx.Response(200, json={'id': f'email-{len(sent_emails)}'})

    return httpx.MockTransport(handler)


@pytest.fixture
def app(tmp_path, monkeypatch, settings, supabase, email_transport):
    monkeypatch.setenv('LOCAL_DATABASE_URI', f"sqlite:///{tmp_path / 'gymdesk.db'}")
    monkeypatch.setenv('FLASK_SECRET_KEY', 'testing-secret')
    monkeypatch.setenv('FLASK_ENV', 'development')
    monkeypatch.delenv('SUPABASE_DB_POOL_URL', raising=False)
    monkeypatch.delenv('VERCEL', raising=False)
    monkeypatch.delenv('VERCEL_ENV', raising=False)

    flask_app = create_app(
        settings,
        supabase=supabase,
        auth_client_factory=lambda: supabase,
        email_transport=email_transport,
    )
    flask_app.config.update(TESTING=True, SSE_HEARTBEAT_SECONDS=0.01)
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()
