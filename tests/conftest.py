"""
tests/conftest.py -- Shared test fixtures for Rollcall tests.

This module provides:
  - FakeAuthorizationServer: in-process stand-in for the authorization
    server's admin API (challenges, grants, rejections, introspection)
  - RecordingPublisher: bus publisher that records messages and can be told
    to fail
  - services: the full service graph on an isolated SQLite file, without
    HTTP
  - harness / web_harness: TestClient over the real ASGI app with a patched
    lifespan that wires the same service graph into app.state

Design: every fixture instance gets its own SQLite file under tmp_path.
TestClient runs route handlers in a thread pool and each transaction starts
with BEGIN IMMEDIATE (core/db.py), which needs a real pooled database rather
than one shared in-memory connection. Tests never see each other's rows.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from urllib.parse import urlencode

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import wire_services
from asgi import app
from auth.hydra import ConsentRequest
from core.config import get_settings
from core.db import make_engine
from core.errors import UpstreamFailure
from core.limiter import limiter

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

CALLBACK = "https://client.example/callback"


@dataclass
class FakeAuthorizationServer:
    """Records every decision handed to it; challenges are registered by tests.

    Set `down = True` to make every call raise UpstreamFailure, as a timeout
    or a 5xx from the real server would.
    """

    challenges: dict[str, ConsentRequest] = field(default_factory=dict)
    tokens: dict[str, str] = field(default_factory=dict)
    grants: list[dict[str, Any]] = field(default_factory=list)
    rejections: list[str] = field(default_factory=list)
    timeouts: list[float | None] = field(default_factory=list)
    down: bool = False

    def add_challenge(self, client_id: str, scopes: list[str], challenge: str | None = None) -> str:
        challenge = challenge or uuid.uuid4().hex
        self.challenges[challenge] = ConsentRequest(challenge, client_id, list(scopes))
        return challenge

    def issue_token(self, subject: str) -> str:
        token = f"at-{uuid.uuid4().hex}"
        self.tokens[token] = subject
        return token

    def _check(self, timeout: float | None) -> None:
        self.timeouts.append(timeout)
        if self.down:
            raise UpstreamFailure()

    def verify_challenge(self, challenge: str, timeout: float | None = None) -> ConsentRequest:
        self._check(timeout)
        if challenge not in self.challenges:
            raise UpstreamFailure()
        return self.challenges[challenge]

    def generate_grant_response(
        self,
        challenge: str,
        subject: str,
        granted_scopes: list[str],
        timeout: float | None = None,
    ) -> str:
        self._check(timeout)
        self.grants.append({"challenge": challenge, "subject": subject, "scopes": list(granted_scopes)})
        return f"{CALLBACK}?{urlencode({'consent_verifier': challenge})}"

    def reject_challenge(
        self,
        challenge: str,
        reason: str = "access_denied",
        description: str = "",
        timeout: float | None = None,
    ) -> str:
        self._check(timeout)
        self.rejections.append(challenge)
        return f"{CALLBACK}?{urlencode({'error': reason})}"

    def introspect(self, access_token: str, timeout: float | None = None) -> str | None:
        self._check(timeout)
        return self.tokens.get(access_token)

    def authorize_url(self, scopes: list[str] | None = None) -> tuple[str, str]:
        state = uuid.uuid4().hex
        return f"http://hydra.test/oauth2/auth?{urlencode({'state': state})}", state


@dataclass
class RecordingPublisher:
    messages: list[tuple[str, dict]] = field(default_factory=list)
    fail: bool = False
    closed: bool = False

    def publish(self, topic: str, payload: dict) -> None:
        if self.fail:
            raise ConnectionError("bus unreachable")
        self.messages.append((topic, dict(payload)))

    def close(self) -> None:
        self.closed = True

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.messages]


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _db_url(tmp_path: Path, name: str) -> str:
    return f"sqlite:///{tmp_path / name}.db"


def _patch_lifespan(engine, server, publisher):
    """Return an async context manager that replaces the real lifespan.

    Wires a fresh service graph over the test engine and fakes into app.state
    so TestClient routes never reach a real database, authorization server or
    bus.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, engine, server, publisher, get_settings())
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def server() -> FakeAuthorizationServer:
    return FakeAuthorizationServer()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def services(server, publisher, tmp_path) -> Generator[SimpleNamespace, None, None]:
    """The wired service graph (app.state equivalent) with no HTTP in front."""
    engine = make_engine(_db_url(tmp_path, "svc"))
    holder = SimpleNamespace(state=SimpleNamespace())
    wire_services(holder, engine, server, publisher, get_settings())
    yield holder.state
    engine.dispose()


@dataclass
class Harness:
    client: TestClient
    server: FakeAuthorizationServer
    publisher: RecordingPublisher

    @property
    def state(self):
        return self.client.app.state

    def register(self, name: str, email: str, password: str = "correct horse") -> str:
        return self.state.principals.create_user(name, email, password).id

    def bearer(self, user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.server.issue_token(user_id)}"}


def _harness(server, publisher, db_url: str, **client_kwargs) -> Generator[Harness, None, None]:
    engine = make_engine(db_url)
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(engine, server, publisher)
    with TestClient(app, raise_server_exceptions=True, **client_kwargs) as client:
        yield Harness(client=client, server=server, publisher=publisher)
    engine.dispose()


@pytest.fixture
def harness(server, publisher, tmp_path) -> Generator[Harness, None, None]:
    """TestClient for API tests. Authenticate with harness.bearer(user_id)."""
    yield from _harness(server, publisher, _db_url(tmp_path, "http"))


@pytest.fixture
def web_harness(server, publisher, tmp_path) -> Generator[Harness, None, None]:
    """TestClient with follow_redirects=False for web route tests.

    Web tests assert on redirect locations, which are invisible once the
    client follows the redirect and returns the final response.
    """
    yield from _harness(server, publisher, _db_url(tmp_path, "web"), follow_redirects=False)
