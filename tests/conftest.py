"""
tests/conftest.py -- Shared test fixtures for Gatekeeper unit and integration tests.

This module provides:
  - RecordingTransport: EmailTransport fake that keeps every message and can be
    switched to fail, so delivery-failure paths run without an SMTP server
  - FakeClock: controllable clock injected into OtpService / ResendThrottle
  - store / transport / clock / lifecycle: per-test unit fixtures
  - fixed_codes: deterministic OTP codes (1111, 2222, ...) for tests that
    need two issued codes to differ
  - api_client: TestClient with a patched lifespan, one per test module

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the TestClient because it runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit fixtures never leave the test thread, so they use plain
:memory: and get a fresh database per test.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import itertools
import os
import re
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.lifecycle import CredentialLifecycle
from auth.store import PrincipalStore

# Per-IP limits would trip after a handful of requests from the single
# TestClient address. Rate limiting is slowapi's concern, not ours.
limiter.enabled = False

_CODE_RE = re.compile(r"<strong>(\d{4})</strong>")


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


@dataclass
class SentEmail:
    to: str
    subject: str
    html_body: str

    @property
    def code(self) -> str:
        match = _CODE_RE.search(self.html_body)
        assert match is not None, f"No OTP code in email body: {self.html_body!r}"
        return match.group(1)


@dataclass
class RecordingTransport:
    """EmailTransport that records messages instead of sending them.

    Set fail=True to make every send() report a delivery failure, or
    raise_on_send to make it raise.
    """

    sent: list[SentEmail] = field(default_factory=list)
    fail: bool = False
    raise_on_send: Exception | None = None

    def send(self, to: str, subject: str, html_body: str) -> bool:
        if self.raise_on_send is not None:
            raise self.raise_on_send
        if self.fail:
            return False
        self.sent.append(SentEmail(to=to, subject=subject, html_body=html_body))
        return True

    def last_code(self, to: str) -> str:
        """Return the code from the most recent email sent to the given address."""
        for email in reversed(self.sent):
            if email.to == to:
                return email.code
        raise AssertionError(f"No email was sent to {to}")


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[PrincipalStore, None, None]:
    s = PrincipalStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lifecycle(store: PrincipalStore, transport: RecordingTransport, clock: FakeClock) -> CredentialLifecycle:
    return CredentialLifecycle(store, transport, clock=clock)


@pytest.fixture
def fixed_codes(monkeypatch):
    """Make generate_otp_code() return 1111, 2222, 3333, ... in order."""
    codes = (f"{d}" * 4 for d in itertools.cycle("123456789"))
    monkeypatch.setattr("auth.otp.generate_otp_code", lambda: next(codes))


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: PrincipalStore
    transport: RecordingTransport
    clock: FakeClock
    lifecycle: CredentialLifecycle


def _patch_lifespan(store: PrincipalStore, lifecycle: CredentialLifecycle):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store and orchestrator into app.state so
    TestClient routes see an isolated in-memory DB and never reach SMTP.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.lifecycle = lifecycle
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    One TestClient per test module, backed by a named shared-memory DB whose
    name is derived from the module, so modules never see each other's rows.
    Tests inside a module share state and must use distinct emails.
    """
    db_name = request.module.__name__.rsplit(".", 1)[-1]
    store = PrincipalStore(db_url=f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    transport = RecordingTransport()
    clock = FakeClock()
    lifecycle = CredentialLifecycle(store, transport, clock=clock)

    app.router.lifespan_context = _patch_lifespan(store, lifecycle)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=store, transport=transport, clock=clock, lifecycle=lifecycle)

    store.close()
