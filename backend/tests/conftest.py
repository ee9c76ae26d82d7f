from __future__ import annotations

import os
import tempfile

# Set test environment BEFORE importing app modules.
# app.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any app imports.
_test_tmp = tempfile.mkdtemp(prefix="nexus-test-")
os.environ.setdefault("DATA_DIR", os.path.join(_test_tmp, "data"))
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("ISSUER", "https://id.example.test")
os.environ.setdefault("RP_ID", "localhost")
os.environ.setdefault("WEBAUTHN_ORIGIN", "http://localhost:3000")
os.environ.setdefault("LOGIN_URL", "http://localhost:3000/login")
# TestClient talks plain http; a Secure cookie would never be sent back
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("SIGNING_KEY_PASSPHRASE", "test-signing-key-passphrase")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from app.config import Settings, get_settings
from app.db import get_session
from app.main import app as fastapi_app
from app.models.pending import AuthorizationCode, Challenge
from app.services.identity_store import SqlIdentityStore
from app.services.oidc import OIDCService
from app.services.sessions import SessionManager
from app.services.signing import KeyCache, SigningKeyService
from app.services.webauthn import WebAuthnService
from app.ttl_store import ExpiringStore
from software_authenticator import SoftwareAuthenticator


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database.
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="store")
def store_fixture(session) -> SqlIdentityStore:
    return SqlIdentityStore(session)


# ── Service fixtures ──────────────────────────────────────────────────


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return get_settings()


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="key_cache")
def key_cache_fixture(settings, clock) -> KeyCache:
    return KeyCache(settings.jwks_cache_ttl_seconds, clock=clock)


@pytest.fixture(name="signer")
def signer_fixture(store, key_cache, settings, clock) -> SigningKeyService:
    return SigningKeyService(store, key_cache, settings, clock=clock)


@pytest.fixture(name="sessions")
def sessions_fixture(store) -> SessionManager:
    return SessionManager(store)


@pytest.fixture(name="challenges")
def challenges_fixture(clock) -> ExpiringStore[Challenge]:
    return ExpiringStore("challenges", clock=clock)


@pytest.fixture(name="codes")
def codes_fixture(clock) -> ExpiringStore[AuthorizationCode]:
    return ExpiringStore("authorization_codes", clock=clock)


@pytest.fixture(name="webauthn_service")
def webauthn_service_fixture(store, challenges, sessions, settings, clock) -> WebAuthnService:
    return WebAuthnService(store, challenges, sessions, settings, clock=clock)


@pytest.fixture(name="oidc_service")
def oidc_service_fixture(
    store, codes, sessions, signer, key_cache, settings, clock
) -> OIDCService:
    return OIDCService(store, codes, sessions, signer, key_cache, settings, clock=clock)


@pytest.fixture(name="authenticator")
def authenticator_fixture() -> SoftwareAuthenticator:
    return SoftwareAuthenticator()


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="client")
def client_fixture(session):
    """FastAPI TestClient with overridden DB session."""

    def _get_session_override():
        yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    with TestClient(fastapi_app) as client:
        yield client
    fastapi_app.dependency_overrides.clear()
