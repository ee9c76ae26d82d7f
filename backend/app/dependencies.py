"""FastAPI dependency injection for the store, caches and engines."""

from __future__ import annotations

from fastapi import Depends, Request
from sqlmodel import Session

from app.config import Settings, get_settings
from app.db import get_session
from app.models.pending import AuthorizationCode, Challenge
from app.services.identity_store import IdentityStore, SqlIdentityStore
from app.services.oidc import OIDCService
from app.services.sessions import SessionManager
from app.services.signing import KeyCache, SigningKeyService
from app.services.webauthn import WebAuthnService
from app.ttl_store import ExpiringStore


def get_identity_store(session: Session = Depends(get_session)) -> IdentityStore:
    return SqlIdentityStore(session)


def get_key_cache(request: Request) -> KeyCache:
    """The KeyCache singleton created at startup."""
    return request.app.state.key_cache


def get_challenge_store(request: Request) -> ExpiringStore[Challenge]:
    return request.app.state.challenge_store


def get_code_store(request: Request) -> ExpiringStore[AuthorizationCode]:
    return request.app.state.code_store


def get_session_manager(
    store: IdentityStore = Depends(get_identity_store),
) -> SessionManager:
    return SessionManager(store)


def get_signing_service(
    store: IdentityStore = Depends(get_identity_store),
    cache: KeyCache = Depends(get_key_cache),
    settings: Settings = Depends(get_settings),
) -> SigningKeyService:
    return SigningKeyService(store, cache, settings)


def get_webauthn_service(
    store: IdentityStore = Depends(get_identity_store),
    challenges: ExpiringStore[Challenge] = Depends(get_challenge_store),
    sessions: SessionManager = Depends(get_session_manager),
    settings: Settings = Depends(get_settings),
) -> WebAuthnService:
    return WebAuthnService(store, challenges, sessions, settings)


def get_oidc_service(
    store: IdentityStore = Depends(get_identity_store),
    codes: ExpiringStore[AuthorizationCode] = Depends(get_code_store),
    sessions: SessionManager = Depends(get_session_manager),
    signer: SigningKeyService = Depends(get_signing_service),
    cache: KeyCache = Depends(get_key_cache),
    settings: Settings = Depends(get_settings),
) -> OIDCService:
    """Construct OIDCService from its dependencies."""
    return OIDCService(store, codes, sessions, signer, cache, settings)
