from __future__ import annotations

import logging
from datetime import timedelta

from app.models.auth import WebSession, as_utc, utcnow
from app.services.identity_store import IdentityStore
from app.utils.crypto import random_token, sha256_hash

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 86400


class SessionManager:
    """Opaque browser sessions issued after a successful login ceremony.

    The raw token only ever exists in the cookie; storage keeps its SHA-256
    hash. Expiry is enforced on every validation, and an expired row is
    deleted the first time it is seen (lazy GC).
    """

    def __init__(self, store: IdentityStore) -> None:
        self._store = store

    def create(self, user_id: str, ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS) -> str:
        """Persist a new session for ``user_id`` and return its token."""
        token = random_token(32)
        now = utcnow()
        self._store.insert_session(
            WebSession(
                token_hash=sha256_hash(token.encode("utf-8")),
                user_id=user_id,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl_seconds),
            )
        )
        return token

    def validate(self, token: str | None) -> WebSession | None:
        if not token:
            return None
        token_hash = sha256_hash(token.encode("utf-8"))
        session = self._store.get_session(token_hash)
        if session is None:
            return None
        if as_utc(session.expires_at) < utcnow():
            self._store.delete_session(token_hash)
            return None
        return session

    def revoke(self, token: str | None) -> None:
        """Delete the session. Unknown or already revoked tokens are fine."""
        if not token:
            return
        self._store.delete_session(sha256_hash(token.encode("utf-8")))

    def revoke_all(self, user_id: str) -> int:
        count = self._store.delete_sessions_for_user(user_id)
        logger.info("Revoked %d session(s) for user %s", count, user_id)
        return count

    def purge_expired(self) -> int:
        return self._store.delete_expired_sessions(utcnow())
