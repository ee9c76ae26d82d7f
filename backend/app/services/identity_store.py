"""Credential store: the durable side of the identity provider.

The engines only talk to ``IdentityStore``. ``SqlIdentityStore`` is the
SQLModel implementation used by the application; any other backend (a
remote user service, another database) only has to honour the same typed
operations. Database failures surface as ``StoreError`` so callers never
see driver exceptions.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Protocol, runtime_checkable

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from app.errors import DuplicateError, StoreError
from app.models.auth import Credential, User, WebSession
from app.models.oidc import OIDCClient, SigningKey

logger = logging.getLogger(__name__)


@runtime_checkable
class IdentityStore(Protocol):
    """Typed operations the core needs from durable storage."""

    # Users

    def get_user(self, user_id: str) -> User | None: ...

    def get_user_by_username(self, username: str) -> User | None: ...

    def has_admin(self) -> bool: ...

    def count_users(self) -> int: ...

    def create_user(self, user_id: str, username: str, is_admin: bool) -> User:
        """Raises DuplicateError when the username (or id) is taken."""
        ...

    # Credentials

    def add_credential(self, credential: Credential) -> Credential: ...

    def list_credentials(self, user_id: str) -> list[Credential]: ...

    def get_credential(self, credential_id: str) -> Credential | None: ...

    def update_credential_usage(
        self, credential_id: str, sign_count: int, used_at: datetime
    ) -> None: ...

    def delete_credential(self, credential_id: str) -> bool: ...

    # OIDC clients

    def get_client(self, client_id: str) -> OIDCClient | None: ...

    def save_client(self, client: OIDCClient) -> OIDCClient: ...

    # Signing key

    def load_signing_key(self) -> SigningKey | None: ...

    def insert_signing_key(self, key: SigningKey) -> bool:
        """Insert the singleton key row. False if another writer got there first."""
        ...

    # Sessions

    def insert_session(self, session: WebSession) -> WebSession: ...

    def get_session(self, token_hash: str) -> WebSession | None: ...

    def delete_session(self, token_hash: str) -> None: ...

    def delete_sessions_for_user(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


class SqlIdentityStore:
    def __init__(self, db: Session) -> None:
        self._db = db

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except IntegrityError as exc:
            self._db.rollback()
            raise DuplicateError(f"{operation}: duplicate key") from exc
        except SQLAlchemyError as exc:
            self._db.rollback()
            logger.exception("Store operation %s failed", operation)
            raise StoreError(f"{operation} failed") from exc

    # --- users ---

    def get_user(self, user_id: str) -> User | None:
        with self._guard("get_user"):
            return self._db.get(User, user_id)

    def get_user_by_username(self, username: str) -> User | None:
        with self._guard("get_user_by_username"):
            return self._db.exec(select(User).where(User.username == username)).first()

    def has_admin(self) -> bool:
        with self._guard("has_admin"):
            return self._db.exec(select(User.id).where(User.is_admin == True)).first() is not None  # noqa: E712

    def count_users(self) -> int:
        with self._guard("count_users"):
            return self._db.exec(select(func.count()).select_from(User)).one()

    def create_user(self, user_id: str, username: str, is_admin: bool) -> User:
        with self._guard("create_user"):
            user = User(id=user_id, username=username, is_admin=is_admin)
            self._db.add(user)
            self._db.commit()
            self._db.refresh(user)
            return user

    # --- credentials ---

    def add_credential(self, credential: Credential) -> Credential:
        with self._guard("add_credential"):
            self._db.add(credential)
            self._db.commit()
            self._db.refresh(credential)
            return credential

    def list_credentials(self, user_id: str) -> list[Credential]:
        with self._guard("list_credentials"):
            return list(
                self._db.exec(
                    select(Credential)
                    .where(Credential.user_id == user_id)
                    .order_by(Credential.created_at)
                ).all()
            )

    def get_credential(self, credential_id: str) -> Credential | None:
        with self._guard("get_credential"):
            return self._db.get(Credential, credential_id)

    def update_credential_usage(
        self, credential_id: str, sign_count: int, used_at: datetime
    ) -> None:
        with self._guard("update_credential_usage"):
            credential = self._db.get(Credential, credential_id)
            if credential is None:
                return
            credential.sign_count = sign_count
            credential.last_used_at = used_at
            self._db.add(credential)
            self._db.commit()

    def delete_credential(self, credential_id: str) -> bool:
        with self._guard("delete_credential"):
            result = self._db.exec(delete(Credential).where(Credential.id == credential_id))
            self._db.commit()
            return result.rowcount > 0

    # --- clients ---

    def get_client(self, client_id: str) -> OIDCClient | None:
        with self._guard("get_client"):
            return self._db.get(OIDCClient, client_id)

    def save_client(self, client: OIDCClient) -> OIDCClient:
        with self._guard("save_client"):
            merged = self._db.merge(client)
            self._db.commit()
            return merged

    # --- signing key ---

    def load_signing_key(self) -> SigningKey | None:
        with self._guard("load_signing_key"):
            # Bypass the identity map so a row written by a concurrent
            # request is seen on re-read.
            self._db.expire_all()
            return self._db.get(SigningKey, 1)

    def insert_signing_key(self, key: SigningKey) -> bool:
        try:
            with self._guard("insert_signing_key"):
                self._db.add(key)
                self._db.commit()
        except DuplicateError:
            return False
        return True

    # --- sessions ---

    def insert_session(self, session: WebSession) -> WebSession:
        with self._guard("insert_session"):
            self._db.add(session)
            self._db.commit()
            self._db.refresh(session)
            return session

    def get_session(self, token_hash: str) -> WebSession | None:
        with self._guard("get_session"):
            return self._db.get(WebSession, token_hash)

    def delete_session(self, token_hash: str) -> None:
        with self._guard("delete_session"):
            self._db.exec(delete(WebSession).where(WebSession.token_hash == token_hash))
            self._db.commit()

    def delete_sessions_for_user(self, user_id: str) -> int:
        with self._guard("delete_sessions_for_user"):
            result = self._db.exec(delete(WebSession).where(WebSession.user_id == user_id))
            self._db.commit()
            return result.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._guard("delete_expired_sessions"):
            result = self._db.exec(delete(WebSession).where(WebSession.expires_at < now))
            self._db.commit()
            return result.rowcount
