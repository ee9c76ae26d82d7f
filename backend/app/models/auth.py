"""Identity models: users, their passkeys, and browser sessions.

SQLModel tables for the credential store plus the Pydantic request and
response schemas of the ``/auth`` endpoints.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a value read back naive (SQLite drops the offset)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def timestamp_column(nullable: bool = False) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    username: str = Field(index=True, unique=True, max_length=50)
    # True only for the first user ever registered
    is_admin: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


class Credential(SQLModel, table=True):
    """A registered WebAuthn public key. One user may own several."""

    __tablename__ = "credentials"

    id: str = Field(primary_key=True)  # base64url credential id
    user_id: str = Field(foreign_key="users.id", index=True)
    public_key: str  # base64url COSE_Key
    sign_count: int = Field(default=0)
    transports: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    device_type: str | None = Field(default=None)
    backed_up: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())
    last_used_at: datetime | None = Field(default=None, sa_column=timestamp_column(nullable=True))


class WebSession(SQLModel, table=True):
    """Server-side browser session created after a successful login ceremony."""

    __tablename__ = "web_sessions"

    token_hash: str = Field(primary_key=True)  # SHA-256 of the cookie value (never store raw)
    user_id: str = Field(foreign_key="users.id", index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())
    expires_at: datetime = Field(sa_column=timestamp_column())


# --- Pydantic request/response schemas ---


class UsernameRequest(BaseModel):
    username: str | None = None


class RegisterVerifyRequest(BaseModel):
    challenge: str | None = None
    attestation: dict[str, Any] | None = None


class LoginVerifyRequest(BaseModel):
    challenge: str | None = None
    assertion: dict[str, Any] | None = None


class UserRead(BaseModel):
    id: str
    username: str
    is_admin: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class UserResponse(BaseModel):
    user: UserRead


class MessageResponse(BaseModel):
    message: str
