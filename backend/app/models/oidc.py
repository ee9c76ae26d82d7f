from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from app.models.auth import timestamp_column, utcnow


class OIDCClient(SQLModel, table=True):
    """A relying-party application, registered out-of-band."""

    __tablename__ = "oidc_clients"

    id: str = Field(primary_key=True)  # the client_id
    name: str
    redirect_uris: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    scopes: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


class SigningKey(SQLModel, table=True):
    """Stores the RS256 token signing key pair.

    Single-row table. The first writer wins; every process derives ``kid``
    from the row it reads back, never from a key it generated locally.
    """

    __tablename__ = "signing_keys"

    id: int = Field(default=1, primary_key=True)
    private_key_pem: str  # PKCS#8, encrypted when SIGNING_KEY_PASSPHRASE is set
    public_key_pem: str  # SubjectPublicKeyInfo
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


# --- Pydantic schemas ---


class TokenRequest(BaseModel):
    grant_type: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    client_id: str | None = None
    code_verifier: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    id_token: str
    scope: str
