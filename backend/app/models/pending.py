"""Values held in the expiring store while a ceremony or grant is in flight."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ChallengeKind(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class Challenge:
    value: str  # base64url of >= 32 random bytes
    kind: ChallengeKind
    username: str
    created_at: int
    expires_at: int
    # Registration: the user handle handed to the authenticator
    user_id: str | None = None
    # Authentication: the only credentials allowed to answer
    credential_ids: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    scope: str
    user_id: str
    expires_at: int
    nonce: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
