"""Token signing key management: RS256 key pair, JWT signing/verification, JWKS.

This is the only component that ever touches private key material. The
key pair is generated lazily on first use and persisted as a single row;
``kid`` is always derived from the row read back from storage so that a
race between two first requests can never publish one key while signing
with another.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import JWTError, jwt

from app.config import Settings
from app.errors import AuthError, ErrorCode, StoreError, server_error
from app.models.oidc import SigningKey
from app.services.identity_store import IdentityStore
from app.utils.crypto import b64url_encode

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "RS256"
RSA_KEY_SIZE = 2048


class TokenKind(str, Enum):
    ID_TOKEN = "id"
    ACCESS_TOKEN = "access"


@dataclass(frozen=True)
class LoadedKey:
    kid: str
    private_key_pem: str  # unencrypted PKCS#8, in memory only
    public_key_pem: str
    public_jwk: dict[str, str]


class KeyCache:
    """Process-wide cache for the loaded key pair and derived public documents.

    Constructed once per application instance and injected wherever it is
    needed. The key itself is cached until ``invalidate()``; published
    documents (JWKS, discovery) expire after ``ttl_seconds``.
    """

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._key: LoadedKey | None = None
        self._documents: dict[str, tuple[float, dict[str, Any]]] = {}

    def get_key(self) -> LoadedKey | None:
        with self._lock:
            return self._key

    def set_key(self, key: LoadedKey) -> None:
        with self._lock:
            self._key = key

    def get_document(self, name: str) -> dict[str, Any] | None:
        with self._lock:
            cached = self._documents.get(name)
            if cached is None:
                return None
            expires_at, document = cached
            if self._clock() >= expires_at:
                del self._documents[name]
                return None
            return document

    def set_document(self, name: str, document: dict[str, Any]) -> None:
        with self._lock:
            self._documents[name] = (self._clock() + self._ttl, document)

    def invalidate(self) -> None:
        with self._lock:
            self._key = None
            self._documents.clear()


def _int_to_b64url(value: int) -> str:
    return b64url_encode(value.to_bytes((value.bit_length() + 7) // 8, "big"))


def rsa_public_jwk(public_key_pem: str) -> dict[str, str]:
    public_key = serialization.load_pem_public_key(public_key_pem.encode("ascii"))
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise ValueError("Signing key is not an RSA key")
    numbers = public_key.public_numbers()
    return {"kty": "RSA", "n": _int_to_b64url(numbers.n), "e": _int_to_b64url(numbers.e)}


def jwk_thumbprint(public_jwk: dict[str, str]) -> str:
    """RFC 7638 thumbprint: SHA-256 over the canonical required members."""
    canonical = json.dumps(
        {"e": public_jwk["e"], "kty": public_jwk["kty"], "n": public_jwk["n"]},
        separators=(",", ":"),
        sort_keys=True,
    )
    return b64url_encode(hashlib.sha256(canonical.encode("utf-8")).digest())


class SigningKeyService:
    def __init__(
        self,
        store: IdentityStore,
        cache: KeyCache,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._cache = cache
        self._settings = settings
        self._clock = clock

    # --- key pair ---

    def ensure_key_pair(self) -> LoadedKey | AuthError:
        """Return the persisted key pair, generating and persisting it on first use."""
        cached = self._cache.get_key()
        if cached is not None:
            return cached

        try:
            row = self._store.load_signing_key()
            if row is None:
                if self._store.insert_signing_key(self._generate_row()):
                    logger.info("Generated new %d-bit token signing key", RSA_KEY_SIZE)
                else:
                    logger.info("Signing key created concurrently; using the stored one")
                row = self._store.load_signing_key()
        except StoreError:
            return server_error("JWT signing key not available")
        if row is None:
            return server_error("JWT signing key not available")

        try:
            loaded = self._load_row(row)
        except (ValueError, TypeError):
            logger.exception("Stored signing key could not be loaded")
            return server_error("JWT signing key not available")

        self._cache.set_key(loaded)
        return loaded

    def _encryption(self) -> serialization.KeySerializationEncryption:
        passphrase = self._settings.signing_key_passphrase
        if passphrase:
            return serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
        return serialization.NoEncryption()

    def _generate_row(self) -> SigningKey:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=self._encryption(),
        )
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return SigningKey(
            id=1,
            private_key_pem=private_pem.decode("ascii"),
            public_key_pem=public_pem.decode("ascii"),
        )

    def _load_row(self, row: SigningKey) -> LoadedKey:
        passphrase = self._settings.signing_key_passphrase
        private_key = serialization.load_pem_private_key(
            row.private_key_pem.encode("ascii"),
            password=passphrase.encode("utf-8") if passphrase else None,
        )
        plain_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
        public_jwk = rsa_public_jwk(row.public_key_pem)
        return LoadedKey(
            kid=jwk_thumbprint(public_jwk),
            private_key_pem=plain_pem,
            public_key_pem=row.public_key_pem,
            public_jwk=public_jwk,
        )

    # --- tokens ---

    def sign(self, payload: dict[str, Any], kind: TokenKind) -> str | AuthError:
        """Sign ``payload`` (sub, aud, jti plus kind-specific claims) as a JWT.

        Adds iss, iat, exp and token_use. id tokens keep ``nonce`` only when
        set; access tokens must carry ``scope``.
        """
        for claim in ("sub", "aud", "jti"):
            if not payload.get(claim):
                raise ValueError(f"Token payload is missing {claim!r}")
        if kind == TokenKind.ACCESS_TOKEN and not payload.get("scope"):
            raise ValueError("Access token payload is missing 'scope'")

        key = self.ensure_key_pair()
        if isinstance(key, AuthError):
            return key

        now = int(self._clock())
        claims = {k: v for k, v in payload.items() if v is not None}
        if kind == TokenKind.ID_TOKEN:
            claims.pop("scope", None)
        else:
            claims.pop("nonce", None)
        claims.update(
            {
                "iss": self._settings.issuer,
                "iat": now,
                "exp": now + self._settings.token_ttl_seconds,
                "token_use": kind.value,
            }
        )
        return jwt.encode(
            claims,
            key.private_key_pem,
            algorithm=JWT_ALGORITHM,
            headers={"kid": key.kid},
        )

    def verify(
        self, token: str, expected_kind: TokenKind | None = None
    ) -> dict[str, Any] | AuthError:
        """Check signature, issuer and expiry. Returns the claims."""
        key = self.ensure_key_pair()
        if isinstance(key, AuthError):
            return key

        try:
            header = jwt.get_unverified_header(token)
        except JWTError:
            return AuthError(ErrorCode.INVALID_TOKEN, "Malformed token")
        if header.get("alg") != JWT_ALGORITHM or header.get("kid") != key.kid:
            return AuthError(ErrorCode.INVALID_TOKEN, "Unknown signing key")

        try:
            # Expiry is checked below against the injected clock
            claims = jwt.decode(
                token,
                key.public_key_pem,
                algorithms=[JWT_ALGORITHM],
                issuer=self._settings.issuer,
                options={
                    "verify_aud": False,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except JWTError:
            return AuthError(ErrorCode.INVALID_TOKEN, "Invalid token")

        exp = claims.get("exp")
        if not isinstance(exp, int) or exp < int(self._clock()):
            return AuthError(ErrorCode.INVALID_TOKEN, "Token has expired")
        if expected_kind is not None and claims.get("token_use") != expected_kind.value:
            return AuthError(ErrorCode.INVALID_TOKEN, "Wrong token type")
        return claims

    # --- published keys ---

    def get_jwks(self) -> dict[str, Any] | AuthError:
        cached = self._cache.get_document("jwks")
        if cached is not None:
            return cached

        key = self.ensure_key_pair()
        if isinstance(key, AuthError):
            return key
        jwks = {
            "keys": [
                {
                    **key.public_jwk,
                    "use": "sig",
                    "alg": JWT_ALGORITHM,
                    "kid": key.kid,
                }
            ]
        }
        self._cache.set_document("jwks", jwks)
        return jwks
