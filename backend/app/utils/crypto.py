"""Low-level cryptographic primitives for the identity provider.

Pure functions with no domain knowledge: reusable building blocks.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets


def b64url_encode(data: bytes) -> str:
    """Base64url without padding (RFC 7515 section 2)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """Inverse of b64url_encode. Accepts padded or unpadded input.

    Raises ValueError on characters outside the base64url alphabet.
    """
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def random_token(num_bytes: int = 32) -> str:
    """Generate an opaque, URL-safe random token."""
    return secrets.token_urlsafe(num_bytes)


def sha256_hash(data: bytes) -> str:
    """Compute SHA-256 hash. Returns hex-encoded digest."""
    return hashlib.sha256(data).hexdigest()


def pkce_s256(code_verifier: str) -> str:
    """RFC 7636 S256 transform: BASE64URL(SHA256(ASCII(code_verifier)))."""
    return b64url_encode(hashlib.sha256(code_verifier.encode("ascii")).digest())


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
