from __future__ import annotations

import warnings
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlsplit

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    domain: str = "localhost"
    issuer: str = "http://localhost:8000"
    # WebAuthn relying party
    rp_id: str = "localhost"
    rp_name: str = "Nexus"
    webauthn_origin: str = "http://localhost:3000"
    webauthn_timeout_ms: int = 60000
    # Where /authorize sends browsers without a valid session
    login_url: str = "http://localhost:3000/login"

    data_dir: Path = Path("/app/data")
    db_url: str = "sqlite:////app/data/identity.db"

    challenge_ttl_seconds: int = 300
    authorization_code_ttl_seconds: int = 600
    session_ttl_seconds: int = 86400
    token_ttl_seconds: int = 3600
    jwks_cache_ttl_seconds: int = 3600
    sweep_interval_seconds: int = 60

    default_scope: str = "openid profile email"
    # When False, new usernames can only register while no admin exists
    open_registration: bool = True

    session_cookie_name: str = "session"
    session_cookie_secure: bool = True

    # Encrypts the signing private key at rest. Empty = unencrypted PEM.
    signing_key_passphrase: str = ""

    @model_validator(mode="after")
    def _check_urls_and_lifetimes(self) -> Settings:
        self.issuer = self.issuer.rstrip("/")
        self.login_url = self.login_url.rstrip("/")

        for name in (
            "challenge_ttl_seconds",
            "authorization_code_ttl_seconds",
            "session_ttl_seconds",
            "token_ttl_seconds",
            "jwks_cache_ttl_seconds",
            "sweep_interval_seconds",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name.upper()} must be > 0, got {value}")

        host = urlsplit(self.webauthn_origin).hostname or ""
        if host != self.rp_id and not host.endswith(f".{self.rp_id}"):
            raise ValueError(
                f"WEBAUTHN_ORIGIN host {host!r} is not RP_ID {self.rp_id!r} or one "
                "of its subdomains. Browsers would reject every ceremony."
            )

        if not self.signing_key_passphrase:
            warnings.warn(
                "SIGNING_KEY_PASSPHRASE is empty; the token signing key will be "
                "stored unencrypted. Only acceptable for development.",
                stacklevel=2,
            )
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
