"""OIDC authorization-code grant: /authorize, /token, /userinfo, discovery.

Authorization codes live in an ``ExpiringStore`` and are taken (atomically
removed) at the start of every exchange attempt, so a code is spent by the
first request that presents it whether or not that request succeeds.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
from uuid import uuid4

from app.config import Settings
from app.errors import AuthError, ErrorCode, StoreError, invalid_request, server_error
from app.models.oidc import OIDCClient, TokenRequest, TokenResponse
from app.models.pending import AuthorizationCode
from app.services.identity_store import IdentityStore
from app.services.sessions import SessionManager
from app.services.signing import JWT_ALGORITHM, KeyCache, SigningKeyService, TokenKind
from app.ttl_store import ExpiringStore
from app.utils.crypto import constant_time_equals, pkce_s256, random_token

logger = logging.getLogger(__name__)

PKCE_METHODS = ("S256", "plain")
# RFC 7636 section 4.1
_PKCE_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


@dataclass(frozen=True)
class AuthorizeRequest:
    response_type: str | None = None
    client_id: str | None = None
    redirect_uri: str | None = None
    scope: str | None = None
    state: str | None = None
    nonce: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None


def _with_query(url: str, params: dict[str, str]) -> str:
    """Append ``params`` to ``url``, keeping any query it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True) + list(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


class OIDCService:
    def __init__(
        self,
        store: IdentityStore,
        codes: ExpiringStore[AuthorizationCode],
        sessions: SessionManager,
        signer: SigningKeyService,
        cache: KeyCache,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._codes = codes
        self._sessions = sessions
        self._signer = signer
        self._cache = cache
        self._settings = settings
        self._clock = clock

    # --- /authorize ---

    def _login_redirect(self, request: AuthorizeRequest, scope: str) -> str:
        params = {
            "response_type": "code",
            "client_id": request.client_id or "",
            "redirect_uri": request.redirect_uri or "",
            "scope": scope,
        }
        for name in ("state", "nonce", "code_challenge", "code_challenge_method"):
            value = getattr(request, name)
            if value:
                params[name] = value
        return _with_query(self._settings.login_url, params)

    def authorize(self, request: AuthorizeRequest, session_token: str | None) -> str | AuthError:
        """Validate the request and return the URL to redirect the browser to.

        Without a valid session the browser goes to the login page with the
        original parameters so the flow can resume after sign-in.
        """
        if request.response_type != "code":
            return invalid_request("response_type must be code")
        if not request.client_id or not request.redirect_uri:
            return invalid_request("client_id and redirect_uri are required")

        try:
            client = self._store.get_client(request.client_id)
        except StoreError:
            return server_error("Storage unavailable")
        if client is None:
            return AuthError(ErrorCode.INVALID_CLIENT, "Client not found")
        if request.redirect_uri not in client.redirect_uris:
            return invalid_request("Invalid redirect_uri")

        scope = request.scope or self._settings.default_scope
        scope_error = self._check_scope(client, scope)
        if scope_error is not None:
            return scope_error

        method = None
        if request.code_challenge:
            method = request.code_challenge_method or "S256"
            if method not in PKCE_METHODS:
                return invalid_request("Unsupported code_challenge_method")
        elif request.code_challenge_method:
            return invalid_request("code_challenge_method without code_challenge")

        # Any session problem degrades to the login page, never an error
        try:
            session = self._sessions.validate(session_token)
            user = self._store.get_user(session.user_id) if session is not None else None
        except StoreError:
            logger.warning("Session lookup failed during authorize; sending to login")
            user = None
        if user is None:
            return self._login_redirect(request, scope)

        code = AuthorizationCode(
            code=random_token(32),
            client_id=client.id,
            redirect_uri=request.redirect_uri,
            scope=scope,
            user_id=user.id,
            expires_at=int(self._clock()) + self._settings.authorization_code_ttl_seconds,
            nonce=request.nonce,
            code_challenge=request.code_challenge,
            code_challenge_method=method,
        )
        self._codes.put(code.code, code, self._settings.authorization_code_ttl_seconds)

        params = {"code": code.code}
        if request.state:
            params["state"] = request.state
        return _with_query(request.redirect_uri, params)

    @staticmethod
    def _check_scope(client: OIDCClient, scope: str) -> AuthError | None:
        requested = scope.split()
        if client.scopes:
            unknown = [s for s in requested if s not in client.scopes]
            if unknown:
                return invalid_request(f"Scope not allowed for client: {' '.join(unknown)}")
        return None

    # --- /token ---

    def exchange_code(self, request: TokenRequest) -> TokenResponse | AuthError:
        if request.grant_type != "authorization_code":
            return AuthError(
                ErrorCode.UNSUPPORTED_GRANT_TYPE, "Only authorization_code is supported"
            )
        if not request.code or not request.redirect_uri or not request.client_id:
            return invalid_request("code, redirect_uri, and client_id are required")

        try:
            client = self._store.get_client(request.client_id)
        except StoreError:
            return server_error("Storage unavailable")
        if client is None:
            return AuthError(ErrorCode.INVALID_CLIENT, "Client not found")

        # Spent from here on, success or failure
        code = self._codes.take(request.code)
        if code is None:
            return AuthError(ErrorCode.INVALID_GRANT, "Invalid or expired authorization code")

        if code.client_id != request.client_id or code.redirect_uri != request.redirect_uri:
            logger.info("Code exchange rejected: client or redirect_uri mismatch")
            return AuthError(ErrorCode.INVALID_GRANT, "Authorization code does not match request")
        if code.expires_at < int(self._clock()):
            logger.info("Code exchange rejected: code expired")
            return AuthError(ErrorCode.INVALID_GRANT, "Authorization code has expired")
        if not self._verify_pkce(code, request.code_verifier):
            logger.info("Code exchange rejected: PKCE verification failed")
            return AuthError(ErrorCode.INVALID_GRANT, "PKCE verification failed")

        try:
            user = self._store.get_user(code.user_id)
        except StoreError:
            return server_error("Storage unavailable")
        if user is None:
            return AuthError(ErrorCode.INVALID_GRANT, "User not found")

        jti = str(uuid4())
        common = {"sub": user.id, "aud": client.id, "jti": jti}
        nonce = code.nonce
        if nonce is None and code.code_challenge is None:
            # A verifier that answered a PKCE challenge is a secret; never echo it
            nonce = request.code_verifier
        id_token = self._signer.sign({**common, "nonce": nonce}, TokenKind.ID_TOKEN)
        if isinstance(id_token, AuthError):
            return id_token
        access_token = self._signer.sign({**common, "scope": code.scope}, TokenKind.ACCESS_TOKEN)
        if isinstance(access_token, AuthError):
            return access_token

        return TokenResponse(
            access_token=access_token,
            token_type="Bearer",
            expires_in=self._settings.token_ttl_seconds,
            id_token=id_token,
            scope=code.scope,
        )

    @staticmethod
    def _verify_pkce(code: AuthorizationCode, verifier: str | None) -> bool:
        if code.code_challenge is None:
            return True
        if not verifier or not _PKCE_VERIFIER_RE.match(verifier):
            return False
        if code.code_challenge_method == "plain":
            return constant_time_equals(verifier, code.code_challenge)
        return constant_time_equals(pkce_s256(verifier), code.code_challenge)

    # --- /userinfo ---

    def userinfo(self, authorization: str | None) -> dict[str, Any] | AuthError:
        if not authorization or not authorization.startswith("Bearer "):
            return AuthError(
                ErrorCode.INVALID_REQUEST,
                "Authorization header with Bearer token is required",
                status_override=401,
            )
        token = authorization[len("Bearer "):].strip()

        claims = self._signer.verify(token, expected_kind=TokenKind.ACCESS_TOKEN)
        if isinstance(claims, AuthError):
            return claims

        sub = claims.get("sub")
        if not sub:
            return AuthError(ErrorCode.INVALID_TOKEN, "Token does not contain subject claim")
        exp = claims.get("exp")
        if not isinstance(exp, int) or exp < int(self._clock()):
            return AuthError(ErrorCode.INVALID_TOKEN, "Token has expired")

        try:
            user = self._store.get_user(sub)
        except StoreError:
            return server_error("Storage unavailable")
        if user is None:
            return AuthError(ErrorCode.INVALID_TOKEN, "User not found")

        info: dict[str, Any] = {"sub": sub, "name": claims.get("name") or sub}
        if claims.get("email"):
            info["email"] = claims["email"]
        return info

    # --- discovery ---

    def discovery_document(self) -> dict[str, Any]:
        cached = self._cache.get_document("openid-configuration")
        if cached is not None:
            return cached

        issuer = self._settings.issuer
        document = {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "userinfo_endpoint": f"{issuer}/userinfo",
            "jwks_uri": f"{issuer}/.well-known/jwks.json",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code"],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": [JWT_ALGORITHM],
            "scopes_supported": self._settings.default_scope.split(),
            "token_endpoint_auth_methods_supported": ["none"],
            "code_challenge_methods_supported": list(PKCE_METHODS),
            "claims_supported": ["sub", "name", "email", "nonce"],
        }
        self._cache.set_document("openid-configuration", document)
        return document
