"""WebAuthn ceremony engine: passkey registration and login.

Each ceremony is two calls. ``begin_*`` binds a fresh random challenge to
the username (and, for login, to the credentials that user owns) and
returns the options the browser passes to ``navigator.credentials``.
``complete_*`` consumes that challenge, success or failure, before doing
anything else, so a challenge can never be answered twice.

Cryptographic verification of attestations and assertions is delegated to
py_webauthn. Every failure is reported as ``invalid_request``; the reason
is logged, never returned.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
import time
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import parse_authentication_credential_json
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidAuthenticatorDataStructure,
    InvalidCBORData,
    InvalidJSONStructure,
    InvalidRegistrationResponse,
)
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from app.config import Settings
from app.errors import (
    AuthError,
    DuplicateError,
    ErrorCode,
    StoreError,
    invalid_request,
    server_error,
)
from app.models.auth import Credential, User, utcnow
from app.models.pending import Challenge, ChallengeKind
from app.services.identity_store import IdentityStore
from app.services.sessions import SessionManager
from app.ttl_store import ExpiringStore
from app.utils.crypto import b64url_decode, b64url_encode

logger = logging.getLogger(__name__)

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
CHALLENGE_BYTES = 32

SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.ECDSA_SHA_256,
    COSEAlgorithmIdentifier.EDDSA,
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
]

# Everything py_webauthn (or malformed client JSON) can throw at us
_CEREMONY_ERRORS = (
    InvalidRegistrationResponse,
    InvalidAuthenticationResponse,
    InvalidJSONStructure,
    InvalidCBORData,
    InvalidAuthenticatorDataStructure,
    ValueError,
    KeyError,
    TypeError,
)


def normalize_username(raw: Any) -> str | None:
    """Trimmed username when it is a 3-50 character string, else None."""
    if not isinstance(raw, str):
        return None
    username = raw.strip()
    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        return None
    return username


def normalize_challenge(raw: Any) -> str | None:
    """Canonical (unpadded base64url) form of a client-supplied challenge."""
    if not isinstance(raw, str) or not raw:
        return None
    try:
        return b64url_encode(b64url_decode(raw))
    except ValueError:
        return None


def _transports(raw: Any) -> list[AuthenticatorTransport]:
    transports: list[AuthenticatorTransport] = []
    for value in raw or []:
        try:
            transports.append(AuthenticatorTransport(value))
        except ValueError:
            continue
    return transports


class WebAuthnService:
    # Serialises the "first user becomes admin" check with the insert
    _registration_lock = threading.Lock()

    def __init__(
        self,
        store: IdentityStore,
        challenges: ExpiringStore[Challenge],
        sessions: SessionManager,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._challenges = challenges
        self._sessions = sessions
        self._settings = settings
        self._clock = clock

    # --- challenge bookkeeping ---

    def _issue_challenge(
        self,
        kind: ChallengeKind,
        username: str,
        user_id: str | None = None,
        credential_ids: tuple[str, ...] = (),
    ) -> Challenge:
        now = int(self._clock())
        ttl = self._settings.challenge_ttl_seconds
        challenge = Challenge(
            value=b64url_encode(secrets.token_bytes(CHALLENGE_BYTES)),
            kind=kind,
            username=username,
            created_at=now,
            expires_at=now + ttl,
            user_id=user_id,
            credential_ids=credential_ids,
        )
        self._challenges.put(challenge.value, challenge, ttl)
        return challenge

    def _consume_challenge(self, raw: Any, kind: ChallengeKind) -> Challenge | None:
        key = normalize_challenge(raw)
        if key is None:
            return None
        challenge = self._challenges.take(key)
        if challenge is None or challenge.kind != kind:
            return None
        if challenge.expires_at < int(self._clock()):
            return None
        return challenge

    # --- registration ---

    def begin_registration(self, raw_username: Any) -> dict[str, Any] | AuthError:
        username = normalize_username(raw_username)
        if username is None:
            return invalid_request("Username must be 3-50 characters")

        try:
            if self._store.get_user_by_username(username) is not None:
                return invalid_request("Username already registered")
            if not self._settings.open_registration and self._store.has_admin():
                return AuthError(ErrorCode.REGISTRATION_CLOSED, "Registration is closed")
        except StoreError:
            return server_error()

        return self._registration_options(username)

    def _registration_options(self, username: str) -> dict[str, Any]:
        user_id = str(uuid4())
        challenge = self._issue_challenge(ChallengeKind.REGISTRATION, username, user_id=user_id)
        options = generate_registration_options(
            rp_id=self._settings.rp_id,
            rp_name=self._settings.rp_name,
            user_id=user_id.encode("utf-8"),
            user_name=username,
            user_display_name=username,
            challenge=b64url_decode(challenge.value),
            timeout=self._settings.webauthn_timeout_ms,
            attestation=AttestationConveyancePreference.PREFERRED,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            supported_pub_key_algs=SUPPORTED_ALGORITHMS,
        )
        return json.loads(options_to_json(options))

    def complete_registration(self, raw_challenge: Any, attestation: Any) -> User | AuthError:
        # Consumed first: whatever happens next, this challenge is spent
        challenge = self._consume_challenge(raw_challenge, ChallengeKind.REGISTRATION)
        if challenge is None or challenge.user_id is None:
            logger.info("Registration rejected: unknown, expired or mismatched challenge")
            return invalid_request()
        if not isinstance(attestation, dict):
            return invalid_request()

        try:
            verification = verify_registration_response(
                credential=json.dumps(attestation),
                expected_challenge=b64url_decode(challenge.value),
                expected_rp_id=self._settings.rp_id,
                expected_origin=self._settings.webauthn_origin,
            )
        except _CEREMONY_ERRORS as exc:
            logger.info("Registration rejected for %s: %s", challenge.username, exc)
            return invalid_request()

        credential_id = b64url_encode(verification.credential_id)
        response = attestation.get("response")
        transports = response.get("transports") if isinstance(response, dict) else None

        with self._registration_lock:
            try:
                # An admin may have registered since these options were issued
                if not self._settings.open_registration and self._store.has_admin():
                    logger.info("Registration rejected for %s: registration closed", challenge.username)
                    return AuthError(ErrorCode.REGISTRATION_CLOSED, "Registration is closed")
                if self._store.get_user_by_username(challenge.username) is not None:
                    logger.info("Registration rejected: %s already exists", challenge.username)
                    return invalid_request()
                if self._store.get_credential(credential_id) is not None:
                    logger.info("Registration rejected: credential already registered")
                    return invalid_request()

                is_admin = self._store.count_users() == 0
                user = self._store.create_user(challenge.user_id, challenge.username, is_admin)
                self._store.add_credential(
                    Credential(
                        id=credential_id,
                        user_id=user.id,
                        public_key=b64url_encode(verification.credential_public_key),
                        sign_count=verification.sign_count,
                        transports=[t.value for t in _transports(transports)],
                        device_type=str(verification.credential_device_type.value),
                        backed_up=verification.credential_backed_up,
                    )
                )
            except DuplicateError:
                return invalid_request()
            except StoreError:
                return server_error()

        logger.info("Registered user %s (admin=%s)", user.username, user.is_admin)
        return user

    # --- authentication ---

    def begin_authentication(self, raw_username: Any) -> dict[str, Any] | AuthError:
        """Login options, or registration options when the user does not exist.

        An unknown username only falls back to registration while no admin
        exists (first-run bootstrap); afterwards the answer is
        ``registration_closed``.
        """
        username = normalize_username(raw_username)
        if username is None:
            return invalid_request("Username must be 3-50 characters")

        try:
            user = self._store.get_user_by_username(username)
            if user is None:
                if self._store.has_admin():
                    return AuthError(ErrorCode.REGISTRATION_CLOSED, "Registration is closed")
                return {"action": "register", **self._registration_options(username)}

            credentials = self._store.list_credentials(user.id)
        except StoreError:
            return server_error()

        if not credentials:
            logger.info("Login rejected: %s has no registered credential", username)
            return invalid_request()

        challenge = self._issue_challenge(
            ChallengeKind.AUTHENTICATION,
            username,
            user_id=user.id,
            credential_ids=tuple(c.id for c in credentials),
        )
        options = generate_authentication_options(
            rp_id=self._settings.rp_id,
            challenge=b64url_decode(challenge.value),
            timeout=self._settings.webauthn_timeout_ms,
            allow_credentials=[
                PublicKeyCredentialDescriptor(
                    id=b64url_decode(c.id),
                    transports=_transports(c.transports) or None,
                )
                for c in credentials
            ],
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        return {"action": "authenticate", **json.loads(options_to_json(options))}

    def complete_authentication(
        self, raw_challenge: Any, assertion: Any
    ) -> tuple[User, str] | AuthError:
        """Verify an assertion. Returns the user and a new session token."""
        challenge = self._consume_challenge(raw_challenge, ChallengeKind.AUTHENTICATION)
        if challenge is None or challenge.user_id is None:
            logger.info("Login rejected: unknown, expired or mismatched challenge")
            return invalid_request()
        if not isinstance(assertion, dict):
            return invalid_request()

        try:
            credential = parse_authentication_credential_json(json.dumps(assertion))
        except _CEREMONY_ERRORS as exc:
            logger.info("Login rejected for %s: %s", challenge.username, exc)
            return invalid_request()

        credential_id = b64url_encode(credential.raw_id)
        if credential_id not in challenge.credential_ids:
            logger.info("Login rejected for %s: credential not bound to challenge", challenge.username)
            return invalid_request()

        try:
            stored = self._store.get_credential(credential_id)
        except StoreError:
            return server_error()
        if stored is None or stored.user_id != challenge.user_id:
            return invalid_request()

        try:
            verification = verify_authentication_response(
                credential=credential,
                expected_challenge=b64url_decode(challenge.value),
                expected_rp_id=self._settings.rp_id,
                expected_origin=self._settings.webauthn_origin,
                credential_public_key=b64url_decode(stored.public_key),
                credential_current_sign_count=stored.sign_count,
            )
        except _CEREMONY_ERRORS as exc:
            logger.info("Login rejected for %s: %s", challenge.username, exc)
            return invalid_request()

        try:
            self._store.update_credential_usage(
                credential_id,
                verification.new_sign_count,
                utcnow(),
            )
            user = self._store.get_user(challenge.user_id)
            if user is None:
                return invalid_request()
            token = self._sessions.create(user.id, self._settings.session_ttl_seconds)
        except StoreError:
            return server_error()

        logger.info("User %s authenticated", user.username)
        return user, token
