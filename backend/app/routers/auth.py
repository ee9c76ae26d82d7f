"""Auth endpoints: passkey registration, passkey login, logout, status.

The browser drives two-step WebAuthn ceremonies against these routes. A
successful login sets the ``session`` cookie that ``/authorize`` later
recognizes.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.config import Settings, get_settings
from app.dependencies import get_identity_store, get_session_manager, get_webauthn_service
from app.errors import AuthError, ErrorCode, api_error_response
from app.models.auth import (
    LoginVerifyRequest,
    MessageResponse,
    RegisterVerifyRequest,
    User,
    UserRead,
    UserResponse,
    UsernameRequest,
)
from app.services.identity_store import IdentityStore
from app.services.sessions import SessionManager
from app.services.webauthn import WebAuthnService

router = APIRouter(prefix="/auth", tags=["auth"])


def _user_body(user: User) -> dict:
    return UserResponse(user=UserRead.model_validate(user)).model_dump(mode="json")


@router.post("/register/options")
async def register_options(
    body: UsernameRequest,
    webauthn: WebAuthnService = Depends(get_webauthn_service),
):
    result = webauthn.begin_registration(body.username)
    if isinstance(result, AuthError):
        return api_error_response(result)
    return result


@router.post("/register/verify", response_model=UserResponse)
async def register_verify(
    body: RegisterVerifyRequest,
    webauthn: WebAuthnService = Depends(get_webauthn_service),
):
    result = webauthn.complete_registration(body.challenge, body.attestation)
    if isinstance(result, AuthError):
        return api_error_response(result)
    return _user_body(result)


@router.post("/login/options")
async def login_options(
    body: UsernameRequest,
    webauthn: WebAuthnService = Depends(get_webauthn_service),
):
    """Login options, or ``{action: "register"}`` for a first-run username."""
    result = webauthn.begin_authentication(body.username)
    if isinstance(result, AuthError):
        return api_error_response(result)
    return result


@router.post("/login/verify", response_model=UserResponse)
async def login_verify(
    body: LoginVerifyRequest,
    webauthn: WebAuthnService = Depends(get_webauthn_service),
    settings: Settings = Depends(get_settings),
):
    result = webauthn.complete_authentication(body.challenge, body.assertion)
    if isinstance(result, AuthError):
        return api_error_response(result)

    user, token = result
    response = JSONResponse(content=_user_body(user))
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.session_ttl_seconds,
        path="/",
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="strict",
    )
    return response


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    sessions: SessionManager = Depends(get_session_manager),
    settings: Settings = Depends(get_settings),
):
    """Revoke the current session. Always succeeds."""
    sessions.revoke(request.cookies.get(settings.session_cookie_name))
    response = JSONResponse(content={"message": "Logged out"})
    response.delete_cookie(settings.session_cookie_name, path="/")
    return response


@router.post("/logout-all", response_model=MessageResponse)
async def logout_all(
    request: Request,
    sessions: SessionManager = Depends(get_session_manager),
    settings: Settings = Depends(get_settings),
):
    """Revoke every session of the current user, on every device."""
    session = sessions.validate(request.cookies.get(settings.session_cookie_name))
    count = sessions.revoke_all(session.user_id) if session is not None else 0
    response = JSONResponse(content={"message": f"Logged out of {count} session(s)"})
    response.delete_cookie(settings.session_cookie_name, path="/")
    return response


@router.get("/status", response_model=UserResponse)
async def status(
    request: Request,
    sessions: SessionManager = Depends(get_session_manager),
    store: IdentityStore = Depends(get_identity_store),
    settings: Settings = Depends(get_settings),
):
    session = sessions.validate(request.cookies.get(settings.session_cookie_name))
    user = store.get_user(session.user_id) if session is not None else None
    if user is None:
        return api_error_response(
            AuthError(ErrorCode.INVALID_REQUEST, "Not authenticated", status_override=401)
        )
    return _user_body(user)
