"""OIDC provider endpoints: discovery, JWKS, authorize, token, userinfo."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, RedirectResponse

from app.config import Settings, get_settings
from app.dependencies import get_oidc_service, get_signing_service
from app.errors import AuthError, invalid_request, oidc_error_response
from app.models.oidc import TokenRequest
from app.services.oidc import AuthorizeRequest, OIDCService
from app.services.signing import SigningKeyService

router = APIRouter(tags=["oidc"])


def _cacheable(content: dict, settings: Settings) -> JSONResponse:
    return JSONResponse(
        content=content,
        headers={"Cache-Control": f"public, max-age={settings.jwks_cache_ttl_seconds}"},
    )


@router.get("/.well-known/openid-configuration")
async def openid_configuration(
    oidc: OIDCService = Depends(get_oidc_service),
    settings: Settings = Depends(get_settings),
):
    return _cacheable(oidc.discovery_document(), settings)


@router.get("/.well-known/jwks.json")
async def jwks(
    signer: SigningKeyService = Depends(get_signing_service),
    settings: Settings = Depends(get_settings),
):
    result = signer.get_jwks()
    if isinstance(result, AuthError):
        return oidc_error_response(result)
    return _cacheable(result, settings)


@router.get("/authorize")
async def authorize(
    request: Request,
    response_type: str | None = None,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    scope: str | None = None,
    state: str | None = None,
    nonce: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    oidc: OIDCService = Depends(get_oidc_service),
    settings: Settings = Depends(get_settings),
):
    result = oidc.authorize(
        AuthorizeRequest(
            response_type=response_type,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            state=state,
            nonce=nonce,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        ),
        request.cookies.get(settings.session_cookie_name),
    )
    if isinstance(result, AuthError):
        return oidc_error_response(result)
    return RedirectResponse(url=result, status_code=302)


async def _read_token_request(request: Request) -> TokenRequest | None:
    """Parse the /token body, JSON or form-encoded."""
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("application/x-www-form-urlencoded"):
            form = await request.form()
            data = {k: v for k, v in form.items() if isinstance(v, str)}
        else:
            data = await request.json()
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    fields = TokenRequest.model_fields
    return TokenRequest(**{k: v for k, v in data.items() if k in fields and isinstance(v, str)})


@router.post("/token")
async def token(request: Request, oidc: OIDCService = Depends(get_oidc_service)):
    body = await _read_token_request(request)
    if body is None:
        return oidc_error_response(invalid_request("Malformed request body"))

    result = oidc.exchange_code(body)
    if isinstance(result, AuthError):
        return oidc_error_response(result)
    return JSONResponse(
        content=result.model_dump(),
        headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
    )


@router.get("/userinfo")
async def userinfo(
    authorization: str | None = Header(default=None),
    oidc: OIDCService = Depends(get_oidc_service),
):
    result = oidc.userinfo(authorization)
    if isinstance(result, AuthError):
        return oidc_error_response(result)
    return result
