"""Error taxonomy shared by the WebAuthn and OIDC engines.

Core operations return ``T | AuthError`` instead of raising; routers hand
the value to one of the renderers below, which is the only place a
taxonomy code becomes an HTTP status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    INVALID_TOKEN = "invalid_token"
    SERVER_ERROR = "server_error"
    REGISTRATION_CLOSED = "registration_closed"


_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.INVALID_CLIENT: 401,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.REGISTRATION_CLOSED: 403,
    ErrorCode.SERVER_ERROR: 500,
}


@dataclass(frozen=True)
class AuthError:
    code: ErrorCode
    description: str = ""
    status_override: int | None = None

    @property
    def status_code(self) -> int:
        if self.status_override is not None:
            return self.status_override
        return _STATUS_BY_CODE.get(self.code, 400)


class StoreError(Exception):
    """The credential store could not complete an operation."""


class DuplicateError(StoreError):
    """A unique constraint (username, credential id, client id) was violated."""


def invalid_request(description: str = "Invalid request") -> AuthError:
    return AuthError(ErrorCode.INVALID_REQUEST, description)


def server_error(description: str = "Internal server error") -> AuthError:
    return AuthError(ErrorCode.SERVER_ERROR, description)


def oidc_error_response(error: AuthError) -> JSONResponse:
    """Render an RFC 6749 style error body: ``{error, error_description}``."""
    headers = {"Cache-Control": "no-store"}
    if error.status_code == 401:
        headers["WWW-Authenticate"] = f'Bearer error="{error.code.value}"'
    return JSONResponse(
        status_code=error.status_code,
        content={"error": error.code.value, "error_description": error.description},
        headers=headers,
    )


def api_error_response(error: AuthError) -> JSONResponse:
    """Render the ``/auth/*`` error body: ``{error: {message, code}}``.

    WebAuthn ceremony failures all collapse to a generic message so the
    response never reveals which verification step failed.
    """
    message = "Invalid request"
    if error.code == ErrorCode.REGISTRATION_CLOSED:
        message = "Registration is closed"
    elif error.code == ErrorCode.SERVER_ERROR:
        message = "Internal server error"
    return JSONResponse(
        status_code=error.status_code,
        content={"error": {"message": message, "code": error.code.value.upper()}},
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        if request.url.path.startswith("/auth/"):
            return api_error_response(invalid_request())
        return oidc_error_response(invalid_request("Malformed request"))

    @app.exception_handler(StoreError)
    async def _store_error(request: Request, exc: StoreError):
        logger.exception("Unhandled store failure on %s", request.url.path)
        if request.url.path.startswith("/auth/"):
            return api_error_response(server_error())
        return oidc_error_response(server_error("Storage unavailable"))
