from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from app.db import get_session
from app.dependencies import get_signing_service
from app.errors import AuthError
from app.services.signing import SigningKeyService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])

SERVICE_NAME = "nexus-idp"
SERVICE_VERSION = "0.1.0"


@router.get("/health")
async def health(
    session: Session = Depends(get_session),
    signer: SigningKeyService = Depends(get_signing_service),
):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except Exception:
        logger.exception("Health check: database unreachable")
        db_status = "error"

    # Generates the key on a fresh install, which is what first use would do anyway
    key_status = "ok"
    if db_status == "ok":
        key = signer.ensure_key_pair()
        if isinstance(key, AuthError):
            key_status = "unavailable"
    else:
        key_status = "unknown"

    is_healthy = db_status == "ok" and key_status == "ok"
    return {
        "status": "healthy" if is_healthy else "unhealthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "checks": {
            "database": db_status,
            "signing_key": key_status,
        },
    }


@router.get("/health/ready")
async def readiness(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
    except Exception:
        logger.exception("Readiness check: database unreachable")
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": SERVICE_NAME,
                "error": "database unavailable",
            },
        )

    return {
        "status": "ready",
        "service": SERVICE_NAME,
    }
