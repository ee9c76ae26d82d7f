from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session

import app.models  # noqa: F401 (registers SQLModel tables)

from app.config import get_settings
from app.db import create_db_and_tables, engine
from app.errors import register_exception_handlers
from app.models.pending import AuthorizationCode, Challenge
from app.routers import auth, health, oidc
from app.services.identity_store import SqlIdentityStore
from app.services.sessions import SessionManager
from app.services.signing import KeyCache
from app.ttl_store import ExpiringStore

logger = logging.getLogger(__name__)


def sweep_expired(app: FastAPI) -> dict[str, int]:
    """Drop expired challenges, authorization codes and DB sessions."""
    purged = {
        "challenges": app.state.challenge_store.sweep_expired(),
        "codes": app.state.code_store.sweep_expired(),
    }
    with Session(engine) as db:
        purged["sessions"] = SessionManager(SqlIdentityStore(db)).purge_expired()
    return purged


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    create_db_and_tables()

    app.state.challenge_store = ExpiringStore[Challenge]("challenges")
    app.state.code_store = ExpiringStore[AuthorizationCode]("authorization_codes")
    app.state.key_cache = KeyCache(settings.jwks_cache_ttl_seconds)

    # Periodic sweep of everything that expires
    async def _sweep_loop() -> None:
        while True:
            await asyncio.sleep(settings.sweep_interval_seconds)
            try:
                purged = sweep_expired(app)
                if any(purged.values()):
                    logger.info(
                        "Sweep: purged %d challenge(s), %d code(s), %d session(s)",
                        purged["challenges"],
                        purged["codes"],
                        purged["sessions"],
                    )
            except Exception:
                logger.exception("Sweep error")

    sweep_task = asyncio.create_task(_sweep_loop())

    yield

    # Shutdown: cancel sweep
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass

    # Shutdown: forget pending ceremonies, codes and the decrypted key
    app.state.challenge_store.clear()
    app.state.code_store.clear()
    app.state.key_cache.invalidate()


app = FastAPI(
    title="Nexus",
    description="Passwordless OpenID Connect provider backed by passkeys",
    version="0.1.0",
    lifespan=lifespan,
)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.webauthn_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(auth.router)
app.include_router(oidc.router)
app.include_router(health.router)
