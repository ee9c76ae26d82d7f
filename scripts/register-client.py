#!/usr/bin/env python3
"""CLI tool for registering (or updating) an OIDC relying-party client.

Clients are registered out-of-band; there is no dynamic registration
endpoint. Re-running with an existing --client-id replaces its settings.

Usage:
    python3 scripts/register-client.py --client-id wiki --name "Team wiki" \\
        --redirect-uri https://wiki.example.com/oauth/callback
"""

from __future__ import annotations

import argparse
import os
import sys

# Allow running from repo root: add backend/ to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from sqlmodel import Session

import app.models  # noqa: F401 (registers SQLModel tables)
from app.config import get_settings
from app.db import create_db_and_tables, engine
from app.errors import StoreError
from app.models.oidc import OIDCClient
from app.services.identity_store import SqlIdentityStore


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Register an OIDC client with the identity provider."
    )
    parser.add_argument("--client-id", required=True, help="Public client identifier")
    parser.add_argument("--name", default=None, help="Display name (default: client id)")
    parser.add_argument(
        "--redirect-uri",
        action="append",
        required=True,
        help="Allowed redirect URI, matched exactly (repeatable)",
    )
    parser.add_argument(
        "--scope",
        default=settings.default_scope,
        help=f"Space-separated allowed scopes (default: {settings.default_scope!r})",
    )

    args = parser.parse_args()

    scopes = args.scope.split()
    if "openid" not in scopes:
        print("Error: --scope must include openid", file=sys.stderr)
        return 1

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    create_db_and_tables()

    client = OIDCClient(
        id=args.client_id,
        name=args.name or args.client_id,
        redirect_uris=args.redirect_uri,
        scopes=scopes,
    )
    try:
        with Session(engine) as db:
            SqlIdentityStore(db).save_client(client)
    except StoreError as e:
        print(f"Error saving client: {e}", file=sys.stderr)
        return 1

    print(f"Registered client {args.client_id!r}")
    for uri in args.redirect_uri:
        print(f"  redirect_uri: {uri}")
    print(f"  scopes: {' '.join(scopes)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
