from __future__ import annotations

from app.models.auth import Credential, User, WebSession  # noqa: F401
from app.models.oidc import OIDCClient, SigningKey  # noqa: F401
