"""
auth/router.py -- Decide which authentication path a request takes.

Requests to /mcp whose bearer token carries the API-key prefix go to the API
key manager; everything else goes through OAuth (bearer access token issued by
auth/provider.py, or the authorize/callback flow for browser routes).
Classification looks only at the path and the header shape; it never touches
storage.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from auth.tokens import API_KEY_PREFIX

MCP_PATH = "/mcp"


class AuthRoute(str, Enum):
    API_KEY = "api_key"
    OAUTH = "oauth"


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an "Authorization: Bearer <token>" header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def classify(path: str, authorization: Optional[str]) -> AuthRoute:
    token = bearer_token(authorization)
    if path.rstrip("/") == MCP_PATH and token is not None and token.startswith(API_KEY_PREFIX):
        return AuthRoute.API_KEY
    return AuthRoute.OAUTH
