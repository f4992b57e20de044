"""
auth/tokens.py -- API key material, access-token JWTs, and cookie helpers.

Security design decisions:
  API keys: "wtyk_" + secrets.token_hex(32) -- 256 bits of entropy in 64
       lowercase hex chars, 69 chars total. We store SHA-256(raw_key) as hex.
       The digest must match what the account panel computes when it issues
       keys into the same table, so it is a plain unsalted SHA-256 rather than
       an HMAC. This is only acceptable because of the key's entropy; a
       lower-entropy format would need a salted slow hash instead.

  Access tokens: python-jose with HS256, signed with SECRET_KEY. Tokens carry
       the AuthContext claims (sub, email, permissions) plus client_id and
       expiry. Verification returns None on any failure -- callers turn that
       into a 401.

  Session cookie: "workos_session", HttpOnly, SameSite=Lax, 30-day max-age,
       Domain=<root domain> so every server in the SSO family sees it.

Layer rule: no imports from api/, web/, or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import time
from typing import Optional

from jose import JWTError, jwt

from auth.models import SESSION_DURATION_SECONDS, AuthContext
from core.config import get_settings

logger = logging.getLogger("skillmap.auth.tokens")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# API key format
# ---------------------------------------------------------------------------

API_KEY_PREFIX = "wtyk_"
API_KEY_RANDOM_BYTES = 32
API_KEY_LENGTH = len(API_KEY_PREFIX) + API_KEY_RANDOM_BYTES * 2
API_KEY_DISPLAY_PREFIX_LENGTH = 16


def generate_api_key() -> str:
    """Generate a new API key in the format: wtyk_<64 hex chars>."""
    return f"{API_KEY_PREFIX}{secrets.token_hex(API_KEY_RANDOM_BYTES)}"


def is_api_key_format(candidate: str) -> bool:
    """Cheap structural check. Runs before any hashing."""
    return candidate.startswith(API_KEY_PREFIX) and len(candidate) == API_KEY_LENGTH


def hash_api_key(raw_key: str) -> str:
    """Return SHA-256(raw_key) as a lowercase hex string."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def api_key_display_prefix(raw_key: str) -> str:
    return raw_key[:API_KEY_DISPLAY_PREFIX_LENGTH]


# ---------------------------------------------------------------------------
# Access tokens issued to MCP clients
# ---------------------------------------------------------------------------


def create_access_token(context: AuthContext, client_id: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT carrying the caller's AuthContext.

    Args:
        context:        Identity resolved at authorization time.
        client_id:      The OAuth client the token was issued to.
        expire_seconds: Lifetime in seconds. 0 uses
                        Settings.access_token_expire_seconds.
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.access_token_expire_seconds
    now = int(time.time())
    payload = context.to_claims()
    payload.update(
        {
            "iss": settings.public_url,
            "client_id": client_id,
            "iat": now,
            "exp": now + duration,
            "jti": secrets.token_hex(16),
        }
    )
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    """Decode and verify a JWT. Returns the claims or None on any failure."""
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[_ALGORITHM],
            options={"verify_aud": False},
            issuer=settings.public_url,
        )
    except JWTError:
        return None
    if "sub" not in payload or "client_id" not in payload:
        return None
    return payload


def unverified_permissions(access_token: str) -> list[str]:
    """Read the permissions claim from an upstream access token.

    The token came straight from the identity provider over TLS in the code
    exchange response, so its claims are read without signature verification.
    Malformed tokens yield no permissions rather than an error.
    """
    try:
        claims = jwt.get_unverified_claims(access_token)
    except JWTError:
        logger.warning("Upstream access token is not a decodable JWT; granting no permissions")
        return []
    permissions = claims.get("permissions") or []
    if not isinstance(permissions, list):
        return []
    return [str(p) for p in permissions]


# ---------------------------------------------------------------------------
# Session cookie
# ---------------------------------------------------------------------------


def new_session_token() -> str:
    return secrets.token_urlsafe(32)


def set_session_cookie(response, session_token: str) -> None:
    """Write the SSO session cookie on a Starlette response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": sent on top-level cross-site navigations, which the OAuth
        redirect chain relies on, but not on cross-site POSTs.
    domain: the shared root domain, so sibling servers see the same session.
    """
    settings = get_settings()
    response.set_cookie(
        settings.session_cookie_name,
        value=session_token,
        max_age=SESSION_DURATION_SECONDS,
        path="/",
        domain=settings.cookie_domain or None,
        secure=settings.secure_cookies,
        httponly=True,
        samesite="lax",
    )


def clear_session_cookie(response) -> None:
    """Delete the session cookie. Domain and path must match set_session_cookie()."""
    settings = get_settings()
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        domain=settings.cookie_domain or None,
        secure=settings.secure_cookies,
        httponly=True,
        samesite="lax",
    )
