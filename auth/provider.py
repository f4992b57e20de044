"""
auth/provider.py -- OAuth 2.1 authorization server toward MCP clients.

MCP clients (Claude Desktop, IDE plugins, ...) discover this server through
the RFC 8414 / RFC 9728 metadata documents, register themselves with RFC 7591
dynamic client registration, and run the authorization-code flow with PKCE:

  /register  -> register_client()
  /authorize -> parse_auth_request() ... complete_authorization()
  /token     -> exchange_authorization_code() / exchange_refresh_token()
  /mcp       -> verify_access_token()

Storage (all in the key-value store):
  client:{client_id}   registered client, no TTL
  grant:{code}         authorization grant, TTL 10 minutes, single use
  refresh:{token}      issued refresh token, TTL refresh_token_expire_days,
                       single use (rotated on every exchange)

Grants and refresh tokens are consumed with the store's atomic take(), so a
code or refresh token replayed concurrently can be redeemed only once.

Access tokens are HS256 JWTs (auth/tokens.py) carrying the AuthContext that
was resolved when the user authorized the client.

Security notes:
  Redirect URIs must be https, or http on a loopback host (native clients).
  The redirect_uri sent to /authorize must exactly match a registered one.
  Only the S256 PKCE method is accepted; "plain" is refused.
  Client secrets, when issued, are compared in constant time.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import hmac
import json
import logging
import secrets
import time
from collections.abc import Mapping
from typing import Optional
from urllib.parse import urlencode, urlparse

from auth.errors import InvalidRequest, OAuthGrantError
from auth.models import AuthContext, AuthRequest, OAuthClient
from auth.pkce import PkceManager
from auth.tokens import create_access_token, decode_access_token
from cache.store import KeyValueStore
from core.config import Settings, get_settings

GRANT_TTL_SECONDS = 600
_CLIENT_PREFIX = "client:"
_GRANT_PREFIX = "grant:"
_REFRESH_PREFIX = "refresh:"
_LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")


def _is_allowed_redirect_uri(uri: str) -> bool:
    parsed = urlparse(uri)
    if parsed.fragment or not parsed.netloc:
        return False
    if parsed.scheme == "https":
        return True
    return parsed.scheme == "http" and parsed.hostname in _LOOPBACK_HOSTS


def append_query(url: str, params: dict) -> str:
    sep = "&" if urlparse(url).query else "?"
    return f"{url}{sep}{urlencode(params)}"


class OAuthProvider:
    def __init__(
        self,
        kv: KeyValueStore,
        settings: Optional[Settings] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._kv = kv
        self._cfg = settings or get_settings()
        self._log = logger or logging.getLogger("skillmap.auth.provider")

    @property
    def issuer(self) -> str:
        return self._cfg.public_url.rstrip("/")

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def register_client(
        self,
        redirect_uris: list[str],
        client_name: str = "",
        token_endpoint_auth_method: str = "none",
    ) -> OAuthClient:
        """Dynamic client registration (RFC 7591).

        Public clients (auth method "none") get no secret and must use PKCE.
        Raises OAuthGrantError with invalid_redirect_uri / invalid_client_metadata.
        """
        if not redirect_uris or not all(isinstance(u, str) for u in redirect_uris):
            raise OAuthGrantError("invalid_redirect_uri", "At least one redirect_uri is required.")
        for uri in redirect_uris:
            if not _is_allowed_redirect_uri(uri):
                raise OAuthGrantError("invalid_redirect_uri", f"Invalid redirect_uri: {uri}")
        if token_endpoint_auth_method not in ("none", "client_secret_post"):
            raise OAuthGrantError(
                "invalid_client_metadata", "token_endpoint_auth_method must be none or client_secret_post."
            )

        client = OAuthClient(
            client_id=secrets.token_urlsafe(16),
            redirect_uris=list(redirect_uris),
            client_name=client_name,
            client_secret=secrets.token_urlsafe(32) if token_endpoint_auth_method == "client_secret_post" else "",
            created_at=int(time.time()),
        )
        self._kv.put(_CLIENT_PREFIX + client.client_id, client.to_json())
        self._log.info("Registered OAuth client %s (%s)", client.client_id, client_name or "unnamed")
        return client

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        if not client_id:
            return None
        raw = self._kv.get(_CLIENT_PREFIX + client_id)
        return OAuthClient.from_json(raw) if raw is not None else None

    def _authenticate_client(self, client_id: str, client_secret: Optional[str]) -> OAuthClient:
        client = self.get_client(client_id)
        if client is None:
            raise OAuthGrantError("invalid_client", "Unknown client.", status_code=401)
        if client.client_secret and not hmac.compare_digest(client_secret or "", client.client_secret):
            raise OAuthGrantError("invalid_client", "Client authentication failed.", status_code=401)
        return client

    # ------------------------------------------------------------------
    # Authorization endpoint
    # ------------------------------------------------------------------

    def parse_auth_request(self, params: Mapping[str, str]) -> AuthRequest:
        """Validate /authorize query parameters. Raises InvalidRequest."""
        client = self.get_client(params.get("client_id", ""))
        if client is None:
            raise InvalidRequest()

        redirect_uri = params.get("redirect_uri", "")
        if not redirect_uri and len(client.redirect_uris) == 1:
            redirect_uri = client.redirect_uris[0]
        if redirect_uri not in client.redirect_uris:
            self._log.info("Rejected /authorize for %s: unregistered redirect_uri", client.client_id)
            raise InvalidRequest()

        if params.get("response_type", "") != "code":
            raise InvalidRequest()

        challenge = params.get("code_challenge", "")
        method = params.get("code_challenge_method", "")
        if challenge and method != "S256":
            raise InvalidRequest()
        if not challenge and not client.client_secret:
            # Public clients must use PKCE.
            raise InvalidRequest()

        return AuthRequest(
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            response_type="code",
            scope=params.get("scope", "").split(),
            state=params.get("state", ""),
            code_challenge=challenge,
            code_challenge_method=method if challenge else "",
        )

    def complete_authorization(
        self,
        request: AuthRequest,
        user_id: str,
        scope: list[str],
        context: AuthContext,
    ) -> str:
        """Record a one-time grant and return the client redirect URL carrying it."""
        code = secrets.token_urlsafe(32)
        grant = {
            "client_id": request.client_id,
            "redirect_uri": request.redirect_uri,
            "user_id": user_id,
            "scope": list(scope),
            "code_challenge": request.code_challenge,
            "code_challenge_method": request.code_challenge_method,
            "claims": context.to_claims(),
        }
        self._kv.put(_GRANT_PREFIX + code, json.dumps(grant), ttl=GRANT_TTL_SECONDS)
        self._log.info("Authorization granted to client %s for user %s", request.client_id, user_id)

        params = {"code": code}
        if request.state:
            params["state"] = request.state
        return append_query(request.redirect_uri, params)

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    def exchange_authorization_code(
        self,
        client_id: str,
        code: str,
        redirect_uri: str = "",
        code_verifier: str = "",
        client_secret: Optional[str] = None,
    ) -> dict:
        """Redeem a grant for an access token and refresh token.

        Raises OAuthGrantError (invalid_client, invalid_grant, invalid_request).
        """
        client = self._authenticate_client(client_id, client_secret)

        raw = self._kv.take(_GRANT_PREFIX + code) if code else None
        if raw is None:
            raise OAuthGrantError("invalid_grant", "Unknown or expired code.")
        grant = json.loads(raw)

        if grant["client_id"] != client.client_id:
            self._log.warning("Code presented by client %s was issued to %s", client.client_id, grant["client_id"])
            raise OAuthGrantError("invalid_grant", "Code was not issued to this client.")
        if redirect_uri and redirect_uri != grant["redirect_uri"]:
            raise OAuthGrantError("invalid_grant", "redirect_uri mismatch.")

        if grant.get("code_challenge"):
            if not code_verifier:
                raise OAuthGrantError("invalid_request", "Missing code_verifier.")
            if not PkceManager.verify(code_verifier, grant["code_challenge"]):
                raise OAuthGrantError("invalid_grant", "PKCE verification failed.")

        context = AuthContext.from_claims(grant["claims"])
        return self._issue_tokens(client.client_id, context, grant.get("scope") or [])

    def exchange_refresh_token(
        self,
        client_id: str,
        refresh_token: str,
        client_secret: Optional[str] = None,
    ) -> dict:
        """Rotate a refresh token: the presented one is consumed, a new pair is issued."""
        client = self._authenticate_client(client_id, client_secret)

        raw = self._kv.take(_REFRESH_PREFIX + refresh_token) if refresh_token else None
        if raw is None:
            raise OAuthGrantError("invalid_grant", "Unknown or expired refresh token.")
        record = json.loads(raw)
        if record["client_id"] != client.client_id:
            raise OAuthGrantError("invalid_grant", "Refresh token was not issued to this client.")

        context = AuthContext.from_claims(record["claims"])
        return self._issue_tokens(client.client_id, context, record.get("scope") or [])

    def _issue_tokens(self, client_id: str, context: AuthContext, scope: list[str]) -> dict:
        expires_in = self._cfg.access_token_expire_seconds
        access_token = create_access_token(context, client_id, expire_seconds=expires_in)
        refresh_token = secrets.token_urlsafe(32)
        self._kv.put(
            _REFRESH_PREFIX + refresh_token,
            json.dumps({"client_id": client_id, "scope": scope, "claims": context.to_claims()}),
            ttl=self._cfg.refresh_token_expire_days * 86400,
        )
        self._log.info("Issued tokens to client %s for user %s", client_id, context.user_id)
        return {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": expires_in,
            "refresh_token": refresh_token,
            "scope": " ".join(scope),
        }

    # ------------------------------------------------------------------
    # Resource server
    # ------------------------------------------------------------------

    def verify_access_token(self, token: str) -> Optional[AuthContext]:
        """Return the AuthContext embedded in a valid access token, else None."""
        claims = decode_access_token(token)
        if claims is None:
            return None
        return AuthContext.from_claims(claims)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def authorization_server_metadata(self) -> dict:
        """RFC 8414 authorization server metadata."""
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/token",
            "registration_endpoint": f"{self.issuer}/register",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "token_endpoint_auth_methods_supported": ["none", "client_secret_post"],
            "code_challenge_methods_supported": ["S256"],
        }

    def protected_resource_metadata(self) -> dict:
        """RFC 9728 protected resource metadata for the /mcp endpoint."""
        return {
            "resource": f"{self.issuer}/mcp",
            "authorization_servers": [self.issuer],
            "bearer_methods_supported": ["header"],
        }
