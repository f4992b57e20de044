"""
auth/idp.py -- Authlib client for the upstream identity provider.

The gateway is an OAuth client of the identity provider (WorkOS AuthKit by
default): it sends browsers to the provider's authorize endpoint with a PKCE
challenge, exchanges the returned code plus verifier for tokens, and later
exchanges refresh tokens for rotated ones.

Uses authlib's AsyncOAuth2Client (httpx transport). The client secret is sent
in the request body (client_secret_post), which is what AuthKit expects.

Error contract:
  Every failure -- an OAuth error body, a non-JSON response, a transport
  error, a response missing required fields -- is raised as
  IdentityProviderError. Upstream error detail goes to the log only; callers
  turn the exception into a generic "Auth failed" or REFRESH_FAILED.

Layer rule: no imports from api/, web/, or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from jose import JWTError, jwt

from auth.errors import IdentityProviderError
from auth.ports import IdpAuthentication, IdpUser
from core.config import Settings, get_settings


class AuthlibIdentityProvider:
    """IdentityProvider implementation backed by authlib.

    Args:
        settings: Defaults to get_settings(). Reads idp_client_id,
                  idp_client_secret, idp_authorize_url, idp_token_url,
                  idp_provider and idp_timeout_seconds.
        transport: Optional httpx transport, for tests (httpx.MockTransport).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._cfg = settings or get_settings()
        self._transport = transport
        self._log = logger or logging.getLogger("skillmap.auth.idp")

    def _client(self) -> AsyncOAuth2Client:
        kwargs: dict = {"timeout": self._cfg.idp_timeout_seconds}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return AsyncOAuth2Client(
            client_id=self._cfg.idp_client_id,
            client_secret=self._cfg.idp_client_secret,
            token_endpoint_auth_method="client_secret_post",
            **kwargs,
        )

    def get_authorization_url(self, redirect_uri: str, state: str, code_challenge: str) -> str:
        """Build the provider authorize URL. No network I/O."""
        client = self._client()
        url, _ = client.create_authorization_url(
            self._cfg.idp_authorize_url,
            state=state,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method="S256",
            provider=self._cfg.idp_provider,
        )
        return url

    async def authenticate_with_code(self, code: str, code_verifier: str) -> IdpAuthentication:
        token = await self._fetch(
            "code exchange",
            grant_type="authorization_code",
            code=code,
            code_verifier=code_verifier,
        )
        try:
            access_token = token["access_token"]
            user = _extract_user(token)
        except (KeyError, TypeError, ValueError) as exc:
            self._log.error("Identity provider code exchange returned an incomplete response: %s", exc)
            raise IdentityProviderError("incomplete token response") from exc
        return IdpAuthentication(
            access_token=access_token,
            refresh_token=token.get("refresh_token") or "",
            user=user,
            organization_id=token.get("organization_id"),
        )

    async def authenticate_with_refresh_token(self, refresh_token: str) -> str:
        token = await self._fetch("refresh", grant_type="refresh_token", refresh_token=refresh_token)
        rotated = token.get("refresh_token")
        if not rotated:
            self._log.error("Identity provider refresh response carried no refresh token")
            raise IdentityProviderError("refresh response without refresh_token")
        return rotated

    async def _fetch(self, action: str, **params) -> dict:
        try:
            async with self._client() as client:
                token = await client.fetch_token(self._cfg.idp_token_url, **params)
        except OAuthError as exc:
            self._log.warning("Identity provider rejected %s: %s", action, exc.error)
            raise IdentityProviderError(f"{action} rejected") from exc
        except httpx.HTTPError as exc:
            self._log.error("Identity provider unreachable during %s: %s", action, exc)
            raise IdentityProviderError(f"{action} failed") from exc
        except ValueError as exc:
            # Non-JSON body
            self._log.error("Identity provider returned an unreadable %s response: %s", action, exc)
            raise IdentityProviderError(f"{action} failed") from exc
        return dict(token)


def _extract_user(token: dict) -> IdpUser:
    """Read {id, email} from the token response, falling back to access token claims.

    AuthKit returns a "user" object next to the tokens. Generic providers only
    put the identity into the (JWT) access token.
    """
    user = token.get("user")
    if isinstance(user, dict) and user.get("id") and user.get("email"):
        return IdpUser(id=str(user["id"]), email=str(user["email"]))
    try:
        claims = jwt.get_unverified_claims(token["access_token"])
    except JWTError as exc:
        raise ValueError("access token is not a JWT and no user object was returned") from exc
    if not claims.get("sub") or not claims.get("email"):
        raise ValueError("no sub/email in access token claims")
    return IdpUser(id=str(claims["sub"]), email=str(claims["email"]))
