"""
api/routes/oauth.py -- OAuth 2.1 endpoints for MCP clients.

Routes:
  POST /token                                   -- code and refresh-token grants
  POST /register                                -- dynamic client registration
  GET  /.well-known/oauth-authorization-server  -- RFC 8414 metadata
  GET  /.well-known/oauth-protected-resource    -- RFC 9728 metadata

Errors on /token and /register use the RFC 6749 section 5.2 body
({"error", "error_description"}) rather than the ErrorResponse envelope,
because OAuth client libraries parse that shape.

Security:
  [H2] /token and /register are rate-limited per IP (Settings.token_rate_limit,
       Settings.register_rate_limit).
  [M5] Cache-Control: no-store on every /token response.

The browser-facing /authorize and /callback live in web/routes.py.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.models import ClientRegistrationRequest, ClientRegistrationResponse, OAuthErrorResponse, TokenResponse
from auth.errors import OAuthGrantError
from auth.provider import OAuthProvider
from core.limiter import limiter, register_limit, token_limit

logger = logging.getLogger("skillmap.api.oauth")

router = APIRouter()


def _oauth_error(exc: OAuthGrantError) -> JSONResponse:
    resp = JSONResponse(
        status_code=exc.status_code,
        content=OAuthErrorResponse(error=exc.code, error_description=exc.message).model_dump(exclude_none=True),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(token_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/token", response_model=TokenResponse)
async def token(request: Request) -> JSONResponse:
    """Redeem an authorization code or rotate a refresh token.

    Parameters arrive form-encoded (application/x-www-form-urlencoded).
    """
    form = await request.form()
    provider: OAuthProvider = request.app.state.oauth_provider
    grant_type = str(form.get("grant_type", ""))
    client_id = str(form.get("client_id", ""))
    client_secret = form.get("client_secret")

    try:
        if grant_type == "authorization_code":
            issued = provider.exchange_authorization_code(
                client_id=client_id,
                code=str(form.get("code", "")),
                redirect_uri=str(form.get("redirect_uri", "")),
                code_verifier=str(form.get("code_verifier", "")),
                client_secret=str(client_secret) if client_secret is not None else None,
            )
        elif grant_type == "refresh_token":
            issued = provider.exchange_refresh_token(
                client_id=client_id,
                refresh_token=str(form.get("refresh_token", "")),
                client_secret=str(client_secret) if client_secret is not None else None,
            )
        else:
            raise OAuthGrantError("unsupported_grant_type", f"Unsupported grant_type: {grant_type or '(missing)'}")
    except OAuthGrantError as exc:
        logger.info("Token request rejected for client %s: %s", client_id or "(none)", exc.code)
        return _oauth_error(exc)

    resp = JSONResponse(content=TokenResponse(**issued).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(register_limit)  # [H2]
@router.post("/register", response_model=ClientRegistrationResponse, status_code=201)
async def register(request: Request, body: ClientRegistrationRequest) -> JSONResponse:
    """Dynamic client registration (RFC 7591)."""
    provider: OAuthProvider = request.app.state.oauth_provider
    try:
        client = provider.register_client(
            body.redirect_uris,
            client_name=body.client_name,
            token_endpoint_auth_method=body.token_endpoint_auth_method,
        )
    except OAuthGrantError as exc:
        return _oauth_error(exc)

    return JSONResponse(
        status_code=201,
        content=ClientRegistrationResponse(
            client_id=client.client_id,
            client_secret=client.client_secret or None,
            client_id_issued_at=client.created_at,
            client_name=client.client_name,
            redirect_uris=client.redirect_uris,
            token_endpoint_auth_method=body.token_endpoint_auth_method,
        ).model_dump(exclude_none=True),
    )


@router.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata(request: Request) -> dict:
    return request.app.state.oauth_provider.authorization_server_metadata()


@router.get("/.well-known/oauth-protected-resource")
async def protected_resource_metadata(request: Request) -> dict:
    return request.app.state.oauth_provider.protected_resource_metadata()
