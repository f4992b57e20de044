"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two dependencies, one per kind of caller:

  get_mcp_context()      -- MCP clients on /mcp. The Authorization header is
                            classified by auth.router.classify():
                              wtyk_... bearer  -> API key manager
                              any other bearer -> OAuth access token
                            Both converge on an AuthContext.

  get_session_context()  -- Browsers on the key-management API, authenticated
                            by the shared SSO session cookie.

Both re-check the user directory on every request, so deleting an account
locks it out immediately even while its keys and tokens are still live.

Failures raise HTTPException with a {"code", "message"} detail dict, which
api/main.py wraps in the ErrorResponse envelope. 401s on /mcp carry a
WWW-Authenticate header pointing at the protected resource metadata so MCP
clients can discover the authorization server.

Layer rule: no imports from api/ or web/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import BackgroundTasks, HTTPException, Request

from auth.errors import ApiKeyInvalid
from auth.models import AuthContext
from auth.router import AuthRoute, bearer_token, classify


def _unauthorized(request: Request, code: str, message: str) -> HTTPException:
    provider = request.app.state.oauth_provider
    challenge = f'Bearer resource_metadata="{provider.issuer}/.well-known/oauth-protected-resource"'
    return HTTPException(
        status_code=401,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": challenge},
    )


def get_mcp_context(request: Request, background_tasks: BackgroundTasks) -> AuthContext:
    """Authenticate an MCP request by API key or OAuth access token.

    Use as a FastAPI dependency:
        @router.post("/mcp")
        async def mcp(context: AuthContext = Depends(get_mcp_context)): ...
    """
    authorization = request.headers.get("Authorization")
    token = bearer_token(authorization)

    if classify(request.url.path, authorization) is AuthRoute.API_KEY:
        try:
            # last_used_at is written after the response is sent
            return request.app.state.api_keys.validate(token, defer=background_tasks.add_task)
        except ApiKeyInvalid as exc:
            raise _unauthorized(request, exc.code, exc.message) from exc

    if token is None:
        raise _unauthorized(request, "unauthorized", "Authentication required.")

    context = request.app.state.oauth_provider.verify_access_token(token)
    if context is None:
        raise _unauthorized(request, "invalid_token", "Invalid or expired access token.")

    user = request.app.state.user_store.get_user_by_id(context.user_id)
    if user is None or user.is_deleted:
        raise _unauthorized(request, "invalid_token", "Invalid or expired access token.")
    return context


async def get_session_context(request: Request) -> AuthContext:
    """Require a valid SSO session cookie. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/api-keys")
        async def route(context: AuthContext = Depends(get_session_context)): ...
    """
    settings = request.app.state.settings
    session_token = request.cookies.get(settings.session_cookie_name)
    if not session_token:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )

    validation = await request.app.state.session_validator.validate(session_token)
    if not validation.valid:
        raise HTTPException(
            status_code=401,
            detail={"code": "session_invalid", "message": "Session is no longer valid.", "detail": validation.reason},
        )

    session = validation.session
    user = request.app.state.user_store.get_user_by_email(session.email)
    if user is None or user.is_deleted:
        raise HTTPException(
            status_code=403,
            detail={"code": "account_deleted", "message": "Account deleted."},
        )
    return AuthContext(user_id=user.user_id, email=user.email, method="oauth")
