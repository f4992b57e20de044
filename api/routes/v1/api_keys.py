"""
api/routes/v1/api_keys.py -- API key management REST endpoints.

Routes:
  POST   /api/v1/api-keys          -- issue a key; plaintext returned ONCE
  GET    /api/v1/api-keys          -- list the caller's keys (metadata only)
  DELETE /api/v1/api-keys/{key_id} -- revoke (soft delete), ownership checked

All three are authenticated by the shared SSO session cookie
(get_session_context), so a user manages keys from any server in the SSO
family with the session they already have.

Security:
  [H3] Issuance is capped at Settings.api_key_max_per_user active keys.
  [M5] Cache-Control: no-store on the creation response, which carries the
       plaintext key.
  IDOR guard: DELETE passes the caller's user_id down to the store; the
  conditional UPDATE only matches keys the caller owns, and "not yours" is
  reported exactly like "not found".
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyResponse
from auth.api_keys import ApiKeyManager
from auth.dependencies import get_session_context
from auth.models import AuthContext

router = APIRouter()


@router.post("/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    request: Request,
    response: Response,
    body: ApiKeyCreate,
    context: AuthContext = Depends(get_session_context),
) -> ApiKeyCreatedResponse:
    """Generate a new API key. The raw key is shown ONCE and never stored."""
    manager: ApiKeyManager = request.app.state.api_keys
    limit = request.app.state.settings.api_key_max_per_user

    if manager.count_active(context.user_id) >= limit:  # [H3]
        raise HTTPException(
            status_code=400,
            detail={
                "code": "key_limit_reached",
                "message": f"Maximum of {limit} API keys per user. Revoke an existing key first.",
            },
        )

    raw_key, api_key = manager.generate(context.user_id, body.name, expires_in_days=body.expires_in_days)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return ApiKeyCreatedResponse(**ApiKeyResponse.from_api_key(api_key).model_dump(), key=raw_key)


@router.get("/api-keys", response_model=list[ApiKeyResponse])
def list_api_keys(
    request: Request,
    context: AuthContext = Depends(get_session_context),
) -> list[ApiKeyResponse]:
    """List the caller's keys, revoked ones included. Raw keys and hashes are never returned."""
    manager: ApiKeyManager = request.app.state.api_keys
    return [ApiKeyResponse.from_api_key(k) for k in manager.list(context.user_id)]


@router.delete("/api-keys/{key_id}", status_code=204)
def revoke_api_key(
    request: Request,
    key_id: str,
    context: AuthContext = Depends(get_session_context),
) -> Response:
    """Revoke an API key. Ownership is verified server-side [IDOR guard]."""
    manager: ApiKeyManager = request.app.state.api_keys
    if not manager.revoke(key_id, context.user_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "API key not found."},
        )
    return Response(status_code=204)
