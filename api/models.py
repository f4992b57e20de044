"""
API request and response models for the Skillmap gateway REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from auth.models import ApiKey, ApiKeyInfo

# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class ApiKeyCreate(BaseModel):
    """Request body for POST /api/v1/api-keys."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=3650)


class ApiKeyResponse(BaseModel):
    """Metadata for one API key. Never carries the key itself or its hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    key_prefix: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    is_active: bool

    @classmethod
    def from_api_key(cls, api_key: Union[ApiKey, ApiKeyInfo]) -> "ApiKeyResponse":
        """Factory Method -- the domain-to-transport mapping lives with the model."""
        return cls(
            id=api_key.id,
            name=api_key.name,
            key_prefix=api_key.key_prefix,
            created_at=api_key.created_at,
            expires_at=api_key.expires_at,
            last_used_at=api_key.last_used_at,
            is_active=api_key.is_active,
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Response for POST /api/v1/api-keys. key is shown exactly once."""

    key: str


# ---------------------------------------------------------------------------
# OAuth (RFC 6749 / RFC 7591)
# ---------------------------------------------------------------------------


class ClientRegistrationRequest(BaseModel):
    """Request body for POST /register (RFC 7591)."""

    model_config = ConfigDict(extra="ignore")

    redirect_uris: list[str] = Field(min_length=1, max_length=10)
    client_name: str = Field(default="", max_length=200)
    token_endpoint_auth_method: str = "none"


class ClientRegistrationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: Optional[str] = None
    client_id_issued_at: int
    client_name: str
    redirect_uris: list[str]
    grant_types: list[str] = ["authorization_code", "refresh_token"]
    response_types: list[str] = ["code"]
    token_endpoint_auth_method: str


class TokenResponse(BaseModel):
    """Successful /token response (RFC 6749 section 5.1)."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    scope: str = ""


class OAuthErrorResponse(BaseModel):
    """Failed /token or /register response (RFC 6749 section 5.2)."""

    model_config = ConfigDict(frozen=True)

    error: str
    error_description: Optional[str] = None


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
