"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these types own the domain shape.

Timestamps:
  Session timestamps are integer milliseconds since the epoch. The session
  record is shared with the centralized login service, which writes the same
  JSON layout into the same store, so the field names and units are part of
  a wire contract and must not change.

  ApiKey and DirectoryUser timestamps are timezone-aware datetimes; the SQL
  store persists them as ISO 8601 strings.

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

# 30 days -- both the session business lifetime and its sliding storage TTL.
SESSION_DURATION_SECONDS = 30 * 24 * 60 * 60
SESSION_DURATION_MS = SESSION_DURATION_SECONDS * 1000


@dataclass
class Session:
    """An SSO session record stored at workos_session:{session_token}.

    expires_at is authoritative for validity decisions. The storage TTL of the
    record is a separate sliding window, reset on every successful validation.
    refresh_token is the upstream identity provider's refresh token; it is
    rotated on every refresh and may be empty for sessions that cannot be
    renewed.
    """

    session_token: str
    user_id: str
    email: str
    expires_at: int
    refresh_token: str = ""
    created_at: int = 0
    last_accessed_at: int = 0

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at < now_ms

    def to_json(self) -> str:
        """Serialize without the token itself -- the token is the storage key."""
        record = asdict(self)
        del record["session_token"]
        return json.dumps(record, separators=(",", ":"))

    @classmethod
    def from_json(cls, session_token: str, raw: str) -> "Session":
        data = json.loads(raw)
        return cls(
            session_token=session_token,
            user_id=str(data["user_id"]),
            email=str(data["email"]),
            expires_at=int(data["expires_at"]),
            refresh_token=data.get("refresh_token") or "",
            created_at=int(data.get("created_at") or 0),
            last_accessed_at=int(data.get("last_accessed_at") or 0),
        )


class SessionStatus(str, Enum):
    VALID = "VALID"
    NO_SESSION = "NO_SESSION"
    EXPIRED = "EXPIRED"
    REFRESH_FAILED = "REFRESH_FAILED"


@dataclass(frozen=True)
class SessionValidation:
    """Outcome of SessionValidator.validate().

    valid=False always carries a reason; valid=True always carries a session.
    """

    status: SessionStatus
    session: Optional[Session] = None

    @property
    def valid(self) -> bool:
        return self.status is SessionStatus.VALID

    @property
    def reason(self) -> Optional[str]:
        return None if self.valid else self.status.value


@dataclass
class ApiKey:
    """A long-lived credential for MCP clients that cannot run OAuth.

    Security design:
    - key_hash is SHA-256 over the whole plaintext key. The key carries 256
      bits of randomness, so an unsalted fast hash is sufficient and allows an
      O(1) lookup by hash.
    - key_prefix (first 16 chars of the plaintext) is for display only.
    - The plaintext is never persisted. It is returned ONCE at creation.
    - Revocation is a soft delete (is_active=False); rows are never removed so
      audit history survives.
    """

    id: str
    user_id: str
    name: str
    key_hash: str
    key_prefix: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    is_active: bool = True

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


@dataclass(frozen=True)
class ApiKeyInfo:
    """Display metadata for one API key. Carries neither the key nor its hash."""

    id: str
    user_id: str
    name: str
    key_prefix: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    is_active: bool = True


@dataclass
class DirectoryUser:
    """An account in the user directory. is_deleted marks a soft-deleted account."""

    user_id: str
    email: str
    is_deleted: bool = False
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class AuthContext:
    """The resolved identity handed to the tool-serving layer.

    Replaces an open-ended props dictionary: the fields every consumer relies
    on are explicit, and anything else must fit the narrowly-typed extra map.
    """

    user_id: str
    email: str
    permissions: tuple[str, ...] = ()
    method: str = "oauth"  # "oauth" or "api_key"
    extra: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def to_claims(self) -> dict:
        return {
            "sub": self.user_id,
            "email": self.email,
            "permissions": list(self.permissions),
            "method": self.method,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_claims(cls, claims: Mapping) -> "AuthContext":
        extra = claims.get("extra") or {}
        return cls(
            user_id=str(claims["sub"]),
            email=str(claims.get("email", "")),
            permissions=tuple(str(p) for p in claims.get("permissions") or ()),
            method=str(claims.get("method", "oauth")),
            extra=MappingProxyType({str(k): str(v) for k, v in extra.items()}),
        )


@dataclass
class AuthRequest:
    """An inbound OAuth authorization request from an MCP client.

    Serialized into the opaque state of the direct provider exchange so the
    callback can resume the original request without server-side storage.
    """

    client_id: str
    redirect_uri: str
    response_type: str = "code"
    scope: list[str] = field(default_factory=list)
    state: str = ""
    code_challenge: str = ""
    code_challenge_method: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "AuthRequest":
        """Raises TypeError if scope is present but not a list."""
        scope = data.get("scope") or []
        if not isinstance(scope, list):
            raise TypeError("scope must be a list")
        return cls(
            client_id=str(data.get("client_id") or ""),
            redirect_uri=str(data.get("redirect_uri") or ""),
            response_type=str(data.get("response_type") or "code"),
            scope=[str(s) for s in scope],
            state=str(data.get("state") or ""),
            code_challenge=str(data.get("code_challenge") or ""),
            code_challenge_method=str(data.get("code_challenge_method") or ""),
        )


@dataclass
class OAuthClient:
    """An MCP client registered through dynamic client registration."""

    client_id: str
    redirect_uris: list[str]
    client_name: str = ""
    client_secret: str = ""
    created_at: int = 0

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "OAuthClient":
        data = json.loads(raw)
        return cls(
            client_id=data["client_id"],
            redirect_uris=list(data.get("redirect_uris") or []),
            client_name=data.get("client_name") or "",
            client_secret=data.get("client_secret") or "",
            created_at=int(data.get("created_at") or 0),
        )
