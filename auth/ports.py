"""
auth/ports.py -- Narrow repository and collaborator interfaces.

Services depend on these protocols, never on a concrete store, so every store
can be swapped (SQLite -> Postgres, SQLite KV -> Redis) or faked in tests.

Error contracts:
  Repositories return None / False for "not found" and let backend errors
  (sqlalchemy.exc.SQLAlchemyError, sqlite3.Error, redis.RedisError) propagate.
  IdentityProvider methods raise auth.errors.IdentityProviderError for every
  rejection or transport failure and never return partial results.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from auth.models import ApiKey, ApiKeyInfo, DirectoryUser, Session


class SessionRepository(Protocol):
    def get(self, session_token: str) -> Optional[Session]: ...

    def save(self, session: Session, ttl: int) -> None: ...

    def delete(self, session_token: str) -> None: ...


class ApiKeyRepository(Protocol):
    def create(self, api_key: ApiKey) -> None: ...

    def get_by_hash(self, key_hash: str) -> Optional[ApiKey]: ...

    def list_for_user(self, user_id: str) -> list[ApiKeyInfo]: ...

    def count_active(self, user_id: str) -> int: ...

    def touch_last_used(self, key_id: str, when: datetime) -> None: ...

    def revoke(self, key_id: str, user_id: str) -> bool: ...


class UserDirectory(Protocol):
    def get_user_by_email(self, email: str) -> Optional[DirectoryUser]: ...

    def get_user_by_id(self, user_id: str) -> Optional[DirectoryUser]: ...


@dataclass(frozen=True)
class IdpUser:
    id: str
    email: str


@dataclass(frozen=True)
class IdpAuthentication:
    """Result of a successful code exchange with the identity provider."""

    access_token: str
    refresh_token: str
    user: IdpUser
    organization_id: Optional[str] = None


class IdentityProvider(Protocol):
    def get_authorization_url(self, redirect_uri: str, state: str, code_challenge: str) -> str: ...

    async def authenticate_with_code(self, code: str, code_verifier: str) -> IdpAuthentication: ...

    async def authenticate_with_refresh_token(self, refresh_token: str) -> str:
        """Return the rotated refresh token."""
        ...
