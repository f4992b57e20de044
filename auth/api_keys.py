"""
auth/api_keys.py -- Issue, validate, list and revoke long-lived API keys.

Validation order (cheapest first):
  1. Format: "wtyk_" prefix and exact length. A malformed candidate is
     rejected before any hashing or storage access.
  2. Hash lookup: SHA-256(candidate) against the UNIQUE api_key_hash index.
  3. Key state: active and not past expires_at.
  4. Owner: must exist in the user directory and not be soft-deleted.

Every failure raises ApiKeyInvalid with the same message, so a caller cannot
tell an unknown key from a revoked or expired one [M3]. The specific reason
is logged server-side at INFO.

The last_used_at stamp is best-effort: when a defer callable is passed
(FastAPI's BackgroundTasks.add_task) it runs after the response is sent;
otherwise inline. Either way a failed write is logged and never fails the
request.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Optional

from auth.errors import ApiKeyInvalid
from auth.models import ApiKey, ApiKeyInfo, AuthContext
from auth.ports import ApiKeyRepository, UserDirectory
from auth.tokens import api_key_display_prefix, generate_api_key, hash_api_key, is_api_key_format

Defer = Callable[..., None]


class ApiKeyManager:
    def __init__(
        self,
        keys: ApiKeyRepository,
        directory: UserDirectory,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._keys = keys
        self._directory = directory
        self._log = logger or logging.getLogger("skillmap.auth.api_keys")

    def generate(self, user_id: str, name: str, expires_in_days: Optional[int] = None) -> tuple[str, ApiKey]:
        """Create and persist a key. Returns (plaintext, record).

        The plaintext is returned exactly once; only its hash is stored.
        """
        raw_key = generate_api_key()
        now = datetime.now(timezone.utc)
        api_key = ApiKey(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            key_hash=hash_api_key(raw_key),
            key_prefix=api_key_display_prefix(raw_key),
            created_at=now,
            expires_at=now + timedelta(days=expires_in_days) if expires_in_days else None,
        )
        self._keys.create(api_key)
        self._log.info("API key %s issued for user %s", api_key.id, user_id)
        return raw_key, api_key

    def validate(self, candidate: str, defer: Optional[Defer] = None) -> AuthContext:
        """Resolve a presented key to the owner's AuthContext or raise ApiKeyInvalid."""
        if not is_api_key_format(candidate):
            self._log.info("API key rejected: malformed")
            raise ApiKeyInvalid()

        api_key = self._keys.get_by_hash(hash_api_key(candidate))
        if api_key is None:
            self._log.info("API key rejected: unknown")
            raise ApiKeyInvalid()

        now = datetime.now(timezone.utc)
        if not api_key.is_active:
            self._log.info("API key %s rejected: revoked", api_key.id)
            raise ApiKeyInvalid()
        if api_key.is_expired(now):
            self._log.info("API key %s rejected: expired", api_key.id)
            raise ApiKeyInvalid()

        owner = self._directory.get_user_by_id(api_key.user_id)
        if owner is None or owner.is_deleted:
            self._log.info("API key %s rejected: owner missing or deleted", api_key.id)
            raise ApiKeyInvalid()

        if defer is not None:
            defer(self._touch, api_key.id, now)
        else:
            self._touch(api_key.id, now)

        return AuthContext(
            user_id=owner.user_id,
            email=owner.email,
            permissions=(),
            method="api_key",
        )

    def list(self, user_id: str) -> list[ApiKeyInfo]:
        """Metadata only, newest first. Never includes key hashes."""
        return self._keys.list_for_user(user_id)

    def revoke(self, key_id: str, user_id: str) -> bool:
        revoked = self._keys.revoke(key_id, user_id)
        if revoked:
            self._log.info("API key %s revoked by user %s", key_id, user_id)
        return revoked

    def count_active(self, user_id: str) -> int:
        return self._keys.count_active(user_id)

    def _touch(self, key_id: str, when: datetime) -> None:
        try:
            self._keys.touch_last_used(key_id, when)
        except Exception:
            self._log.warning("Could not update last_used_at for API key %s", key_id, exc_info=True)
