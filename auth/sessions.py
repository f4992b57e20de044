"""
auth/sessions.py -- SSO session records and their validation state machine.

Session records live in the shared key-value store at
workos_session:{session_token}. Every server in the SSO family reads and
writes the same records, so the JSON layout is fixed (see auth/models.py).

Validation:

  record absent                          -> NO_SESSION
  expires_at in the future               -> VALID, last_accessed_at touched,
                                            storage TTL reset to 30 days
  expired, no refresh token              -> EXPIRED (no upstream call)
  expired, refresh token present         -> upstream refresh
      upstream accepts                   -> VALID, refresh token rotated,
                                            expires_at = now + 30 days
      upstream rejects / unreachable     -> REFRESH_FAILED, record untouched

Single-flight refresh:
  Refresh tokens are single use upstream, so two requests refreshing the same
  session at once would burn the token and leave one of them holding a dead
  one. Refreshers are serialized per session token by an in-process
  asyncio.Lock AND a store-level lock key (lock:workos_session:{token}, taken
  with the atomic add()). The store lock covers other workers and other
  servers. Whoever gets the lock re-reads the record first: if a previous
  holder already refreshed it, the fresh record is returned without a second
  upstream call.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import replace
from typing import Optional

from auth.errors import IdentityProviderError
from auth.models import SESSION_DURATION_MS, SESSION_DURATION_SECONDS, Session, SessionStatus, SessionValidation
from auth.ports import IdentityProvider, SessionRepository
from auth.tokens import new_session_token
from cache.store import KeyValueStore

_SESSION_PREFIX = "workos_session:"
_LOCK_PREFIX = "lock:workos_session:"
LOCK_TTL_SECONDS = 10
_LOCK_POLL_SECONDS = 0.05


def _now_ms() -> int:
    return int(time.time() * 1000)


class SessionStore:
    """Repository for Session records over a KeyValueStore."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    def get(self, session_token: str) -> Optional[Session]:
        raw = self._kv.get(_SESSION_PREFIX + session_token)
        if raw is None:
            return None
        return Session.from_json(session_token, raw)

    def save(self, session: Session, ttl: int = SESSION_DURATION_SECONDS) -> None:
        self._kv.put(_SESSION_PREFIX + session.session_token, session.to_json(), ttl=ttl)

    def create(self, user_id: str, email: str, refresh_token: str = "", now: Optional[int] = None) -> Session:
        """Mint a new session token and persist a fresh 30-day record."""
        now_ms = now if now is not None else _now_ms()
        session = Session(
            session_token=new_session_token(),
            user_id=user_id,
            email=email,
            expires_at=now_ms + SESSION_DURATION_MS,
            refresh_token=refresh_token,
            created_at=now_ms,
            last_accessed_at=now_ms,
        )
        self.save(session)
        return session

    def delete(self, session_token: str) -> None:
        self._kv.delete(_SESSION_PREFIX + session_token)


class SessionValidator:
    """Decides whether a session token is usable, refreshing it when possible.

    Args:
        sessions:  Where session records are read and written.
        kv:        Store used for the cross-process refresh lock.
        idp:       Upstream identity provider for refresh-token exchange.
        logger:    Defaults to the module logger.
        lock_wait: Seconds to wait for another refresher before giving up
                   with REFRESH_FAILED.
    """

    def __init__(
        self,
        sessions: SessionRepository,
        kv: KeyValueStore,
        idp: IdentityProvider,
        logger: Optional[logging.Logger] = None,
        lock_wait: float = 5.0,
    ) -> None:
        self._sessions = sessions
        self._kv = kv
        self._idp = idp
        self._log = logger or logging.getLogger("skillmap.auth.sessions")
        self._lock_wait = lock_wait
        # token -> (lock, number of coroutines holding or waiting on it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    async def validate(self, session_token: str, now: Optional[int] = None) -> SessionValidation:
        now_ms = now if now is not None else _now_ms()

        session = self._sessions.get(session_token)
        if session is None:
            return SessionValidation(SessionStatus.NO_SESSION)

        if not session.is_expired(now_ms):
            return SessionValidation(SessionStatus.VALID, self._touch(session, now_ms))

        if not session.refresh_token:
            self._log.info("Session expired without refresh token for user %s", session.user_id)
            return SessionValidation(SessionStatus.EXPIRED)

        return await self._refresh(session_token, now_ms)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _touch(self, session: Session, now_ms: int) -> Session:
        """Record activity and slide the storage TTL. Failure is logged, not raised."""
        touched = replace(session, last_accessed_at=now_ms)
        try:
            self._sessions.save(touched, SESSION_DURATION_SECONDS)
        except Exception:
            self._log.warning("Could not update last_accessed_at for user %s", session.user_id, exc_info=True)
            return session
        return touched

    async def _refresh(self, session_token: str, now_ms: int) -> SessionValidation:
        lock = self._acquire_local(session_token)
        try:
            async with lock:
                owner = await self._acquire_store_lock(session_token)
                if owner is None:
                    self._log.warning("Timed out waiting for a concurrent session refresh")
                    return SessionValidation(SessionStatus.REFRESH_FAILED)
                try:
                    return await self._refresh_locked(session_token, now_ms)
                finally:
                    self._release_store_lock(session_token, owner)
        finally:
            self._release_local(session_token)

    async def _refresh_locked(self, session_token: str, now_ms: int) -> SessionValidation:
        # Re-read: a previous lock holder may have refreshed already.
        current = self._sessions.get(session_token)
        if current is None:
            return SessionValidation(SessionStatus.NO_SESSION)
        if not current.is_expired(now_ms):
            return SessionValidation(SessionStatus.VALID, current)
        if not current.refresh_token:
            return SessionValidation(SessionStatus.EXPIRED)

        try:
            rotated = await self._idp.authenticate_with_refresh_token(current.refresh_token)
        except IdentityProviderError as exc:
            self._log.warning("Session refresh rejected for user %s: %s", current.user_id, exc)
            return SessionValidation(SessionStatus.REFRESH_FAILED)

        refreshed = replace(
            current,
            refresh_token=rotated,
            expires_at=now_ms + SESSION_DURATION_MS,
            last_accessed_at=now_ms,
        )
        try:
            self._sessions.save(refreshed, SESSION_DURATION_SECONDS)
        except Exception:
            # The upstream has already invalidated current.refresh_token.
            self._log.error(
                "Could not persist rotated refresh token for user %s; session must re-authenticate",
                current.user_id,
                exc_info=True,
            )
            return SessionValidation(SessionStatus.REFRESH_FAILED)
        self._log.info("Session refreshed for user %s", refreshed.user_id)
        return SessionValidation(SessionStatus.VALID, refreshed)

    def _acquire_local(self, session_token: str) -> asyncio.Lock:
        lock, users = self._locks.get(session_token, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[session_token] = (lock, users + 1)
        return lock

    def _release_local(self, session_token: str) -> None:
        lock, users = self._locks[session_token]
        if users <= 1:
            del self._locks[session_token]
        else:
            self._locks[session_token] = (lock, users - 1)

    async def _acquire_store_lock(self, session_token: str) -> Optional[str]:
        """Poll add() until the lock is ours or lock_wait elapses. Returns the owner tag."""
        owner = secrets.token_hex(8)
        key = _LOCK_PREFIX + session_token
        deadline = time.monotonic() + self._lock_wait
        while True:
            if self._kv.add(key, owner, ttl=LOCK_TTL_SECONDS):
                return owner
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(_LOCK_POLL_SECONDS)

    def _release_store_lock(self, session_token: str, owner: str) -> None:
        key = _LOCK_PREFIX + session_token
        try:
            # Only release a lock we still own; a slow holder may have lost it to the TTL.
            if self._kv.get(key) == owner:
                self._kv.delete(key)
        except Exception:
            self._log.warning("Could not release session refresh lock", exc_info=True)
