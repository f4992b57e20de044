"""
auth/pkce.py -- Proof Key for Code Exchange (RFC 7636), S256 only.

Two roles:
  1. Client side toward the upstream identity provider: generate a verifier/
     challenge pair, keep the verifier under the OAuth state for 10 minutes,
     and hand it back exactly once when the callback arrives.
  2. Server side toward MCP clients: verify() checks a client's verifier
     against the challenge it sent to /authorize.

One-time use is enforced by the store's atomic take(): two callbacks racing
on the same state can never both receive the verifier.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from typing import Optional

from cache.store import KeyValueStore

VERIFIER_TTL_SECONDS = 600
_VERIFIER_BYTES = 32
_KEY_PREFIX = "pkce:"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def challenge_for(verifier: str) -> str:
    """BASE64URL(SHA256(ASCII(verifier))), no padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


class PkceManager:
    """Generates PKCE pairs and keeps verifiers with one-time, TTL-bounded semantics."""

    def __init__(self, store: KeyValueStore, logger: Optional[logging.Logger] = None) -> None:
        self._store = store
        self._log = logger or logging.getLogger("skillmap.auth.pkce")

    @staticmethod
    def generate_challenge() -> tuple[str, str]:
        """Return (verifier, challenge). The verifier is 43 chars of base64url."""
        verifier = _b64url(secrets.token_bytes(_VERIFIER_BYTES))
        return verifier, challenge_for(verifier)

    @staticmethod
    def verify(verifier: str, challenge: str) -> bool:
        """Constant-time S256 check of a client-supplied verifier."""
        try:
            computed = challenge_for(verifier)
        except UnicodeEncodeError:
            return False
        return hmac.compare_digest(computed, challenge)

    def store_verifier(self, state: str, verifier: str) -> None:
        """Keep verifier for VERIFIER_TTL_SECONDS. Overwrites any prior value for state."""
        self._store.put(_KEY_PREFIX + state, verifier, ttl=VERIFIER_TTL_SECONDS)

    def consume_verifier(self, state: str) -> Optional[str]:
        """Return and delete the verifier for state, or None if absent or expired."""
        verifier = self._store.take(_KEY_PREFIX + state)
        if verifier is None:
            self._log.warning("PKCE verifier not found or expired")
        return verifier
