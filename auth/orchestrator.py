"""
auth/orchestrator.py -- The /authorize and /callback state machine.

                   +--> SSO shortcut (valid session cookie) ----------------+
  /authorize ------+--> redirect to centralized login (return_to=this URL)  |
                   +--> PKCE + redirect to identity provider                |
                                   |                                        |
  /callback  <---------------------+                                        |
     decode state -> verifier -> code exchange -> directory lookup ---------+
                                                                            v
                                              complete | registration required
                                                       | account deleted | failed

Outcomes are returned as values (AuthorizeRedirect / AuthorizationComplete);
failures are raised as AuthFlowError subclasses. The web layer turns both into
HTTP responses.

State:
  The state sent to the identity provider is base64url(JSON(AuthRequest)).
  It is also the key of the stored PKCE verifier, so a tampered state finds
  no verifier and the callback fails with MissingVerifier.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Optional, Union

from auth.errors import (
    AccountDeleted,
    IdentityProviderError,
    InvalidRequest,
    MissingCode,
    MissingVerifier,
    RegistrationRequired,
    UpstreamAuthFailure,
)
from auth.models import AuthContext, AuthRequest, DirectoryUser
from auth.pkce import PkceManager
from auth.ports import IdentityProvider, UserDirectory
from auth.provider import OAuthProvider, append_query
from auth.sessions import SessionStore, SessionValidator
from auth.tokens import unverified_permissions


@dataclass(frozen=True)
class AuthorizeRedirect:
    """Send the browser elsewhere to authenticate."""

    location: str


@dataclass(frozen=True)
class AuthorizationComplete:
    """The user is authorized; send the browser back to the MCP client.

    session_token is set when a new local SSO session was created and must be
    written to the session cookie.
    """

    redirect_url: str
    context: AuthContext
    session_token: Optional[str] = None


AuthorizeOutcome = Union[AuthorizeRedirect, AuthorizationComplete]


def encode_state(request: AuthRequest) -> str:
    raw = json.dumps(request.to_dict(), separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def decode_state(state: str) -> AuthRequest:
    """Inverse of encode_state(). Raises InvalidRequest on anything unreadable."""
    if not state:
        raise InvalidRequest()
    try:
        padded = state + "=" * (-len(state) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except ValueError as exc:
        raise InvalidRequest() from exc
    if not isinstance(data, dict):
        raise InvalidRequest()
    try:
        request = AuthRequest.from_dict(data)
    except TypeError as exc:
        raise InvalidRequest() from exc
    if not request.client_id:
        raise InvalidRequest()
    return request


class AuthorizationOrchestrator:
    def __init__(
        self,
        provider: OAuthProvider,
        pkce: PkceManager,
        sessions: SessionStore,
        validator: SessionValidator,
        idp: IdentityProvider,
        directory: UserDirectory,
        central_login_url: str = "",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._provider = provider
        self._pkce = pkce
        self._sessions = sessions
        self._validator = validator
        self._idp = idp
        self._directory = directory
        self._central_login_url = central_login_url
        self._log = logger or logging.getLogger("skillmap.auth.orchestrator")

    async def authorize(
        self,
        query: Mapping[str, str],
        session_token: Optional[str],
        request_url: str,
        callback_url: str,
    ) -> AuthorizeOutcome:
        """Handle GET /authorize.

        Args:
            query:         The request's query parameters.
            session_token: Value of the SSO session cookie, if any.
            request_url:   The full /authorize URL, used as return_to.
            callback_url:  Absolute URL of this server's /callback.

        Raises:
            InvalidRequest, RegistrationRequired, AccountDeleted.
        """
        request = self._provider.parse_auth_request(query)

        if session_token:
            validation = await self._validator.validate(session_token)
            if validation.valid:
                session = validation.session
                self._log.info("SSO shortcut for %s", session.email)
                user = self._resolve_user(session.email, return_to=request_url)
                context = AuthContext(user_id=user.user_id, email=user.email, method="oauth")
                return AuthorizationComplete(
                    redirect_url=self._provider.complete_authorization(request, user.user_id, [], context),
                    context=context,
                )
            self._log.info("Session cookie rejected: %s", validation.reason)

        if self._central_login_url:
            return AuthorizeRedirect(append_query(self._central_login_url, {"return_to": request_url}))

        verifier, challenge = self._pkce.generate_challenge()
        state = encode_state(request)
        self._pkce.store_verifier(state, verifier)
        return AuthorizeRedirect(self._idp.get_authorization_url(callback_url, state, challenge))

    async def callback(self, code: Optional[str], state: Optional[str]) -> AuthorizationComplete:
        """Handle GET /callback from the identity provider.

        Raises:
            InvalidRequest, MissingCode, MissingVerifier, UpstreamAuthFailure,
            RegistrationRequired, AccountDeleted.
        """
        request = decode_state(state or "")
        if not code:
            raise MissingCode()

        verifier = self._pkce.consume_verifier(state)
        if verifier is None:
            raise MissingVerifier()

        try:
            auth = await self._idp.authenticate_with_code(code, verifier)
        except IdentityProviderError as exc:
            self._log.warning("Code exchange failed for client %s: %s", request.client_id, exc)
            raise UpstreamAuthFailure() from exc

        user = self._resolve_user(auth.user.email)
        extra = {"organization_id": auth.organization_id} if auth.organization_id else {}
        context = AuthContext(
            user_id=user.user_id,
            email=user.email,
            permissions=tuple(unverified_permissions(auth.access_token)),
            method="oauth",
            extra=MappingProxyType(extra),
        )
        redirect_url = self._provider.complete_authorization(request, user.user_id, list(context.permissions), context)

        session_token = None
        try:
            session_token = self._sessions.create(user.user_id, user.email, auth.refresh_token).session_token
        except Exception:
            self._log.warning("Could not create SSO session for %s", user.email, exc_info=True)

        return AuthorizationComplete(redirect_url=redirect_url, context=context, session_token=session_token)

    def _resolve_user(self, email: str, return_to: Optional[str] = None) -> DirectoryUser:
        user = self._directory.get_user_by_email(email)
        if user is None:
            self._log.info("No account for %s; registration required", email)
            raise RegistrationRequired(email, return_to=return_to)
        if user.is_deleted:
            self._log.info("Login attempt by deleted account %s", user.user_id)
            raise AccountDeleted()
        return user
