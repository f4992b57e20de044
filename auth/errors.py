"""
auth/errors.py -- Exception taxonomy for the authentication flows.

Every exception carries the HTTP status it maps to, a stable machine code,
and a message that is safe to show to the client. Internal detail (upstream
error bodies, which specific API-key check failed) is logged server-side and
never placed in the message.

  AuthFlowError             base class
    InvalidRequest          400  malformed client parameters / undecodable state
    MissingCode             400  callback without ?code=
    MissingVerifier         400  PKCE verifier absent or expired
    UpstreamAuthFailure     400  identity provider rejected the exchange
    RegistrationRequired    403  authenticated, but no account in the directory
    AccountDeleted          403  account exists but is soft-deleted
    ApiKeyInvalid           401  any API-key check failed (uniform message)
    OAuthGrantError         400  token endpoint errors (RFC 6749 section 5.2)

Session invalidity is deliberately NOT an exception: it is a validation
result that routes the browser to a login page.

Layer rule: stdlib only.
"""

from __future__ import annotations

from typing import Optional


class AuthFlowError(Exception):
    status_code: int = 400
    code: str = "invalid_request"
    message: str = "Invalid request"

    def __init__(self, message: Optional[str] = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidRequest(AuthFlowError):
    code = "invalid_request"
    message = "Invalid request"


class MissingCode(AuthFlowError):
    code = "missing_code"
    message = "Missing code"


class MissingVerifier(AuthFlowError):
    code = "invalid_pkce"
    message = "Invalid or expired PKCE verification"


class UpstreamAuthFailure(AuthFlowError):
    code = "auth_failed"
    message = "Auth failed"


class RegistrationRequired(AuthFlowError):
    """The identity is valid but has no account yet.

    return_to is where the registration page should send the user back to
    once the account exists (normally the /authorize URL being served).
    """

    status_code = 403
    code = "registration_required"
    message = "Registration required"

    def __init__(self, email: str, return_to: Optional[str] = None) -> None:
        super().__init__()
        self.email = email
        self.return_to = return_to


class AccountDeleted(AuthFlowError):
    status_code = 403
    code = "account_deleted"
    message = "Account deleted"


class ApiKeyInvalid(AuthFlowError):
    """Raised for every API-key failure with one message.

    Bad format, unknown hash, revoked, expired and deleted owner all look the
    same to the caller so valid-but-inactive keys cannot be enumerated.
    """

    status_code = 401
    code = "invalid_api_key"
    message = "Invalid or expired API key"


class OAuthGrantError(AuthFlowError):
    """Token endpoint failure. code is the RFC 6749 error value."""

    def __init__(self, code: str, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class IdentityProviderError(Exception):
    """The upstream identity provider rejected a request or was unreachable.

    Raised by auth/idp.py; callers translate it into UpstreamAuthFailure or a
    REFRESH_FAILED session status.
    """
