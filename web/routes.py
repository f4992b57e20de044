"""
web/routes.py -- Browser-facing OAuth routes for the Skillmap gateway.

These routes are hit by a user's browser during the MCP client's OAuth flow.
They share app.state with the API routes (same orchestrator, stores and
settings) but answer with redirects, HTML pages or plain text instead of
JSON.

Routes:
  GET  /authorize  -- start (or short-circuit via SSO) an authorization
  GET  /callback   -- identity provider redirect target
  POST /logout     -- end the local SSO session and clear the cookie

Error presentation:
  RegistrationRequired -> 403 registration page (link carries return_to)
  AccountDeleted       -> 403 deleted-account page
  other AuthFlowError  -> plain-text message with the error's status code

Messages come from the exception classes, never from request input, so no
query parameter is ever reflected into a page.

Security:
  [H2] /callback is rate-limited per IP (Settings.callback_rate_limit).
  return_to values are always built from Settings.public_url plus the
  request path and query, never from the Host header.
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from auth.errors import AccountDeleted, AuthFlowError, RegistrationRequired
from auth.orchestrator import AuthorizationComplete, AuthorizationOrchestrator
from auth.provider import append_query
from auth.tokens import clear_session_cookie, set_session_cookie
from core.limiter import callback_limit, limiter

logger = logging.getLogger("skillmap.web")

SERVER_NAME = "Team Skillmap"

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
templates.env.globals["server_name"] = SERVER_NAME
router = APIRouter()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _public_url(request: Request, path: Optional[str] = None) -> str:
    """Absolute URL for path (default: this request's path and query) on the public origin."""
    base = request.app.state.settings.public_url.rstrip("/")
    if path is not None:
        return f"{base}{path}"
    query = request.url.query
    return f"{base}{request.url.path}?{query}" if query else f"{base}{request.url.path}"


def _error_response(request: Request, exc: AuthFlowError) -> Response:
    settings = request.app.state.settings
    if isinstance(exc, RegistrationRequired):
        link = settings.registration_url
        if exc.return_to:
            link = append_query(link, {"return_to": exc.return_to})
        return templates.TemplateResponse(
            request,
            "registration.html",
            {"email": exc.email, "registration_link": link},
            status_code=403,
        )
    if isinstance(exc, AccountDeleted):
        return templates.TemplateResponse(
            request,
            "deleted.html",
            {"registration_url": settings.registration_url},
            status_code=403,
        )
    return PlainTextResponse(exc.message, status_code=exc.status_code)


def _success_page(request: Request, outcome: AuthorizationComplete) -> HTMLResponse:
    response = templates.TemplateResponse(
        request,
        "success.html",
        {"email": outcome.context.email, "redirect_url": outcome.redirect_url},
    )
    response.headers["Cache-Control"] = "no-store"
    if outcome.session_token:
        set_session_cookie(response, outcome.session_token)
    return response


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("/authorize", response_class=HTMLResponse)
async def authorize(request: Request) -> Response:
    """Start an authorization for an MCP client.

    With a valid SSO session cookie the user is authorized immediately;
    otherwise the browser goes to the centralized login or straight to the
    identity provider.
    """
    orchestrator: AuthorizationOrchestrator = request.app.state.orchestrator
    settings = request.app.state.settings
    try:
        outcome = await orchestrator.authorize(
            dict(request.query_params),
            request.cookies.get(settings.session_cookie_name),
            request_url=_public_url(request),
            callback_url=_public_url(request, "/callback"),
        )
    except AuthFlowError as exc:
        logger.info("/authorize failed: %s", exc.code)
        return _error_response(request, exc)

    if isinstance(outcome, AuthorizationComplete):
        return _success_page(request, outcome)
    return RedirectResponse(outcome.location, status_code=302)


@limiter.limit(callback_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.get("/callback", response_class=HTMLResponse)
async def callback(request: Request, code: Optional[str] = None, state: Optional[str] = None) -> Response:
    """Finish the direct identity-provider exchange and authorize the client."""
    orchestrator: AuthorizationOrchestrator = request.app.state.orchestrator
    try:
        outcome = await orchestrator.callback(code, state)
    except AuthFlowError as exc:
        logger.info("/callback failed: %s", exc.code)
        return _error_response(request, exc)
    return _success_page(request, outcome)


@router.post("/logout")
async def logout(request: Request) -> Response:
    """Delete the local SSO session record and clear the cookie."""
    settings = request.app.state.settings
    session_token = request.cookies.get(settings.session_cookie_name)
    if session_token:
        request.app.state.sessions.delete(session_token)
    response = PlainTextResponse("Logged out.")
    clear_session_cookie(response)
    return response
