"""
web/routes.py -- Jinja2 template routes for the login, registration and consent pages.

These routes serve server-rendered HTML to browsers sent here by the
authorization server. They share app.state with the API routes (same
services, same consent orchestrator) but return HTML and redirects instead of
JSON.

Every form carries the consent challenge as a hidden field so the flow can
resume after login or registration. Nothing about the flow is kept server
side between requests; see auth/consent.py for the state machine.

Every POST form also carries a CSRF token. The token lives in the signed
SessionMiddleware cookie and a POST whose field does not match it is refused
with 403 before any credential check or consent decision.

Routes:
  GET  /           -- redirect to /me
  GET  /me         -- account page; anonymous visitors start the first-party authorize flow
  GET  /callback   -- end of the first-party authorize flow; checks the OAuth2 state
  GET  /login      -- login form (?challenge= passthrough)
  POST /login      -- handle password login, continue to /consent
  GET  /register   -- registration form (?challenge= passthrough)
  POST /register   -- create account, log in, continue to /consent
  GET  /consent    -- verify challenge; auto-grant, ask, or redirect to /login
  POST /consent    -- grant the checked scopes or deny
  GET  /logout     -- clear the session cookie, redirect /login
"""

import hmac
import logging
import secrets
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from auth.consent import ConsentOrchestrator, ConsentOutcome, ConsentState, consent_url, login_url
from auth.dependencies import try_get_current_principal
from auth.hydra import AuthorizationServer
from auth.service import PrincipalService
from auth.tokens import clear_session, establish_session
from classes.service import MembershipEngine
from core.config import get_settings
from core.errors import NotFound, ServiceError, UpstreamFailure
from core.limiter import limiter

logger = logging.getLogger("rollcall.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

# Keys in the signed SessionMiddleware cookie.
_OAUTH_STATE_KEY = "oauth_state"
_CSRF_KEY = "csrf_token"

# Scope descriptions shown on the consent form. Unknown scopes are shown by name.
_SCOPE_LABELS: dict[str, str] = {
    "openid": "Confirm your identity",
    "offline": "Stay signed in while you are away",
    "profile": "See your name",
    "email": "See your email address",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _consent(request: Request) -> ConsentOrchestrator:
    return request.app.state.consent


def _principal_id(request: Request) -> Optional[str]:
    principal = try_get_current_principal(request)
    return principal.id if principal is not None else None


def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _csrf_token(request: Request) -> str:
    """Return the session's CSRF token, creating it on first use."""
    token = request.session.get(_CSRF_KEY)
    if not token:
        token = secrets.token_urlsafe(24)
        request.session[_CSRF_KEY] = token
    return token


def _csrf_ok(request: Request, submitted: str) -> bool:
    expected = request.session.get(_CSRF_KEY)
    if not expected or not submitted:
        return False
    return hmac.compare_digest(expected.encode(), submitted.encode())


def _csrf_rejected(request: Request):
    logger.warning("%s %s rejected: missing or wrong CSRF token", request.method, request.url.path)
    return templates.TemplateResponse(
        request,
        "error.html",
        {
            "error": "csrf_failed",
            "error_description": "This form has expired. Go back, reload the page and try again.",
        },
        status_code=403,
    )


def _render_outcome(request: Request, outcome: ConsentOutcome):
    """Turn a consent outcome into a redirect, the consent form, or the error page."""
    logger.info(
        "consent exchange: %s",
        " -> ".join(state.value for state in outcome.trail),
    )
    if outcome.redirect_url:
        return RedirectResponse(outcome.redirect_url, status_code=302)

    if outcome.state is ConsentState.AWAITING_EXPLICIT_CONSENT:
        bypass = get_settings().consent_bypass_scope
        scopes = [
            {"name": scope, "label": _SCOPE_LABELS.get(scope, scope)}
            for scope in outcome.scopes
            if scope != bypass
        ]
        return _no_store(
            templates.TemplateResponse(
                request,
                "consent.html",
                {
                    "challenge": outcome.challenge,
                    "client_id": outcome.client_id,
                    "scopes": scopes,
                    "csrf_token": _csrf_token(request),
                },
            )
        )

    status = 502 if outcome.error == UpstreamFailure.code else 400
    return templates.TemplateResponse(
        request,
        "error.html",
        {
            "error": outcome.error or outcome.state.value,
            "error_description": outcome.error_description,
        },
        status_code=status,
    )


# ---------------------------------------------------------------------------
# GET / and GET /me
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def index() -> RedirectResponse:
    return RedirectResponse("/me", status_code=302)


@router.get("/me", response_class=HTMLResponse)
def me(request: Request):
    """Account page.

    Anonymous visitors are sent through the first-party authorize flow
    instead of straight to /login, so that a session established here is
    also backed by the authorization server's own login session. The
    first-party client asks for the bypass scope and is trusted, so the
    consent step completes without a prompt.
    """
    principal = try_get_current_principal(request)
    if principal is None:
        server: AuthorizationServer = request.app.state.authorization_server
        url, state = server.authorize_url()
        request.session[_OAUTH_STATE_KEY] = state
        return RedirectResponse(url, status_code=302)

    memberships: MembershipEngine = request.app.state.memberships
    classes = []
    for class_id in memberships.list_classes(principal.id):
        try:
            classes.append(memberships.get_class(principal.id, class_id))
        except NotFound:
            # Deleted or left between the two reads.
            continue
    return _no_store(
        templates.TemplateResponse(
            request,
            "me.html",
            {"principal": principal, "classes": classes},
        )
    )


# ---------------------------------------------------------------------------
# GET /callback
# ---------------------------------------------------------------------------


@router.get("/callback", response_class=HTMLResponse)
def callback(
    request: Request,
    state: str = "",
    error: Optional[str] = None,
    error_description: Optional[str] = None,
):
    """Finish the first-party authorize flow started by /me.

    The state stored by /me is single use. The authorization code is not
    exchanged: the login step already wrote the session cookie, so the
    round trip only has to come back intact.
    """
    expected = request.session.pop(_OAUTH_STATE_KEY, None)
    if not expected or not state or not hmac.compare_digest(expected.encode(), state.encode()):
        logger.warning("authorize callback with a missing or mismatched state")
        return templates.TemplateResponse(
            request,
            "error.html",
            {
                "error": "state_mismatch",
                "error_description": (
                    "The sign-in request could not be matched to this browser. "
                    "Start again from your account page."
                ),
            },
            status_code=400,
        )
    if error:
        return templates.TemplateResponse(
            request,
            "error.html",
            {"error": error, "error_description": error_description},
            status_code=400,
        )
    return RedirectResponse("/me", status_code=302)


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request, challenge: str = ""):
    """Render the login form. A visitor who already has a session skips ahead."""
    if _principal_id(request) is not None:
        return RedirectResponse(consent_url(challenge), status_code=302)
    return templates.TemplateResponse(
        request,
        "login.html",
        {"challenge": challenge, "email": "", "error_msg": None, "csrf_token": _csrf_token(request)},
    )


@limiter.limit(lambda: get_settings().login_rate_limit)
@router.post("/login", response_class=HTMLResponse)
def login_post(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    challenge: str = Form(""),
    csrf_token: str = Form(""),
):
    """Handle the login form.

    Failure re-renders the form with the same challenge and the typed email,
    and leaves the session cookie alone. Success writes the session and
    continues the consent flow.
    """
    if not _csrf_ok(request, csrf_token):
        return _csrf_rejected(request)
    outcome = _consent(request).login(challenge, email, password)
    if outcome.principal is None:
        return _no_store(
            templates.TemplateResponse(
                request,
                "login.html",
                {
                    "challenge": outcome.challenge,
                    "email": outcome.email,
                    "error_msg": outcome.error,
                    "csrf_token": _csrf_token(request),
                },
                status_code=401,
            )
        )
    resp = RedirectResponse(outcome.redirect_url, status_code=302)
    establish_session(resp, outcome.principal.id)
    return _no_store(resp)


@router.get("/logout")
def logout() -> RedirectResponse:
    resp = RedirectResponse("/login", status_code=302)
    clear_session(resp)
    return resp


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.get("/register", response_class=HTMLResponse)
def register_form(request: Request, challenge: str = ""):
    if not get_settings().self_registration_enabled:
        return RedirectResponse(login_url(challenge), status_code=302)
    return templates.TemplateResponse(
        request,
        "register.html",
        {"challenge": challenge, "name": "", "email": "", "error_msg": None, "csrf_token": _csrf_token(request)},
    )


@router.post("/register", response_class=HTMLResponse)
def register_post(
    request: Request,
    name: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form(""),
    challenge: str = Form(""),
    csrf_token: str = Form(""),
):
    """Create an account, log it in, and continue the consent flow."""
    if not get_settings().self_registration_enabled:
        return RedirectResponse("/login", status_code=302)
    if not _csrf_ok(request, csrf_token):
        return _csrf_rejected(request)

    def _again(message: str, status_code: int = 400):
        return templates.TemplateResponse(
            request,
            "register.html",
            {
                "challenge": challenge,
                "name": name,
                "email": email,
                "error_msg": message,
                "csrf_token": _csrf_token(request),
            },
            status_code=status_code,
        )

    if not name.strip():
        return _again("Name is required.")
    if "@" not in email:
        return _again("Enter a valid email address.")
    if password != confirm_password:
        return _again("Passwords do not match.")
    if not 8 <= len(password) <= 72:
        return _again("Password must be between 8 and 72 characters.")

    principals: PrincipalService = request.app.state.principals
    try:
        principal = principals.create_user(name.strip(), email.strip(), password)
    except ServiceError as exc:
        return _again(exc.message, exc.status_code)

    resp = RedirectResponse(consent_url(challenge), status_code=302)
    establish_session(resp, principal.id)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Consent
# ---------------------------------------------------------------------------


@router.get("/consent", response_class=HTMLResponse)
def consent_form(
    request: Request,
    challenge: str = "",
    error: Optional[str] = None,
    error_description: Optional[str] = None,
):
    outcome = _consent(request).begin(
        challenge,
        _principal_id(request),
        upstream_error=error,
        upstream_error_description=error_description,
    )
    return _render_outcome(request, outcome)


@router.post("/consent", response_class=HTMLResponse)
def consent_post(
    request: Request,
    challenge: str = Form(""),
    scope: list[str] = Form(default=[]),
    action: str = Form("allow"),
    csrf_token: str = Form(""),
):
    """Grant exactly the checked scopes, or deny the whole request."""
    if not _csrf_ok(request, csrf_token):
        return _csrf_rejected(request)
    outcome = _consent(request).submit(
        challenge,
        _principal_id(request),
        scope,
        deny=(action == "deny"),
    )
    return _render_outcome(request, outcome)
