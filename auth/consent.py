"""
auth/consent.py -- Consent orchestration between the browser, the session, and the authorization server.

The flow is a client-driven state machine. Rollcall keeps nothing between
round trips: what survives from one request to the next lives in the
authorization server's challenge (carried as ?challenge=) and in the
browser's session cookie. Every exchange therefore re-verifies both.

States (ConsentState) and what each exchange can reach:

  GET /consent   begin()
    upstream error in query  -> CHALLENGE_INVALID   (terminal error view)
    no challenge             -> NO_CHALLENGE        (redirect /me, first-party flow)
    verify fails             -> CHALLENGE_INVALID
    no session               -> UNAUTHENTICATED     (redirect /login?challenge=...)
    bypass scope + trusted   -> SCOPE_AUTO_GRANTABLE -> GRANTED (all requested scopes)
    otherwise                -> AWAITING_EXPLICIT_CONSENT (render scopes)

  POST /login    login()
    bad credentials          -> UNAUTHENTICATED     (same form, same challenge, no session)
    ok                       -> caller establishes the session, redirect /consent?challenge=...

  POST /consent  submit()
    no challenge             -> NO_CHALLENGE
    no session               -> UNAUTHENTICATED
    verify fails             -> CHALLENGE_INVALID
    deny                     -> DENIED              (server reject, redirect)
    otherwise                -> GRANTED             (exactly the checked scopes)

Every outcome carries the trail of states visited during that exchange so
callers and tests can see which branch ran.

Bypass trust: the bypass scope on its own is a self-declared marker, so it
only takes effect for clients listed in Settings.trusted_client_ids. Any
other client asking for it goes through explicit consent like everyone else.

Failures of the authorization server are terminal for the exchange. Nothing
is retried and nothing partial is kept.

Layer rule: no imports from api/, web/, classes/, or bus/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlencode

from auth.hydra import AuthorizationServer, ConsentRequest
from auth.models import Principal
from auth.service import PrincipalService
from core.errors import UpstreamFailure, WrongCredential

logger = logging.getLogger("rollcall.consent")


class ConsentState(str, Enum):
    NO_CHALLENGE = "no_challenge"
    CHALLENGE_INVALID = "challenge_invalid"
    UNAUTHENTICATED = "unauthenticated"
    SCOPE_AUTO_GRANTABLE = "scope_auto_grantable"
    AWAITING_EXPLICIT_CONSENT = "awaiting_explicit_consent"
    GRANTED = "granted"
    DENIED = "denied"


@dataclass
class ConsentOutcome:
    """Result of one consent exchange.

    redirect_url is set when the browser should be sent elsewhere; otherwise
    the caller renders a view (consent form or error page) from the other
    fields.
    """

    state: ConsentState
    trail: list[ConsentState] = field(default_factory=list)
    challenge: str = ""
    redirect_url: str | None = None
    client_id: str = ""
    scopes: list[str] = field(default_factory=list)
    error: str | None = None
    error_description: str | None = None


@dataclass
class LoginOutcome:
    """Result of the login sub-flow. principal is None on failure."""

    challenge: str
    principal: Principal | None = None
    redirect_url: str | None = None
    error: str | None = None
    email: str = ""

    @property
    def state(self) -> ConsentState | None:
        return ConsentState.UNAUTHENTICATED if self.principal is None else None


def consent_url(challenge: str) -> str:
    return f"/consent?{urlencode({'challenge': challenge})}" if challenge else "/me"


def login_url(challenge: str) -> str:
    return f"/login?{urlencode({'challenge': challenge})}" if challenge else "/login"


class ConsentOrchestrator:
    def __init__(
        self,
        server: AuthorizationServer,
        principals: PrincipalService,
        bypass_scope: str,
        trusted_client_ids: Iterable[str] = (),
        timeout: float | None = None,
    ) -> None:
        self.server = server
        self.principals = principals
        self.bypass_scope = bypass_scope
        self.trusted_client_ids = frozenset(trusted_client_ids)
        self.timeout = timeout

    # ------------------------------------------------------------------
    # GET /consent
    # ------------------------------------------------------------------

    def begin(
        self,
        challenge: str | None,
        principal_id: str | None,
        upstream_error: str | None = None,
        upstream_error_description: str | None = None,
    ) -> ConsentOutcome:
        challenge = (challenge or "").strip()
        if upstream_error:
            logger.info("authorization server reported %r for a consent challenge", upstream_error)
            return ConsentOutcome(
                state=ConsentState.CHALLENGE_INVALID,
                trail=[ConsentState.CHALLENGE_INVALID],
                challenge=challenge,
                error=upstream_error,
                error_description=upstream_error_description,
            )
        if not challenge:
            return ConsentOutcome(
                state=ConsentState.NO_CHALLENGE,
                trail=[ConsentState.NO_CHALLENGE],
                redirect_url="/me",
            )

        trail: list[ConsentState] = []
        try:
            request = self.server.verify_challenge(challenge, timeout=self.timeout)
        except UpstreamFailure as exc:
            return self._failed(challenge, trail, exc)

        if principal_id is None:
            trail.append(ConsentState.UNAUTHENTICATED)
            return ConsentOutcome(
                state=ConsentState.UNAUTHENTICATED,
                trail=trail,
                challenge=challenge,
                redirect_url=login_url(challenge),
                client_id=request.client_id,
            )

        if self._may_bypass(request):
            trail.append(ConsentState.SCOPE_AUTO_GRANTABLE)
            return self._grant(request, principal_id, list(request.requested_scopes), trail)

        if self.bypass_scope in request.requested_scopes:
            logger.warning(
                "client %r requested the consent bypass scope but is not trusted; asking for consent",
                request.client_id,
            )
        trail.append(ConsentState.AWAITING_EXPLICIT_CONSENT)
        return ConsentOutcome(
            state=ConsentState.AWAITING_EXPLICIT_CONSENT,
            trail=trail,
            challenge=challenge,
            client_id=request.client_id,
            scopes=list(request.requested_scopes),
        )

    # ------------------------------------------------------------------
    # POST /consent
    # ------------------------------------------------------------------

    def submit(
        self,
        challenge: str | None,
        principal_id: str | None,
        form_scopes: Iterable[str],
        deny: bool = False,
    ) -> ConsentOutcome:
        """Finish the consent round trip with the scopes the user checked.

        Only scopes that were both requested and submitted are granted; an
        empty or missing form grants nothing.
        """
        challenge = (challenge or "").strip()
        if not challenge:
            return ConsentOutcome(
                state=ConsentState.NO_CHALLENGE,
                trail=[ConsentState.NO_CHALLENGE],
                error="no_challenge",
                error_description="Endpoint was called without a consent challenge.",
            )
        if principal_id is None:
            return ConsentOutcome(
                state=ConsentState.UNAUTHENTICATED,
                trail=[ConsentState.UNAUTHENTICATED],
                challenge=challenge,
                redirect_url=login_url(challenge),
            )

        trail: list[ConsentState] = []
        try:
            request = self.server.verify_challenge(challenge, timeout=self.timeout)
        except UpstreamFailure as exc:
            return self._failed(challenge, trail, exc)

        if deny:
            try:
                url = self.server.reject_challenge(challenge, timeout=self.timeout)
            except UpstreamFailure as exc:
                return self._failed(challenge, trail, exc)
            trail.append(ConsentState.DENIED)
            return ConsentOutcome(
                state=ConsentState.DENIED,
                trail=trail,
                challenge=challenge,
                redirect_url=url,
                client_id=request.client_id,
            )

        submitted = set(form_scopes)
        granted = [scope for scope in request.requested_scopes if scope in submitted]
        return self._grant(request, principal_id, granted, trail)

    # ------------------------------------------------------------------
    # POST /login
    # ------------------------------------------------------------------

    def login(self, challenge: str | None, email: str, password: str) -> LoginOutcome:
        """Authenticate the login form.

        On success the caller must establish the session on the response
        that redirects to redirect_url. On failure no session is created and
        the form is shown again with the same challenge; unknown email and
        wrong password get the same message.
        """
        challenge = (challenge or "").strip()
        try:
            principal = self.principals.authenticate(email, password)
        except WrongCredential as exc:
            logger.info("login failed (%s)", exc.code)
            return LoginOutcome(challenge=challenge, error=WrongCredential.message, email=email)
        return LoginOutcome(
            challenge=challenge,
            principal=principal,
            redirect_url=consent_url(challenge),
            email=principal.email,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _may_bypass(self, request: ConsentRequest) -> bool:
        return self.bypass_scope in request.requested_scopes and request.client_id in self.trusted_client_ids

    def _grant(
        self,
        request: ConsentRequest,
        principal_id: str,
        scopes: list[str],
        trail: list[ConsentState],
    ) -> ConsentOutcome:
        try:
            url = self.server.generate_grant_response(
                request.challenge,
                principal_id,
                scopes,
                timeout=self.timeout,
            )
        except UpstreamFailure as exc:
            return self._failed(request.challenge, trail, exc)
        trail.append(ConsentState.GRANTED)
        logger.info("consent granted to %r for %d scopes", request.client_id, len(scopes))
        return ConsentOutcome(
            state=ConsentState.GRANTED,
            trail=trail,
            challenge=request.challenge,
            redirect_url=url,
            client_id=request.client_id,
            scopes=scopes,
        )

    @staticmethod
    def _failed(challenge: str, trail: list[ConsentState], exc: UpstreamFailure) -> ConsentOutcome:
        trail.append(ConsentState.CHALLENGE_INVALID)
        return ConsentOutcome(
            state=ConsentState.CHALLENGE_INVALID,
            trail=trail,
            challenge=challenge,
            error=exc.code,
            error_description=exc.message,
        )
