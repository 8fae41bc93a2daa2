"""
auth/hydra.py -- Client for the external OAuth2 authorization server.

The authorization server (a Hydra-compatible deployment) owns the consent
challenge. Rollcall never persists a challenge: each step of the consent flow
asks the server again whether the challenge is still valid, and hands the
server the user's decision so it can mint tokens.

Every call is a single bounded attempt:
  - timeout defaults to Settings.upstream_timeout_seconds; callers may pass
    their own deadline,
  - no retries -- the user restarts from the link that carries the challenge,
  - any transport error, non-2xx status or malformed body raises
    UpstreamFailure. The cause is logged, never shown to the user.

authorize_url() builds the first-party "my account" authorization request
with authlib's OAuth2Session; it is used when a browser arrives without a
challenge and has no session yet.

Layer rule: no imports from api/, web/, classes/, or bus/.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any

import requests
from authlib.integrations.requests_client import OAuth2Session

from core.config import Settings, get_settings
from core.errors import UpstreamFailure

logger = logging.getLogger("rollcall.auth.hydra")

_CONSENT_PATH = "/oauth2/auth/requests/consent"


@dataclass
class ConsentRequest:
    """A pending consent decision as reported by the authorization server."""

    challenge: str
    client_id: str
    requested_scopes: list[str] = field(default_factory=list)


class AuthorizationServer:
    """Thin synchronous client over the authorization server's admin API.

    Usage:
        server = AuthorizationServer()
        request = server.verify_challenge(challenge)
        url = server.generate_grant_response(challenge, principal_id, request.requested_scopes)
    """

    def __init__(self, settings: Settings | None = None, session: requests.Session | None = None) -> None:
        self._settings = settings or get_settings()
        self._base = self._settings.hydra_url.rstrip("/")
        self._session = session or requests.Session()
        # Known endpoints only; a redirect from the admin API is never expected.
        self._session.max_redirects = 0

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    def verify_challenge(self, challenge: str, timeout: float | None = None) -> ConsentRequest:
        """Ask the server whether `challenge` is valid and what it requests."""
        body = self._request(
            "GET",
            _CONSENT_PATH,
            params={"consent_challenge": challenge},
            timeout=timeout,
        )
        scopes = body.get("requested_scope")
        client = body.get("client") or {}
        if not isinstance(scopes, list):
            logger.warning("consent request for challenge has no requested_scope list")
            raise UpstreamFailure()
        if not isinstance(client, dict):
            logger.warning("consent request for challenge has a malformed client")
            raise UpstreamFailure()
        return ConsentRequest(
            challenge=body.get("challenge", challenge),
            client_id=str(client.get("client_id", "")),
            requested_scopes=[str(s) for s in scopes],
        )

    def generate_grant_response(
        self,
        challenge: str,
        subject: str,
        granted_scopes: list[str],
        timeout: float | None = None,
    ) -> str:
        """Accept the challenge for `subject` with exactly `granted_scopes`; return the continuation URL."""
        body = self._request(
            "PUT",
            f"{_CONSENT_PATH}/accept",
            params={"consent_challenge": challenge},
            json={
                "subject": subject,
                "grant_scope": list(granted_scopes),
                "remember": False,
            },
            timeout=timeout,
        )
        return self._redirect_to(body)

    def reject_challenge(
        self,
        challenge: str,
        reason: str = "access_denied",
        description: str = "The resource owner denied the request",
        timeout: float | None = None,
    ) -> str:
        """Reject the challenge; return the continuation URL that reports the denial to the client."""
        body = self._request(
            "PUT",
            f"{_CONSENT_PATH}/reject",
            params={"consent_challenge": challenge},
            json={"error": reason, "error_description": description},
            timeout=timeout,
        )
        return self._redirect_to(body)

    # ------------------------------------------------------------------
    # Token introspection (API callers)
    # ------------------------------------------------------------------

    def introspect(self, access_token: str, timeout: float | None = None) -> str | None:
        """Return the subject of an active access token, or None if the token is inactive."""
        body = self._request(
            "POST",
            "/oauth2/introspect",
            data={"token": access_token},
            timeout=timeout,
        )
        if not body.get("active"):
            return None
        subject = body.get("sub")
        return str(subject) if subject else None

    # ------------------------------------------------------------------
    # First-party authorization request
    # ------------------------------------------------------------------

    def authorize_url(self, scopes: list[str] | None = None) -> tuple[str, str]:
        """Build the first-party authorize URL. Returns (url, state).

        The default scopes ask for offline access, OpenID and the consent
        bypass scope, so the first-party client skips the consent page.
        """
        cfg = self._settings
        scope = scopes or ["offline", cfg.consent_bypass_scope, "openid"]
        client = OAuth2Session(
            client_id=cfg.hydra_client_id,
            client_secret=cfg.hydra_client_secret or None,
            scope=" ".join(scope),
            redirect_uri=cfg.redirect_url,
        )
        nonce = secrets.token_urlsafe(18)
        url, state = client.create_authorization_url(
            f"{cfg.hydra_public_url.rstrip('/')}/oauth2/auth",
            nonce=nonce,
        )
        return url, state

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, timeout: float | None = None, **kwargs: Any) -> dict:
        deadline = timeout if timeout is not None else self._settings.upstream_timeout_seconds
        url = f"{self._base}{path}"
        try:
            resp = self._session.request(method, url, timeout=deadline, **kwargs)
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as exc:
            logger.warning("authorization server %s %s failed: %s", method, path, exc)
            raise UpstreamFailure() from exc
        except ValueError as exc:
            logger.warning("authorization server %s %s returned a non-JSON body", method, path)
            raise UpstreamFailure() from exc
        if not isinstance(body, dict):
            logger.warning("authorization server %s %s returned %s, expected an object", method, path, type(body).__name__)
            raise UpstreamFailure()
        return body

    @staticmethod
    def _redirect_to(body: dict) -> str:
        url = body.get("redirect_to")
        if not url:
            logger.warning("authorization server response carried no redirect_to")
            raise UpstreamFailure()
        return str(url)
