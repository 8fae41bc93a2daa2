"""
auth/dependencies.py -- FastAPI Depends() helpers for the session gate.

Two ways to authenticate are checked in priority order:
  1. Session cookie ("session") -- set by the login form or POST /auth/login.
  2. Authorization: Bearer <access token> -- a token minted by the
     authorization server, introspected on every request.

Both converge on an ACTIVE Principal. A deactivated principal never
resolves, even with an otherwise valid session.

try_get_current_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from web/, classes/, or bus/.
  auth/dependencies.py may import from fastapi because it is part of the
  FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.models import ACTIVE_ONLY, Principal
from auth.tokens import SESSION_COOKIE, decode_session_token
from core.errors import UpstreamFailure

logger = logging.getLogger("rollcall.auth")


def current_principal_id(request: Request) -> str | None:
    """Return the principal id held by the session cookie, without a store lookup."""
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    return decode_session_token(token)


def try_get_current_principal(request: Request) -> Principal | None:
    """Resolve the request's principal, or None. Never raises."""
    store = request.app.state.principal_store

    principal_id = current_principal_id(request)
    if principal_id:
        principal = store.get_by_id(principal_id, ACTIVE_ONLY)
        if principal is not None:
            return principal

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        server = request.app.state.authorization_server
        try:
            subject = server.introspect(auth_header[7:])
        except UpstreamFailure:
            logger.warning("token introspection unavailable; treating request as anonymous")
            return None
        if subject:
            return store.get_by_id(subject, ACTIVE_ONLY)

    return None


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_current_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthenticated", "message": "Authentication required."},
        )
    return principal
