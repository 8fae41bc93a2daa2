"""
auth/tokens.py -- Session tokens, password hashing, and the session cookie.

Security design decisions:
  Session: python-jose with HS256. The session cookie carries a signed JWT
       with the principal id ("sub") and expiry. There is no server-side
       session table: logging out clears the cookie, and the last login on a
       browser overwrites whatever session it held before. Verification
       returns None on any failure -- callers treat that as "no principal".

  Passwords: bcrypt directly. Hashing is wrapped so any failure surfaces as
       HashingFailure rather than a raw library error. The _DUMMY_HASH
       constant lets authentication run bcrypt even for unknown emails so
       response time does not reveal whether an account exists.

  SECRET_KEY: sourced from core.config.get_settings(), which validates it at
       startup.

Layer rule: no imports from api/, web/, classes/, or bus/. Import from core/
is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings
from core.errors import HashingFailure

logger = logging.getLogger("rollcall.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

SESSION_COOKIE = "session"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises HashingFailure if bcrypt rejects the input (e.g. > 72 bytes on
    bcrypt 4.x). The API layer caps password length well below that.
    """
    try:
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
    except (ValueError, TypeError) as exc:
        logger.warning("password hashing failed: %s", exc)
        raise HashingFailure() from exc


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("rollcall_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison whose result is discarded (timing equalization)."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Session token encode / decode
# ---------------------------------------------------------------------------


def create_session_token(principal_id: str, expire_seconds: int = 0) -> str:
    """Encode a signed session JWT for the given principal."""
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {"sub": principal_id, "typ": "session", "exp": expire}
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> str | None:
    """Return the principal id from a valid session token, or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("typ") != "session" or not payload.get("sub"):
        return None
    return str(payload["sub"])


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def establish_session(response, principal_id: str, expire_seconds: int = 0) -> None:
    """Write a fresh session cookie for principal_id onto the response.

    httponly: scripts cannot read the cookie. samesite="lax": not sent on
    cross-site POSTs, which keeps the consent form from being submitted by a
    third-party page. max_age matches the token expiry.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    response.set_cookie(
        SESSION_COOKIE,
        value=create_session_token(principal_id, duration),
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )


def clear_session(response) -> None:
    response.delete_cookie(SESSION_COOKIE)
