"""
api/routes/v1/auth.py -- Session and account REST endpoints.

Routes:
  POST   /api/v1/auth/login          -- password login; sets the session cookie
  POST   /api/v1/auth/logout         -- clears the cookie; 200
  GET    /api/v1/auth/me             -- current principal (requires auth)
  POST   /api/v1/users               -- self-registration (public, can be disabled)
  GET    /api/v1/users/{id}          -- full account record (requires auth)
  GET    /api/v1/profiles/{id}       -- public profile of an active account
  PATCH  /api/v1/users/me            -- change own name / email
  PUT    /api/v1/users/me/password   -- change own password
  DELETE /api/v1/users/me            -- deactivate own account

Security:
  POST /login is rate-limited per IP (Settings.login_rate_limit).
  Unknown email and wrong password answer with the same code and message;
  authenticate() runs a bcrypt comparison in both cases.
  Cache-Control: no-store on login responses.
  Every write acts on the caller's own account; there is no way to name
  another principal as the target.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.models import (
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    PasswordUpdate,
    ProfileResponse,
    UserCreate,
    UserPatch,
    UserResponse,
)
from auth.dependencies import get_current_principal
from auth.models import Principal
from auth.service import PrincipalService
from auth.tokens import clear_session, establish_session
from core.config import get_settings
from core.errors import WrongCredential
from core.limiter import limiter

# Auth policy:
# - POST   /auth/login, /auth/logout, /users: public
# - GET    /profiles/{id}:                    public
# - everything else:                          requires auth (get_current_principal)
router = APIRouter()


def _principals(request: Request) -> PrincipalService:
    return request.app.state.principals


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@limiter.limit(lambda: get_settings().login_rate_limit)
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    WrongEmail and WrongPassword are collapsed into one response so the
    endpoint cannot be used to discover which emails have accounts.
    """
    try:
        principal = _principals(request).authenticate(body.email, body.password)
    except WrongCredential:
        resp = JSONResponse(
            status_code=401,
            content=ErrorResponse(
                error=ErrorDetail(code=WrongCredential.code, message=WrongCredential.message)
            ).model_dump(exclude_none=True),
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    expires_in = get_settings().session_expire_seconds
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(user_id=principal.id, email=principal.email, expires_in=expires_in).model_dump(),
    )
    establish_session(resp, principal.id, expires_in)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session(resp)
    return resp


@router.get("/auth/me", response_model=UserResponse)
def me(current: Principal = Depends(get_current_principal)) -> UserResponse:
    return UserResponse.from_principal(current)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserResponse, status_code=201)
def register(request: Request, body: UserCreate) -> UserResponse:
    """Create an account with a password. Does not log the new account in."""
    if not get_settings().self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    principal = _principals(request).create_user(body.name, body.email, body.password)
    return UserResponse.from_principal(principal)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: str,
    current: Principal = Depends(get_current_principal),
) -> UserResponse:
    """Return an account record, deactivated accounts included."""
    return UserResponse.from_principal(_principals(request).get_user(user_id))


@router.get("/profiles/{user_id}", response_model=ProfileResponse)
def get_profile(request: Request, user_id: str) -> ProfileResponse:
    profile = _principals(request).get_profile(user_id)
    return ProfileResponse(name=profile.name)


@router.patch("/users/me", response_model=UserResponse)
def update_me(
    request: Request,
    body: UserPatch,
    current: Principal = Depends(get_current_principal),
) -> UserResponse:
    if body.name is None and body.email is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    updated = _principals(request).update_user(current.id, name=body.name, email=body.email)
    return UserResponse.from_principal(updated)


@router.put("/users/me/password", status_code=204)
def set_password(
    request: Request,
    body: PasswordUpdate,
    current: Principal = Depends(get_current_principal),
) -> Response:
    _principals(request).set_password(current.id, body.password)
    return Response(status_code=204)


@router.delete("/users/me", status_code=204)
def delete_me(
    request: Request,
    current: Principal = Depends(get_current_principal),
) -> Response:
    """Deactivate the caller's account and end the session.

    Refused with delete_owner (409) while the caller owns any class.
    """
    _principals(request).delete_user(current.id)
    resp = Response(status_code=204)
    clear_session(resp)
    return resp
