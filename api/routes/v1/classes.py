"""
api/routes/v1/classes.py -- Class and membership REST endpoints.

Routes:
  POST   /api/v1/classes                                  -- create; caller becomes owner
  GET    /api/v1/classes                                  -- ids of the caller's classes
  GET    /api/v1/classes/{class_id}                       -- class details (members only)
  PATCH  /api/v1/classes/{class_id}                       -- rename / set current unit (owner)
  DELETE /api/v1/classes/{class_id}                       -- delete class and roster (owner)
  POST   /api/v1/classes/{class_id}/members               -- join as the default role
  DELETE /api/v1/classes/{class_id}/members/me            -- leave
  DELETE /api/v1/classes/{class_id}/members/{user_id}     -- remove a member (owner)
  GET    /api/v1/classes/{class_id}/members               -- roster (members only)
  GET    /api/v1/classes/{class_id}/members/{user_id}     -- one member (members only)
  PUT    /api/v1/classes/{class_id}/members/{user_id}/role -- change role (owner)
  POST   /api/v1/classes/{class_id}/owner                 -- hand ownership to a member (owner)

Every route requires authentication. Authorization lives in
classes.service.MembershipEngine: a caller who is not a member of a class
gets 404 for it, exactly like a class that does not exist.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import (
    ClassCreate,
    ClassCreatedResponse,
    ClassPatch,
    ClassResponse,
    MemberResponse,
    OwnerTransfer,
    RoleUpdate,
)
from auth.dependencies import get_current_principal
from auth.models import Principal
from classes.models import Role
from classes.service import MembershipEngine

router = APIRouter()


def _engine(request: Request) -> MembershipEngine:
    return request.app.state.memberships


# ---------------------------------------------------------------------------
# Classes
# ---------------------------------------------------------------------------


@router.post("/classes", response_model=ClassCreatedResponse, status_code=201)
def create_class(
    request: Request,
    body: ClassCreate,
    current: Principal = Depends(get_current_principal),
) -> ClassCreatedResponse:
    return ClassCreatedResponse(id=_engine(request).create_class(current.id, body.name))


@router.get("/classes", response_model=list[str])
def list_classes(request: Request, current: Principal = Depends(get_current_principal)) -> list[str]:
    return _engine(request).list_classes(current.id)


@router.get("/classes/{class_id}", response_model=ClassResponse)
def get_class(
    request: Request,
    class_id: str,
    current: Principal = Depends(get_current_principal),
) -> ClassResponse:
    return ClassResponse.from_class(_engine(request).get_class(current.id, class_id))


@router.patch("/classes/{class_id}", response_model=ClassResponse)
def update_class(
    request: Request,
    class_id: str,
    body: ClassPatch,
    current: Principal = Depends(get_current_principal),
) -> ClassResponse:
    if body.name is None and body.current_unit is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    updated = _engine(request).update_class(current.id, class_id, name=body.name, current_unit=body.current_unit)
    return ClassResponse.from_class(updated)


@router.delete("/classes/{class_id}", status_code=204)
def delete_class(
    request: Request,
    class_id: str,
    current: Principal = Depends(get_current_principal),
) -> Response:
    _engine(request).delete_class(current.id, class_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


@router.post("/classes/{class_id}/members", response_model=MemberResponse, status_code=201)
def join_class(
    request: Request,
    class_id: str,
    current: Principal = Depends(get_current_principal),
) -> MemberResponse:
    return MemberResponse.from_member(_engine(request).join_class(current.id, class_id))


# Registered before /members/{user_id} so "me" is not taken for a user id.
@router.delete("/classes/{class_id}/members/me", status_code=204)
def leave_class(
    request: Request,
    class_id: str,
    current: Principal = Depends(get_current_principal),
) -> Response:
    _engine(request).leave_class(current.id, class_id)
    return Response(status_code=204)


@router.delete("/classes/{class_id}/members/{user_id}", status_code=204)
def remove_member(
    request: Request,
    class_id: str,
    user_id: str,
    current: Principal = Depends(get_current_principal),
) -> Response:
    _engine(request).leave_class(current.id, class_id, user_id=user_id)
    return Response(status_code=204)


@router.get("/classes/{class_id}/members", response_model=list[MemberResponse])
def list_members(
    request: Request,
    class_id: str,
    current: Principal = Depends(get_current_principal),
) -> list[MemberResponse]:
    return [MemberResponse.from_member(m) for m in _engine(request).list_members(current.id, class_id)]


@router.get("/classes/{class_id}/members/{user_id}", response_model=MemberResponse)
def get_member(
    request: Request,
    class_id: str,
    user_id: str,
    current: Principal = Depends(get_current_principal),
) -> MemberResponse:
    return MemberResponse.from_member(_engine(request).get_member(current.id, class_id, user_id))


@router.put("/classes/{class_id}/members/{user_id}/role", response_model=MemberResponse)
def set_role(
    request: Request,
    class_id: str,
    user_id: str,
    body: RoleUpdate,
    current: Principal = Depends(get_current_principal),
) -> MemberResponse:
    member = _engine(request).set_role(current.id, class_id, user_id, Role(body.role.value))
    return MemberResponse.from_member(member)


@router.post("/classes/{class_id}/owner", response_model=MemberResponse)
def transfer_ownership(
    request: Request,
    class_id: str,
    body: OwnerTransfer,
    current: Principal = Depends(get_current_principal),
) -> MemberResponse:
    member = _engine(request).transfer_ownership(current.id, class_id, body.user_id)
    return MemberResponse.from_member(member)
