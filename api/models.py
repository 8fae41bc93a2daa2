"""
API request and response models for Rollcall REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
classes/models.py, which own the internal domain representation. Route
handlers map between the two.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Principal
from classes.models import Member, SchoolClass

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", something on each side, a dot in the domain.
# Deliverability is not this service's concern.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    student = "student"
    ta = "ta"
    teacher = "teacher"
    administrator = "administrator"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    # bcrypt only looks at the first 72 bytes.
    password: str = Field(min_length=1, max_length=72)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/users (self-registration)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=8, max_length=72)


class UserPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)


class PasswordUpdate(BaseModel):
    password: str = Field(min_length=8, max_length=72)


class ClassCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)


class ClassPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    current_unit: Optional[str] = Field(default=None, max_length=36)


class RoleUpdate(BaseModel):
    role: RoleEnum


class OwnerTransfer(BaseModel):
    user_id: str = Field(min_length=1, max_length=36)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    user_id: str
    email: str
    expires_in: int


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    active: bool
    created_at: str

    @classmethod
    def from_principal(cls, principal: Principal) -> "UserResponse":
        return cls(
            id=principal.id,
            name=principal.name,
            email=principal.email,
            active=principal.is_active,
            created_at=principal.created_at or "",
        )


class ProfileResponse(BaseModel):
    name: str


class ClassResponse(BaseModel):
    id: str
    name: str
    current_unit: Optional[str]
    active: bool
    created_at: str

    @classmethod
    def from_class(cls, school_class: SchoolClass) -> "ClassResponse":
        return cls(
            id=school_class.id,
            name=school_class.name,
            current_unit=school_class.current_unit,
            active=school_class.lifecycle.value == "active",
            created_at=school_class.created_at,
        )


class ClassCreatedResponse(BaseModel):
    id: str


class MemberResponse(BaseModel):
    user_id: str
    class_id: str
    role: RoleEnum
    owner: bool

    @classmethod
    def from_member(cls, member: Member) -> "MemberResponse":
        return cls(
            user_id=member.user_id,
            class_id=member.class_id,
            role=RoleEnum(member.role.value),
            owner=member.owner,
        )


class ErrorDetail(BaseModel):
    """Structured error body. Every error response uses this shape."""

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
