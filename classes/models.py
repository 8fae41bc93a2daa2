"""
classes/models.py -- Domain dataclasses for classes and their members.

Pure data containers. The ownership and role rules live in
classes/service.py; the store only reads and writes rows.

A Member is the join between a principal and a class. Its owner flag is
separate from its role: changing a role never touches ownership, and
ownership moves only through an explicit transfer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from core.models import Lifecycle


class Role(str, Enum):
    STUDENT = "student"
    TA = "ta"
    TEACHER = "teacher"
    ADMINISTRATOR = "administrator"


@dataclass
class SchoolClass:
    """A class ("group"). id is None before the record is written."""

    name: str
    id: Optional[str] = None
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    current_unit: Optional[str] = None
    created_at: str = ""


@dataclass
class Member:
    user_id: str
    class_id: str
    role: Role = Role.STUDENT
    owner: bool = False
    joined_at: str = ""
