"""
auth/models.py -- Domain dataclasses for principals.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work.

A DEACTIVATED principal still resolves by id (audit and referential
lookups), but it cannot authenticate and does not count when checking
whether an email address is taken.

Layer rule: no imports from api/, web/, classes/, or bus/.
"""

from __future__ import annotations

from dataclasses import dataclass

from core.models import ACTIVE_ONLY, ALL_LIFECYCLES, Lifecycle

__all__ = ["ACTIVE_ONLY", "ALL_LIFECYCLES", "Lifecycle", "Principal", "Profile"]


@dataclass
class Principal:
    """A user identity, independent of any class membership.

    email is stored lowercased; comparisons are case-insensitive.
    """

    name: str
    email: str
    id: str | None = None
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    created_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.lifecycle is Lifecycle.ACTIVE


@dataclass
class Profile:
    """Public view of a principal."""

    name: str
