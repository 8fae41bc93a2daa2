"""
core/models.py -- Value types shared by more than one domain package.

Lifecycle replaces a bare active/inactive boolean on principals and classes.
Records are never physically deleted; they move to DEACTIVATED. Every store
lookup names the lifecycles it includes, so "visible in listings" and
"exists for audit purposes" are never conflated.
"""

from enum import Enum


class Lifecycle(str, Enum):
    ACTIVE = "active"
    DEACTIVATED = "deactivated"


ACTIVE_ONLY: frozenset = frozenset({Lifecycle.ACTIVE})
ALL_LIFECYCLES: frozenset = frozenset(Lifecycle)
