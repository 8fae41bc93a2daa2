"""
classes/service.py -- Membership authorization engine.

Owns the {user, class, role, owner} relation and keeps these rules true after
every committed operation:

  - every active class has exactly one owner member,
  - no class ever has two owner members,
  - the owner cannot leave (or be removed) until ownership has moved to
    another member,
  - only the owner may change roles, remove other members, edit or delete
    the class, or hand ownership over,
  - a user holds at most one membership per class.

Each operation opens one transaction and does its checks and its writes on
that connection. On SQLite that transaction starts with BEGIN IMMEDIATE
(core/db.py), so concurrent operations on the same class run one after the
other rather than interleaving check and write.

Reads require the actor to be a member; for an outsider a class that exists
and a class that does not are both NotFound, so rosters never leak.

Every public method runs through the HookChain. Destructive operations
(delete_class, leave_class) are picked up by bus.hooks.PropagationHook after
they commit.

Layer rule: imports core/ only. Never imports auth/, api/, web/, or bus/.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from classes.models import Member, Role, SchoolClass
from classes.store import ClassStore
from core.errors import AlreadyEnrolled, Forbidden, InvariantViolation, MustReassignOwner, NotFound
from core.hooks import HookChain

logger = logging.getLogger("rollcall.classes")


class MembershipEngine:
    def __init__(
        self,
        store: ClassStore,
        hooks: Optional[HookChain] = None,
        default_role: Role = Role.STUDENT,
    ) -> None:
        self.store = store
        self.hooks = hooks or HookChain()
        self.default_role = Role(default_role)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_member(self, conn: Connection, actor: str, class_id: str) -> Member:
        """Return the actor's membership of an active class, or raise NotFound."""
        if self.store.get_class(conn, class_id) is None:
            raise NotFound()
        member = self.store.member(conn, actor, class_id)
        if member is None:
            raise NotFound()
        return member

    def _require_owner(self, conn: Connection, actor: str, class_id: str) -> Member:
        member = self._require_member(conn, actor, class_id)
        if not member.owner:
            raise Forbidden()
        return member

    # ------------------------------------------------------------------
    # Classes
    # ------------------------------------------------------------------

    def create_class(self, actor: str, name: str) -> str:
        """Create a class with the actor as its owner; both rows commit together."""

        def _run() -> str:
            with self.store.transaction() as conn:
                class_id = self.store.insert_class(conn, SchoolClass(name=name.strip()))
                self.store.insert_member(
                    conn,
                    Member(user_id=actor, class_id=class_id, role=self.default_role, owner=True),
                )
            return class_id

        return self.hooks.run("create_class", actor, {"name": name}, _run)

    def get_class(self, actor: str, class_id: str) -> SchoolClass:
        def _run() -> SchoolClass:
            with self.store.transaction() as conn:
                self._require_member(conn, actor, class_id)
                return self.store.get_class(conn, class_id)

        return self.hooks.run("get_class", actor, {"class_id": class_id}, _run)

    def list_classes(self, actor: str) -> list[str]:
        """Ids of the active classes the actor is enrolled in."""

        def _run() -> list[str]:
            with self.store.transaction() as conn:
                return self.store.class_ids_for_user(conn, actor)

        return self.hooks.run("list_classes", actor, {}, _run)

    def update_class(
        self,
        actor: str,
        class_id: str,
        name: Optional[str] = None,
        current_unit: Optional[str] = None,
    ) -> SchoolClass:
        def _run() -> SchoolClass:
            with self.store.transaction() as conn:
                self._require_owner(conn, actor, class_id)
                fields: dict = {}
                if name is not None:
                    fields["name"] = name.strip()
                if current_unit is not None:
                    fields["current_unit"] = current_unit
                self.store.update_class(conn, class_id, **fields)
                return self.store.get_class(conn, class_id)

        return self.hooks.run(
            "update_class",
            actor,
            {"class_id": class_id, "name": name, "current_unit": current_unit},
            _run,
        )

    def delete_class(self, actor: str, class_id: str) -> None:
        """Deactivate the class and remove every membership, atomically. Owner only."""

        def _run() -> None:
            with self.store.transaction() as conn:
                self._require_owner(conn, actor, class_id)
                self.store.deactivate_class(conn, class_id)
                removed = self.store.delete_class_members(conn, class_id)
            logger.info("class %s deleted, %d memberships removed", class_id, removed)

        self.hooks.run("delete_class", actor, {"class_id": class_id}, _run)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def join_class(self, actor: str, class_id: str) -> Member:
        def _run() -> Member:
            with self.store.transaction() as conn:
                if self.store.get_class(conn, class_id) is None:
                    raise NotFound()
                if self.store.member(conn, actor, class_id) is not None:
                    raise AlreadyEnrolled()
                member = Member(user_id=actor, class_id=class_id, role=self.default_role, owner=False)
                try:
                    self.store.insert_member(conn, member)
                except IntegrityError as exc:
                    # The unique (user, class) constraint backs up the check above.
                    raise AlreadyEnrolled() from exc
                return self.store.member(conn, actor, class_id)

        return self.hooks.run("join_class", actor, {"class_id": class_id}, _run)

    def leave_class(self, actor: str, class_id: str, user_id: Optional[str] = None) -> str:
        """Remove a membership and return the id of the user who was removed.

        user_id None (or the actor's own id) is a self-leave. Any other
        user_id is a forced removal, which only the owner may perform. Either
        way the owner's membership cannot be removed while they still own
        the class.
        """

        def _run() -> str:
            with self.store.transaction() as conn:
                me = self._require_member(conn, actor, class_id)
                if user_id is None or user_id == actor:
                    target = me
                else:
                    if not me.owner:
                        raise Forbidden()
                    target = self.store.member(conn, user_id, class_id)
                    if target is None:
                        raise NotFound()
                if target.owner:
                    raise MustReassignOwner()
                if not self.store.delete_member(conn, target.user_id, class_id):
                    raise NotFound()
                return target.user_id

        return self.hooks.run("leave_class", actor, {"class_id": class_id, "user_id": user_id}, _run)

    def set_role(self, actor: str, class_id: str, user_id: str, role: Role) -> Member:
        """Change a member's role. Owner only; the owner flag is left alone."""
        role = Role(role)

        def _run() -> Member:
            with self.store.transaction() as conn:
                self._require_owner(conn, actor, class_id)
                if not self.store.set_member_role(conn, user_id, class_id, role):
                    raise NotFound()
                return self.store.member(conn, user_id, class_id)

        return self.hooks.run(
            "set_role",
            actor,
            {"class_id": class_id, "user_id": user_id, "role": role.value},
            _run,
        )

    def transfer_ownership(self, actor: str, class_id: str, user_id: str) -> Member:
        """Make another member the owner; the actor stays on as a plain member."""

        def _run() -> Member:
            with self.store.transaction() as conn:
                me = self._require_owner(conn, actor, class_id)
                if user_id == actor:
                    return me
                if self.store.member(conn, user_id, class_id) is None:
                    raise NotFound()
                if not self.store.set_member_owner(conn, actor, class_id, False):
                    raise Forbidden()
                if not self.store.set_member_owner(conn, user_id, class_id, True):
                    raise NotFound()
                if self.store.count_owners(conn, class_id) != 1:
                    logger.error("ownership transfer on %s left the wrong number of owners", class_id)
                    raise InvariantViolation()
                return self.store.member(conn, user_id, class_id)

        return self.hooks.run("transfer_ownership", actor, {"class_id": class_id, "user_id": user_id}, _run)

    def list_members(self, actor: str, class_id: str) -> list[Member]:
        def _run() -> list[Member]:
            with self.store.transaction() as conn:
                self._require_member(conn, actor, class_id)
                return self.store.members_of_class(conn, class_id)

        return self.hooks.run("list_members", actor, {"class_id": class_id}, _run)

    def get_member(self, actor: str, class_id: str, user_id: str) -> Member:
        def _run() -> Member:
            with self.store.transaction() as conn:
                self._require_member(conn, actor, class_id)
                member = self.store.member(conn, user_id, class_id)
                if member is None:
                    raise NotFound()
                return member

        return self.hooks.run("get_member", actor, {"class_id": class_id, "user_id": user_id}, _run)

    # ------------------------------------------------------------------
    # Account deletion support (see auth.service.PrincipalService.delete_user)
    # ------------------------------------------------------------------

    def owned_class_ids(self, user_id: str, conn: Optional[Connection] = None) -> list[str]:
        with self.store.transaction(conn) as c:
            return self.store.class_ids_for_user(c, user_id, owner_only=True)

    def purge_memberships(self, user_id: str, conn: Connection) -> int:
        return self.store.delete_user_members(conn, user_id)
