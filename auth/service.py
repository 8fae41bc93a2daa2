"""
auth/service.py -- Principal operations: registration, profile, password, authentication, deletion.

Every public method runs through the HookChain so logging and deletion
propagation are applied around this one implementation instead of being
re-implemented in wrapper classes. The acting principal is always an
explicit argument.

Account deletion needs to know about class ownership, which lives in
classes/. To keep auth/ free of that import, the service accepts any object
with two methods (MembershipEngine provides both):

    owned_class_ids(user_id, conn=None) -> list[str]
    purge_memberships(user_id, conn) -> int

Both are called with the transaction that deactivates the principal, so the
ownership check and the purge see the same snapshot. The membership store
must therefore share the principal store's engine.

Layer rule: no imports from api/, web/, classes/, or bus/.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from auth.models import ACTIVE_ONLY, Lifecycle, Principal, Profile
from auth.store import PrincipalStore
from auth.tokens import burn_password_check, hash_password, verify_password
from core.errors import NotFound, OwnerCannotBeDeleted, WrongEmail, WrongPassword
from core.hooks import HookChain

logger = logging.getLogger("rollcall.auth.service")


class MembershipIndex(Protocol):
    def owned_class_ids(self, user_id: str, conn: Any = None) -> list[str]: ...

    def purge_memberships(self, user_id: str, conn: Any) -> int: ...


class PrincipalService:
    def __init__(
        self,
        store: PrincipalStore,
        hooks: HookChain | None = None,
        memberships: MembershipIndex | None = None,
    ) -> None:
        self.store = store
        self.hooks = hooks or HookChain()
        self.memberships = memberships

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_user(self, user_id: str) -> Principal:
        """Return a principal by id, including deactivated ones."""

        def _run() -> Principal:
            principal = self.store.get_by_id(user_id)
            if principal is None:
                raise NotFound()
            return principal

        return self.hooks.run("get_user", None, {"user_id": user_id}, _run)

    def get_profile(self, user_id: str) -> Profile:
        def _run() -> Profile:
            principal = self.store.get_by_id(user_id, ACTIVE_ONLY)
            if principal is None:
                raise NotFound()
            return Profile(name=principal.name)

        return self.hooks.run("get_profile", None, {"user_id": user_id}, _run)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, name: str, email: str, password: str) -> Principal:
        """Register a new active principal with a local password.

        Hashing happens before the transaction opens, so a HashingFailure
        leaves nothing behind; a duplicate email raises UserExists.
        """

        def _run() -> Principal:
            hashed = hash_password(password)
            principal_id = self.store.create_principal(
                Principal(name=name.strip(), email=email), hashed_password=hashed
            )
            return self.store.get_by_id(principal_id)

        return self.hooks.run("create_user", None, {"email": email.strip().lower()}, _run)

    def update_user(self, actor: str, name: str | None = None, email: str | None = None) -> Principal:
        return self.hooks.run(
            "update_user",
            actor,
            {"name": name, "email": email},
            lambda: self.store.update_principal(actor, name=name, email=email),
        )

    def set_password(self, actor: str, password: str) -> None:
        def _run() -> None:
            if self.store.get_by_id(actor, ACTIVE_ONLY) is None:
                raise NotFound()
            self.store.upsert_credential(actor, hash_password(password))

        self.hooks.run("set_password", actor, {}, _run)

    def authenticate(self, email: str, password: str) -> Principal:
        """Verify an email/password pair.

        Raises WrongEmail when no active principal has the email and
        WrongPassword when the password does not match (or the principal
        has no local credential). bcrypt runs on every path so the two
        failures take the same time.
        """

        def _run() -> Principal:
            principal = self.store.get_by_email(email, ACTIVE_ONLY)
            if principal is None:
                burn_password_check(password)
                raise WrongEmail()
            hashed = self.store.get_credential(principal.id)
            if hashed is None:
                burn_password_check(password)
                raise WrongPassword()
            if not verify_password(password, hashed):
                raise WrongPassword()
            return principal

        return self.hooks.run("authenticate", None, {"email": email.strip().lower()}, _run)

    def delete_user(self, actor: str) -> None:
        """Deactivate the actor's account.

        Fails with OwnerCannotBeDeleted while the actor owns an active class,
        since removing the owner would leave that class without one. The
        deactivation and the removal of the actor's memberships commit in one
        transaction.
        """

        def _run() -> None:
            with self.store.engine.begin() as conn:
                if self.memberships is not None and self.memberships.owned_class_ids(actor, conn=conn):
                    raise OwnerCannotBeDeleted()
                # Unknown, or deactivated by a concurrent request.
                if not self.store.set_lifecycle(actor, Lifecycle.DEACTIVATED, conn=conn):
                    raise NotFound()
                if self.memberships is not None:
                    removed = self.memberships.purge_memberships(actor, conn)
                    logger.info("deactivated %s, removed %d memberships", actor, removed)

        self.hooks.run("delete_user", actor, {"user_id": actor}, _run)
