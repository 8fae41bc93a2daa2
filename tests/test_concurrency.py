"""
tests/test_concurrency.py -- Concurrent writers against one SQLite file.

Every case lines up its threads on a Barrier and fires the same operation
at once, the way the FastAPI thread pool would under load. The stores share
one engine (services fixture) whose transactions start with BEGIN IMMEDIATE,
so the outcome must match some serial order of the calls.

Coverage:
  - concurrent transfers by the owner leave exactly one owner
  - a self-leave racing a transfer never leaves the class ownerless
  - concurrent registrations with one email create one active principal
  - concurrent joins by one user create one membership
  - distinct users joining at once on a dry-run scratch database all succeed
  - the owner flag only flips when it actually changes
  - pool choice for file and in-memory URLs
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace

import pytest
from sqlalchemy.pool import QueuePool, StaticPool

from api.main import wire_services
from core.config import get_settings
from core.db import make_engine, scratch_database_url
from core.errors import (
    AlreadyEnrolled,
    Forbidden,
    MustReassignOwner,
    NotFound,
    ServiceError,
    UserExists,
)


def _race(n: int, fn) -> list:
    """Run fn(0..n-1) on n threads released together; return results or raised ServiceErrors."""
    barrier = threading.Barrier(n)

    def _one(i: int):
        barrier.wait()
        try:
            return fn(i)
        except ServiceError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=n) as pool:
        return list(pool.map(_one, range(n)))


def _owners(services, class_id: str) -> int:
    store = services.class_store
    with store.transaction() as conn:
        return store.count_owners(conn, class_id)


class TestOwnership:
    def test_concurrent_transfers_leave_one_owner(self, services) -> None:
        engine = services.memberships
        cid = engine.create_class("alice", "Physics")
        targets = [f"user-{i}" for i in range(6)]
        for uid in targets:
            engine.join_class(uid, cid)

        results = _race(len(targets), lambda i: engine.transfer_ownership("alice", cid, targets[i]))

        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(r, Forbidden) for r in results if isinstance(r, Exception))
        assert _owners(services, cid) == 1
        roster = {m.user_id: m.owner for m in engine.list_members("alice", cid)}
        assert [uid for uid, owner in roster.items() if owner] == [winners[0].user_id]

    def test_leave_racing_transfer_keeps_an_owner(self, services) -> None:
        engine = services.memberships
        for _ in range(5):
            cid = engine.create_class("alice", "Physics")
            engine.join_class("bob", cid)

            calls = [
                lambda: engine.transfer_ownership("alice", cid, "bob"),
                lambda: engine.leave_class("bob", cid),
            ]
            transfer, leave = _race(2, lambda i: calls[i]())

            assert _owners(services, cid) == 1
            if isinstance(leave, str):
                # Bob left first, so there was nobody to hand the class to.
                assert isinstance(transfer, NotFound)
            else:
                assert isinstance(leave, MustReassignOwner)
                assert transfer.user_id == "bob"

    def test_owner_flag_only_flips_on_change(self, services) -> None:
        cid = services.memberships.create_class("alice", "Physics")
        store = services.class_store
        with store.transaction() as conn:
            assert store.set_member_owner(conn, "alice", cid, False) is True
            assert store.set_member_owner(conn, "alice", cid, False) is False
            assert store.set_member_owner(conn, "alice", cid, True) is True
            assert store.count_owners(conn, cid) == 1


class TestRegistration:
    def test_concurrent_registrations_with_one_email(self, services) -> None:
        principals = services.principals
        results = _race(6, lambda i: principals.create_user(f"Twin {i}", "twin@example.com", "correct horse"))

        created = [r for r in results if not isinstance(r, Exception)]
        assert len(created) == 1
        assert all(isinstance(r, UserExists) for r in results if isinstance(r, Exception))
        with services.engine.connect() as conn:
            active = conn.exec_driver_sql(
                "SELECT COUNT(*) FROM principals WHERE email = ? AND lifecycle = 'active'",
                ("twin@example.com",),
            ).scalar()
        assert active == 1
        assert services.principal_store.get_by_email("twin@example.com").id == created[0].id

    def test_rename_to_a_taken_email(self, services) -> None:
        principals = services.principals
        alice = principals.create_user("Alice", "alice@example.com", "correct horse")
        bob = principals.create_user("Bob", "bob@example.com", "correct horse")
        with pytest.raises(UserExists):
            principals.update_user(bob.id, email="ALICE@example.com")
        assert principals.get_user(alice.id).email == "alice@example.com"
        assert principals.get_user(bob.id).email == "bob@example.com"


class TestEnrollment:
    def test_concurrent_joins_by_one_user(self, services) -> None:
        engine = services.memberships
        cid = engine.create_class("alice", "Physics")

        results = _race(8, lambda i: engine.join_class("bob", cid))

        assert len([r for r in results if not isinstance(r, Exception)]) == 1
        assert all(isinstance(r, AlreadyEnrolled) for r in results if isinstance(r, Exception))
        assert [m.user_id for m in engine.list_members("alice", cid)] == ["alice", "bob"]

    def test_distinct_users_join_on_scratch_database(self, server, publisher) -> None:
        url, scratch = scratch_database_url()
        engine = make_engine(url)
        try:
            holder = SimpleNamespace(state=SimpleNamespace())
            wire_services(holder, engine, server, publisher, get_settings())
            memberships = holder.state.memberships
            cid = memberships.create_class("alice", "Physics")

            results = _race(8, lambda i: memberships.join_class(f"student-{i}", cid))

            assert not [r for r in results if isinstance(r, Exception)]
            assert len(memberships.list_members("alice", cid)) == 9
        finally:
            engine.dispose()
            scratch.cleanup()


class TestPools:
    def test_file_database_uses_a_queue_pool(self, tmp_path) -> None:
        engine = make_engine(f"sqlite:///{tmp_path / 'pool.db'}")
        assert isinstance(engine.pool, QueuePool)
        engine.dispose()

    def test_memory_database_uses_one_connection(self) -> None:
        engine = make_engine("sqlite:///:memory:")
        assert isinstance(engine.pool, StaticPool)
        engine.dispose()
