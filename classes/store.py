"""
classes/store.py -- SQLAlchemy Core persistence for classes and members.

Pattern: Repository + Data Mapper, like auth/store.py. Unlike the principal
store, most methods take an open Connection: the membership engine opens one
transaction per operation and performs its authorization checks and its
writes through the same connection, so a check can never be invalidated by
a concurrent write before the guarded mutation commits.

    with store.transaction() as conn:
        actor = store.member(conn, actor_id, class_id)
        ...
        store.delete_member(conn, target_id, class_id)

The (user_id, class_id) pair is unique at the database level as well as in
code, and a partial unique index allows at most one owner row per class.
"Exactly one owner per active class" is kept by the engine, which only ever
moves the owner flag inside a single transaction.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, UniqueConstraint, func, select
from sqlalchemy.engine import Connection, Engine

from classes.models import Member, Role, SchoolClass
from core.db import make_engine, now_iso
from core.models import ACTIVE_ONLY, Lifecycle

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_classes = Table(
    "classes",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("lifecycle", String(16), nullable=False, server_default=Lifecycle.ACTIVE.value),
    Column("current_unit", String(36)),
    Column("created_at", String(32), nullable=False),
)

_members = Table(
    "members",
    metadata,
    Column("user_id", String(36), nullable=False),
    Column("class_id", String(36), nullable=False, index=True),
    Column("role", String(30), nullable=False, server_default=Role.STUDENT.value),
    Column("owner", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("joined_at", String(32), nullable=False),
    UniqueConstraint("user_id", "class_id", name="uq_member_user_class"),
)

# At most one owner row per class.
Index(
    "uq_members_one_owner",
    _members.c.class_id,
    unique=True,
    sqlite_where=_members.c.owner == 1,
    postgresql_where=_members.c.owner == 1,
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ClassStore:
    """Repository for SchoolClass and Member rows.

    Usage:
        store = ClassStore(engine=principal_store.engine)
        with store.transaction() as conn:
            class_id = store.insert_class(conn, SchoolClass(name="Physics"))
            store.insert_member(conn, Member(user_id=uid, class_id=class_id, owner=True))
    """

    def __init__(self, db_url: Optional[str] = None, engine: Optional[Engine] = None, timeout: float = 5.0) -> None:
        if engine is None:
            if db_url is None:
                raise ValueError("ClassStore needs a db_url or an engine")
            engine = make_engine(db_url, timeout)
        self.engine: Engine = engine
        metadata.create_all(self.engine)

    @contextmanager
    def transaction(self, conn: Optional[Connection] = None) -> Iterator[Connection]:
        """Yield a connection inside a transaction; join `conn` if one is already open."""
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as own:
            yield own

    # ------------------------------------------------------------------
    # Classes
    # ------------------------------------------------------------------

    def insert_class(self, conn: Connection, school_class: SchoolClass) -> str:
        class_id = school_class.id or str(uuid.uuid4())
        conn.execute(
            _classes.insert().values(
                id=class_id,
                name=school_class.name,
                lifecycle=school_class.lifecycle.value,
                current_unit=school_class.current_unit,
                created_at=now_iso(),
            )
        )
        return class_id

    def get_class(self, conn: Connection, class_id: str, lifecycles=ACTIVE_ONLY) -> Optional[SchoolClass]:
        row = conn.execute(
            _classes.select().where(
                (_classes.c.id == class_id) & (_classes.c.lifecycle.in_([lc.value for lc in lifecycles]))
            )
        ).fetchone()
        return _row_to_class(row) if row is not None else None

    def update_class(self, conn: Connection, class_id: str, **fields) -> bool:
        """Update name and/or current_unit. Returns True if a row changed."""
        if not fields:
            return False
        result = conn.execute(_classes.update().where(_classes.c.id == class_id).values(**fields))
        return result.rowcount > 0

    def deactivate_class(self, conn: Connection, class_id: str) -> bool:
        result = conn.execute(
            _classes.update().where(_classes.c.id == class_id).values(lifecycle=Lifecycle.DEACTIVATED.value)
        )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def member(self, conn: Connection, user_id: str, class_id: str) -> Optional[Member]:
        """Return the (user, class) membership row, or None."""
        row = conn.execute(
            _members.select().where((_members.c.user_id == user_id) & (_members.c.class_id == class_id))
        ).fetchone()
        return _row_to_member(row) if row is not None else None

    def insert_member(self, conn: Connection, member: Member) -> None:
        conn.execute(
            _members.insert().values(
                user_id=member.user_id,
                class_id=member.class_id,
                role=member.role.value,
                owner=1 if member.owner else 0,
                joined_at=now_iso(),
            )
        )

    def set_member_role(self, conn: Connection, user_id: str, class_id: str, role: Role) -> bool:
        result = conn.execute(
            _members.update()
            .where((_members.c.user_id == user_id) & (_members.c.class_id == class_id))
            .values(role=role.value)
        )
        return result.rowcount > 0

    def set_member_owner(self, conn: Connection, user_id: str, class_id: str, owner: bool) -> bool:
        """Flip the owner flag. Returns False unless the flag actually changed."""
        result = conn.execute(
            _members.update()
            .where(
                (_members.c.user_id == user_id)
                & (_members.c.class_id == class_id)
                & (_members.c.owner == (0 if owner else 1))
            )
            .values(owner=1 if owner else 0)
        )
        return result.rowcount > 0

    def delete_member(self, conn: Connection, user_id: str, class_id: str) -> bool:
        result = conn.execute(
            _members.delete().where((_members.c.user_id == user_id) & (_members.c.class_id == class_id))
        )
        return result.rowcount > 0

    def delete_class_members(self, conn: Connection, class_id: str) -> int:
        return conn.execute(_members.delete().where(_members.c.class_id == class_id)).rowcount

    def delete_user_members(self, conn: Connection, user_id: str) -> int:
        return conn.execute(_members.delete().where(_members.c.user_id == user_id)).rowcount

    def members_of_class(self, conn: Connection, class_id: str) -> list[Member]:
        rows = conn.execute(
            _members.select()
            .where(_members.c.class_id == class_id)
            .order_by(_members.c.owner.desc(), _members.c.joined_at, _members.c.user_id)
        ).fetchall()
        return [_row_to_member(r) for r in rows]

    def class_ids_for_user(self, conn: Connection, user_id: str, owner_only: bool = False) -> list[str]:
        """Active classes the user belongs to (or owns), oldest membership first."""
        query = (
            select(_members.c.class_id)
            .select_from(_members.join(_classes, _classes.c.id == _members.c.class_id))
            .where((_members.c.user_id == user_id) & (_classes.c.lifecycle == Lifecycle.ACTIVE.value))
            .order_by(_members.c.joined_at)
        )
        if owner_only:
            query = query.where(_members.c.owner == 1)
        return [row.class_id for row in conn.execute(query).fetchall()]

    def count_owners(self, conn: Connection, class_id: str) -> int:
        return conn.execute(
            select(func.count()).select_from(_members).where(
                (_members.c.class_id == class_id) & (_members.c.owner == 1)
            )
        ).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_class(row) -> SchoolClass:
    return SchoolClass(
        id=row.id,
        name=row.name,
        lifecycle=Lifecycle(row.lifecycle),
        current_unit=row.current_unit,
        created_at=row.created_at,
    )


def _row_to_member(row) -> Member:
    return Member(
        user_id=row.user_id,
        class_id=row.class_id,
        role=Role(row.role),
        owner=bool(row.owner),
        joined_at=row.joined_at,
    )
