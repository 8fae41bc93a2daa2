"""
auth/store.py -- SQLAlchemy Core persistence layer for principals and credentials.

Pattern: Repository + Data Mapper. PrincipalStore is the repository;
_row_to_principal is the mapper. Service and route code never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Email uniqueness applies to ACTIVE principals only: a deactivated
  principal keeps its email for audit purposes, yet the address must be
  reusable by a new registration. The check and the insert share one
  transaction, and a partial unique index on (email) WHERE lifecycle =
  'active' rejects whatever slips past the check; that IntegrityError is
  reported as UserExists.

  The credentials table holds only a bcrypt hash, one row per principal.
  The hash is never returned outside auth/.

Shared engine: the classes/ store may be built on the same engine so that
account deletion can deactivate the principal and purge memberships in one
transaction (see PrincipalService.delete_user).

Layer rule: no imports from api/, web/, classes/, or bus/.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable

from sqlalchemy import Column, Index, MetaData, String, Table, Text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import ACTIVE_ONLY, ALL_LIFECYCLES, Lifecycle, Principal
from core.db import make_engine, now_iso
from core.errors import NotFound, UserExists

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_principals = Table(
    "principals",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False, index=True),  # lowercased
    Column("lifecycle", String(16), nullable=False, server_default=Lifecycle.ACTIVE.value),
    Column("created_at", String(32), nullable=False),
)

Index(
    "uq_principals_active_email",
    _principals.c.email,
    unique=True,
    sqlite_where=_principals.c.lifecycle == Lifecycle.ACTIVE.value,
    postgresql_where=_principals.c.lifecycle == Lifecycle.ACTIVE.value,
)

_credentials = Table(
    "credentials",
    _metadata,
    Column("principal_id", String(36), primary_key=True),
    Column("password_hash", Text, nullable=False),
    Column("updated_at", String(32), nullable=False),
)


def _states(lifecycles: Iterable[Lifecycle]) -> list[str]:
    return [lc.value for lc in lifecycles]


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for Principal records and their credential hashes.

    Usage:
        store = PrincipalStore("sqlite:///:memory:")
        pid = store.create_principal(Principal(name="Alice", email="a@x.com"), hashed_password=h)
        principal = store.get_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None, engine: Engine | None = None, timeout: float = 5.0) -> None:
        if engine is None:
            if db_url is None:
                raise ValueError("PrincipalStore needs a db_url or an engine")
            engine = make_engine(db_url, timeout)
        self.engine: Engine = engine
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Principal queries
    # ------------------------------------------------------------------

    def create_principal(self, principal: Principal, hashed_password: str | None = None) -> str:
        """Insert a principal (and optionally its credential) and return its id.

        Raises UserExists if an ACTIVE principal already uses the email.
        The duplicate check, principal insert and credential insert commit
        together or not at all.
        """
        email = principal.email.strip().lower()
        principal_id = principal.id or str(uuid.uuid4())
        with self.engine.begin() as conn:
            if self._find_by_email(conn, email, ACTIVE_ONLY) is not None:
                raise UserExists()
            now = now_iso()
            try:
                conn.execute(
                    _principals.insert().values(
                        id=principal_id,
                        name=principal.name,
                        email=email,
                        lifecycle=principal.lifecycle.value,
                        created_at=now,
                    )
                )
            except IntegrityError as exc:
                raise UserExists() from exc
            if hashed_password is not None:
                conn.execute(
                    _credentials.insert().values(
                        principal_id=principal_id,
                        password_hash=hashed_password,
                        updated_at=now,
                    )
                )
        return principal_id

    def get_by_id(self, principal_id: str, lifecycles: Iterable[Lifecycle] = ALL_LIFECYCLES) -> Principal | None:
        """Look up a principal by id. Deactivated principals are included by default."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where(
                    (_principals.c.id == principal_id) & (_principals.c.lifecycle.in_(_states(lifecycles)))
                )
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_email(self, email: str, lifecycles: Iterable[Lifecycle] = ACTIVE_ONLY) -> Principal | None:
        """Look up a principal by email (case-insensitive). Active principals only by default."""
        with self.engine.connect() as conn:
            return self._find_by_email(conn, email.strip().lower(), lifecycles)

    def _find_by_email(self, conn: Connection, email: str, lifecycles: Iterable[Lifecycle]) -> Principal | None:
        row = conn.execute(
            _principals.select()
            .where((_principals.c.email == email) & (_principals.c.lifecycle.in_(_states(lifecycles))))
            .order_by(_principals.c.created_at.desc())
        ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def update_principal(self, principal_id: str, name: str | None = None, email: str | None = None) -> Principal:
        """Update name and/or email of an active principal.

        Raises NotFound for unknown or deactivated principals and UserExists
        when the new email belongs to another active principal.
        """
        with self.engine.begin() as conn:
            current = conn.execute(
                _principals.select().where(
                    (_principals.c.id == principal_id) & (_principals.c.lifecycle == Lifecycle.ACTIVE.value)
                )
            ).fetchone()
            if current is None:
                raise NotFound()
            values: dict = {}
            if name is not None:
                values["name"] = name
            if email is not None:
                email = email.strip().lower()
                if email != current.email:
                    other = self._find_by_email(conn, email, ACTIVE_ONLY)
                    if other is not None and other.id != principal_id:
                        raise UserExists()
                    values["email"] = email
            if values:
                try:
                    conn.execute(_principals.update().where(_principals.c.id == principal_id).values(**values))
                except IntegrityError as exc:
                    raise UserExists() from exc
            row = conn.execute(_principals.select().where(_principals.c.id == principal_id)).fetchone()
        return _row_to_principal(row)

    def set_lifecycle(self, principal_id: str, lifecycle: Lifecycle, conn: Connection | None = None) -> bool:
        """Move a principal to the given lifecycle state.

        Pass conn to join an enclosing transaction. Returns True only if the
        state actually changed.
        """
        stmt = (
            _principals.update()
            .where((_principals.c.id == principal_id) & (_principals.c.lifecycle != lifecycle.value))
            .values(lifecycle=lifecycle.value)
        )
        if conn is not None:
            return conn.execute(stmt).rowcount > 0
        with self.engine.begin() as own:
            return own.execute(stmt).rowcount > 0

    # ------------------------------------------------------------------
    # Credential queries
    # ------------------------------------------------------------------

    def get_credential(self, principal_id: str) -> str | None:
        """Return the stored password hash, or None when the principal has no local credential."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _credentials.select().where(_credentials.c.principal_id == principal_id)
            ).fetchone()
        return row.password_hash if row is not None else None

    def upsert_credential(self, principal_id: str, password_hash: str) -> None:
        """Insert or replace the credential hash for a principal."""
        now = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _credentials.update()
                .where(_credentials.c.principal_id == principal_id)
                .values(password_hash=password_hash, updated_at=now)
            )
            if result.rowcount == 0:
                conn.execute(
                    _credentials.insert().values(
                        principal_id=principal_id,
                        password_hash=password_hash,
                        updated_at=now,
                    )
                )

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        name=row.name,
        email=row.email,
        lifecycle=Lifecycle(row.lifecycle),
        created_at=row.created_at,
    )
