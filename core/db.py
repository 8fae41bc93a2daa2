"""
core/db.py -- Engine construction shared by every store.

All stores in one process are built on one Engine (see api/main.py lifespan)
so that an operation touching principals and memberships can run in a
single transaction.

SQLite specifics:
  check_same_thread=False -- sync FastAPI routes run in a thread pool.
  timeout                 -- busy timeout; a writer blocked by another writer
                             gives up after this many seconds instead of
                             waiting forever.
  WAL journal mode        -- readers of committed data do not block behind a
                             writer. Skipped for in-memory databases.
  BEGIN IMMEDIATE         -- pysqlite's own transaction handling defers BEGIN
                             until the first write, so a SELECT that checks a
                             rule would run outside the transaction that
                             acts on it. The driver is put in autocommit mode
                             and every SQLAlchemy transaction starts with
                             BEGIN IMMEDIATE, which takes the write lock up
                             front. Check and write then see the same
                             snapshot and concurrent transactions queue on
                             the busy timeout.

Pools are chosen explicitly: QueuePool for file databases, StaticPool (one
connection) for in-memory ones. An in-memory engine is meant for scripts and
the REPL, not for a multi-threaded server; `serve --dry` uses a scratch file
instead (see scratch_database_url).
"""

import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool

logger = logging.getLogger("rollcall.db")


def _is_memory(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in db_url


def _install_sqlite_transactions(engine: Engine, wal: bool) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, connection_record) -> None:
        # Autocommit at the driver level; BEGIN is issued below instead.
        dbapi_conn.isolation_level = None
        if wal:
            dbapi_conn.execute("PRAGMA journal_mode=WAL")

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(db_url: str, timeout: float = 5.0) -> Engine:
    if not db_url.startswith("sqlite"):
        return create_engine(db_url, pool_pre_ping=True)

    connect_args: dict = {"check_same_thread": False, "timeout": timeout}
    if _is_memory(db_url):
        engine = create_engine(db_url, connect_args=connect_args, poolclass=StaticPool)
        _install_sqlite_transactions(engine, wal=False)
    else:
        engine = create_engine(db_url, connect_args=connect_args, poolclass=QueuePool)
        _install_sqlite_transactions(engine, wal=True)
    return engine


def scratch_database_url() -> tuple[str, tempfile.TemporaryDirectory]:
    """Return a URL for a throwaway SQLite file and the directory that holds it.

    The caller owns the directory and must call cleanup() on it after the
    engine has been disposed.
    """
    scratch = tempfile.TemporaryDirectory(prefix="rollcall-dry-")
    url = f"sqlite:///{Path(scratch.name) / 'rollcall.db'}"
    logger.info("dry run database at %s", url)
    return url, scratch


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
