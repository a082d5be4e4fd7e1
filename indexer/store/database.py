"""
Database access for the indexer.

One event is processed in one transaction. Writes use row-level upserts
(INSERT ... ON CONFLICT) and row locks so that chains can be processed
concurrently without any process-wide lock.

SQLite has neither row locks nor SELECT ... FOR UPDATE; transactions there
start with BEGIN IMMEDIATE so concurrent writers queue on the database lock
instead of failing when a reader upgrades to a writer.
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

log = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///bmn_indexer.db"

# Seconds a SQLite writer waits for the database lock
SQLITE_BUSY_TIMEOUT = 30


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def _enable_begin_immediate(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine, applying the SQLite transaction recipe when needed."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}}
        if _is_memory_sqlite(url):
            # Single shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
        _enable_begin_immediate(engine)
        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True)


class Database:
    """
    Engine + session factory.

    Usage:
        db = Database("sqlite:///bmn_indexer.db")
        db.create_all()
        with db.transaction() as session:
            ...
    """

    def __init__(self, url: str = DEFAULT_DATABASE_URL, echo: bool = False):
        self.url = url
        self.engine = create_db_engine(url, echo=echo)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_all(self) -> None:
        """Create missing tables."""
        Base.metadata.create_all(self.engine)
        log.info(f"Database ready ({self.dialect}): {self.engine.url.render_as_string(hide_password=True)}")

    def session(self) -> Session:
        return self._sessions()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session inside a transaction: committed on success, rolled back on error."""
        with self._sessions.begin() as session:
            yield session

    def dispose(self) -> None:
        self.engine.dispose()


def insert_for(session: Session, table):
    """
    Dialect-specific INSERT for `table`, supporting on_conflict_do_nothing().

    Raises:
        RuntimeError: backend without ON CONFLICT support
    """
    table = getattr(table, "__table__", table)
    name = session.get_bind().dialect.name
    if name == "sqlite":
        return sqlite.insert(table)
    if name == "postgresql":
        return postgresql.insert(table)
    raise RuntimeError(f"Unsupported database backend: {name}")


def insert_ignore(session: Session, table, values: dict) -> bool:
    """
    INSERT ... ON CONFLICT DO NOTHING.

    Returns:
        True if the row was inserted, False if it already existed
    """
    stmt = insert_for(session, table).values(**values).on_conflict_do_nothing()
    result = session.execute(stmt)
    return result.rowcount == 1
