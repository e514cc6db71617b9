"""Database engine, session scope and dialect helpers."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
import logging
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy import Engine, Table, create_engine, event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from librarysync.config import DatabaseConfig, _as_bool, get_env, get_runtime_env


class Base(DeclarativeBase):
    pass


metadata = Base.metadata


_engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None
_initializing_db = False

_logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionCallable = Callable[[Session], T]
SessionFactory = Callable[[], AbstractContextManager[Session]]

SQLITE_BUSY_TIMEOUT_S = 30


def _synchronous_url(url: URL) -> URL:
    driver = url.drivername.lower()
    if driver in {"sqlite", "sqlite+aiosqlite"}:
        return url.set(drivername="sqlite+pysqlite")
    return url


def _database_file_path(url: URL) -> Path | None:
    if not url.drivername.startswith("sqlite"):
        return None
    database = url.database
    if not database or database == ":memory:":
        return None
    path = Path(database)
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    return path


def _configure_sqlite_connection(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_S * 1000}")
    finally:
        cursor.close()


def _build_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    sync_url = _synchronous_url(url)
    connect_args: dict[str, object] = {}
    is_sqlite = sync_url.drivername.startswith("sqlite")
    if is_sqlite:
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT_S
    engine = create_engine(sync_url, future=True, connect_args=connect_args)
    if is_sqlite:
        event.listen(engine, "connect", _configure_sqlite_connection)
    return engine


def _dispose_engine() -> None:
    global _engine, SessionLocal

    if _engine is not None:
        _engine.dispose()

    _engine = None
    SessionLocal = None


def _ensure_engine(*, auto_init: bool = True) -> None:
    global _engine, SessionLocal

    database_url = DatabaseConfig.from_env(get_runtime_env()).url
    target_url = _synchronous_url(make_url(database_url)).render_as_string(hide_password=False)

    if _engine is not None and _engine.url.render_as_string(hide_password=False) == target_url:
        return

    _dispose_engine()

    path = _database_file_path(make_url(database_url))
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)

    _engine = _build_engine(database_url)
    SessionLocal = sessionmaker(
        bind=_engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )

    if auto_init and not _initializing_db:
        init_db()


def get_engine() -> Engine:
    if _engine is None:
        _ensure_engine()
    if _engine is None:
        raise RuntimeError("Database engine is not initialized.")
    return _engine


def get_session() -> Session:
    if SessionLocal is None:
        _ensure_engine()
    if SessionLocal is None:
        raise RuntimeError("Database session factory is not initialized.")
    return SessionLocal()


@contextmanager
def session_scope() -> Iterator[Session]:
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def joined_scope(session: Session | None) -> Iterator[Session]:
    """Reuse ``session`` when given, otherwise open a committing scope."""

    if session is not None:
        yield session
        return
    with session_scope() as owned:
        yield owned


def upsert(session: Session, table: Table) -> Any:
    """Return a dialect ``INSERT`` supporting ``on_conflict_do_update``."""

    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise RuntimeError(f"Upserts are not supported for dialect {dialect!r}")


def init_db() -> None:
    """Create the schema, optionally resetting a SQLite file when ``DB_RESET`` is set."""

    global _initializing_db

    if _initializing_db:
        return

    _initializing_db = True
    try:
        database_url = DatabaseConfig.from_env(get_runtime_env()).url
        if _as_bool(get_env("DB_RESET")):
            _logger.info("DB_RESET requested; refreshing database file")
            _dispose_engine()
            path = _database_file_path(make_url(database_url))
            if path is not None and path.exists():
                path.unlink()

        _ensure_engine(auto_init=False)
        if _engine is None:
            raise RuntimeError("Database engine was not initialised before bootstrap.")

        from librarysync import models  # noqa: F401

        Base.metadata.create_all(bind=_engine, checkfirst=True)
        _logger.info("Database schema ready", extra={"event": "database.bootstrap"})
    finally:
        _initializing_db = False


def reset_engine_for_tests() -> None:
    """Reset the cached engine/session so tests get a clean database handle."""

    global _initializing_db

    _dispose_engine()
    _initializing_db = False


def _call_with_session(func: SessionCallable[T], *, factory: SessionFactory | None = None) -> T:
    context = factory() if factory is not None else session_scope()
    with context as session:
        return func(session)


async def run_session(func: SessionCallable[T], *, factory: SessionFactory | None = None) -> T:
    """Execute ``func`` with a database session in a worker thread."""

    return await asyncio.to_thread(_call_with_session, func, factory=factory)


__all__ = [
    "Base",
    "metadata",
    "get_engine",
    "get_session",
    "init_db",
    "joined_scope",
    "reset_engine_for_tests",
    "run_session",
    "session_scope",
    "upsert",
]
