from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import TypeVar

from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .core.config import settings

T = TypeVar("T")

SessionFactory = Callable[[], AbstractContextManager[Session]]

# SQLSTATE codes for serialization failures and deadlocks on Postgres.
_CONFLICT_SQLSTATES = {"40001", "40P01"}


def _ensure_sqlite_path(url: str) -> None:
    if not url.startswith("sqlite"):
        return

    parsed = make_url(url)
    database = parsed.database
    if not database or database == ":memory:":
        return

    path = Path(database)
    path.parent.mkdir(parents=True, exist_ok=True)


def create_ledger_engine(url: str, *, echo: bool = False):
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {
        "echo": echo,
        "future": True,
        "pool_pre_ping": True,
    }

    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
        _ensure_sqlite_path(url)
    else:
        engine_kwargs["pool_recycle"] = 300
        if backend.startswith("postgresql"):
            # Ledger transitions rely on read-then-write isolation.
            engine_kwargs["isolation_level"] = "SERIALIZABLE"
            connect_args.setdefault("keepalives", 1)
            connect_args.setdefault("keepalives_idle", 120)

    if connect_args:
        engine_kwargs["connect_args"] = connect_args

    return create_engine(url, **engine_kwargs)


def create_session_maker(engine) -> sessionmaker[Session]:
    # Transition bodies return plain values, but keep loaded state usable after
    # commit so callers logging a record do not trigger a reload.
    return sessionmaker(
        bind=engine, autoflush=True, autocommit=False, expire_on_commit=False, future=True
    )


def make_session_scope(factory: sessionmaker[Session]) -> SessionFactory:
    @contextmanager
    def _scope() -> Iterator[Session]:
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _scope


engine = create_ledger_engine(settings.resolved_database_url, echo=settings.debug)
SessionLocal = create_session_maker(engine)
Base = declarative_base()

session_scope = make_session_scope(SessionLocal)


def is_write_conflict(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _CONFLICT_SQLSTATES:
        return True
    message = str(orig or exc).lower()
    return "database is locked" in message or "could not serialize" in message


def run_in_transaction(
    body: Callable[[Session], T],
    *,
    session_factory: SessionFactory | None = None,
    attempts: int | None = None,
    backoff: tuple[float, ...] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute ``body`` inside one transaction, re-running it on write conflicts.

    The body may run more than once, so it must not perform side effects
    outside the session it receives.
    """

    factory = session_factory or session_scope
    max_attempts = attempts or settings.db_retry_attempts
    schedule = backoff or settings.db_retry_backoff_schedule

    for attempt in range(1, max_attempts + 1):
        try:
            with factory() as session:
                return body(session)
        except DBAPIError as exc:
            if attempt >= max_attempts or not is_write_conflict(exc):
                raise
            delay = schedule[min(attempt - 1, len(schedule) - 1)]
            logger.warning(
                "Ledger transaction conflicted (attempt {}/{}); retrying in {}s",
                attempt,
                max_attempts,
                delay,
            )
            sleep(delay)

    raise RuntimeError("run_in_transaction exhausted without executing")  # pragma: no cover


def init_db(bind=None) -> None:
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
