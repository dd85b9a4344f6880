"""
Module: reco_kernel.db.engine
Responsibility: Build the SQLAlchemy engine for the reconciliation store,
    hold the process-wide engine and session factory, and provide the
    commit-or-rollback session scope every save batch runs in.
Architecture position: Kernel > DB.  May import from db/base.py.
    MUST NOT import from services/, selectors/, domain/, or outer layers
    (except create_tables/drop_tables which import models).
Invariants enforced:
    - PostgreSQL runs on a pre-pinged QueuePool at READ COMMITTED with a
      server-side statement timeout.  View builds are single long reads;
      the timeout is how a runaway filter gets cut off.
    - In-memory SQLite shares one connection (StaticPool) so every session
      and every thread sees the same database.  File SQLite keeps the
      default pool.
Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory is called
      before init_engine() / init_engine_from_url().
    - ValueError from DatabaseSettings.from_env on a non-numeric timeout.
Audit relevance:
    session_scope() gives atomic commit-or-rollback semantics; every save
    batch of the persister runs inside exactly one such scope.
"""

import os
from collections.abc import Generator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from reco_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

DEFAULT_DATABASE_URL = "sqlite://"

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


@dataclass(frozen=True)
class DatabaseSettings:
    """
    Connection settings for the reconciliation store.

    Pool and timeout values apply to PostgreSQL only.
    """

    url: str = DEFAULT_DATABASE_URL
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    statement_timeout_ms: int | None = 60_000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "DatabaseSettings":
        """
        Read ``RECO_DATABASE_URL``, ``RECO_DATABASE_ECHO`` and
        ``RECO_DATABASE_STATEMENT_TIMEOUT_MS`` (0 disables the timeout).
        """
        env = os.environ if environ is None else environ
        settings = cls(url=env.get("RECO_DATABASE_URL", DEFAULT_DATABASE_URL))
        if "RECO_DATABASE_ECHO" in env:
            settings = replace(settings, echo=env["RECO_DATABASE_ECHO"].strip().lower() in ("1", "true", "yes"))
        if "RECO_DATABASE_STATEMENT_TIMEOUT_MS" in env:
            timeout = int(env["RECO_DATABASE_STATEMENT_TIMEOUT_MS"])
            settings = replace(settings, statement_timeout_ms=timeout or None)
        return settings

    @property
    def backend(self) -> str:
        return make_url(self.url).get_backend_name()

    @property
    def is_memory_sqlite(self) -> bool:
        url = make_url(self.url)
        return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def build_engine(settings: DatabaseSettings) -> Engine:
    """Create an engine for ``settings`` without touching module state."""
    if settings.backend == "sqlite":
        options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if settings.is_memory_sqlite:
            options["poolclass"] = StaticPool
        return create_engine(settings.url, echo=settings.echo, **options)

    connect_args: dict[str, Any] = {}
    if settings.statement_timeout_ms:
        connect_args["options"] = f"-c statement_timeout={settings.statement_timeout_ms}"
    return create_engine(
        settings.url,
        echo=settings.echo,
        poolclass=QueuePool,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_pre_ping=True,
        pool_timeout=settings.pool_timeout,
        pool_recycle=settings.pool_recycle,
        isolation_level="READ COMMITTED",
        connect_args=connect_args,
    )


def init_engine(settings: DatabaseSettings) -> Engine:
    """
    Build the process-wide engine and session factory.

    A second call replaces the first; the previous engine is disposed.
    Sessions do not expire on commit: DTOs are read from committed rows
    after the scope closes.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
    _engine = build_engine(settings)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={
            "dialect": _engine.dialect.name,
            "pool": type(_engine.pool).__name__,
            "statement_timeout_ms": settings.statement_timeout_ms if settings.backend != "sqlite" else None,
        },
    )
    return _engine


def init_engine_from_url(database_url: str, **overrides: Any) -> Engine:
    """``init_engine`` for a URL; keyword overrides map onto DatabaseSettings fields."""
    return init_engine(DatabaseSettings(url=database_url, **overrides))


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """
    The shared session factory.

    Services receive the factory rather than a session because each save
    batch and each change-log session owns its own transaction.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine() first.")
    return _SessionFactory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope(
    factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """
    One transaction: commit on normal exit, roll back and re-raise on error.

    Usage:
        with session_scope(factory) as session:
            persister.save_batch(session, records, actor)
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables() -> None:
    """Create every table registered by reco_kernel.models on the current engine."""
    from reco_kernel.db.base import Base
    import reco_kernel.models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(get_engine())


def drop_tables() -> None:
    """Drop every reconciliation table.  For tests."""
    from reco_kernel.db.base import Base
    import reco_kernel.models  # noqa: F401

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory.  For tests."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
        _engine = None
    _SessionFactory = None
