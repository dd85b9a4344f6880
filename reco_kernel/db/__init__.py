"""Database layer - engine settings, declarative base, column types."""

from reco_kernel.db.base import Base, UTCDateTime
from reco_kernel.db.engine import (
    DatabaseSettings,
    build_engine,
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine,
    init_engine_from_url,
    session_scope,
)

__all__ = [
    "Base",
    "DatabaseSettings",
    "UTCDateTime",
    "build_engine",
    "create_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_engine",
    "init_engine_from_url",
    "session_scope",
]
