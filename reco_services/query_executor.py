"""
reco_services.query_executor -- The query-execution collaborator.

Responsibility:
    Run one statement and hand back plain row mappings.  The view
    assembler depends on the ``QueryExecutor`` protocol only, so tests can
    count or stall executions without a database double.

Architecture position:
    Services -- thin adapter over a SQLAlchemy ``Engine``.  Timeouts and
    connection policy belong to the engine configuration, not to callers.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from sqlalchemy import Engine
from sqlalchemy.sql import Executable


class QueryExecutor(Protocol):
    """``execute_query(statement, params) -> list[dict]``."""

    def execute_query(
        self,
        statement: Executable,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]: ...


class SqlAlchemyQueryExecutor:
    """
    ``QueryExecutor`` over a SQLAlchemy engine.

    Each call checks out one connection, runs one statement and fully
    materializes the result before returning.
    """

    def __init__(self, engine: Engine):
        self._engine = engine

    def execute_query(
        self,
        statement: Executable,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        with self._engine.connect() as conn:
            result = conn.execute(statement, dict(params or {}))
            return [dict(row) for row in result.mappings()]
