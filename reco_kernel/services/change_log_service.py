"""
ChangeLogService -- append-only journal of reconciliation writes.

Responsibility:
    Records every non-NOOP save (``INSERT`` / ``UPDATE(cols)``) so the sync
    side can replay partial updates.  A change-log session buffers entries
    in memory and writes them in one short transaction on ``commit()``.

Architecture position:
    Kernel > Services.  Unlike flush-only kernel services, a change-log
    session owns its transaction: it runs *after* the save batch committed,
    and its failure must not undo the save.

Failure modes:
    - ``commit()`` propagates database errors to the caller.  The service
      layer treats these as best-effort failures (logged, swallowed).

Usage:
    session = change_log.begin_session("FR")
    session.add("reconciliations", "L-1", "UPDATE(comments,modified_by,last_modified)")
    session.commit()
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from reco_kernel.db.engine import session_scope
from reco_kernel.domain.clock import Clock, SystemClock
from reco_kernel.logging_config import get_logger
from reco_kernel.models.change_log import ChangeLogEntryModel

logger = get_logger("services.change_log")


@dataclass(frozen=True)
class ChangeLogRecord:
    """A journaled write as seen by the sync side."""

    change_id: int
    country_id: str
    table_name: str
    record_id: str
    operation: str
    timestamp: datetime
    synchronized: bool


class ChangeLogSession:
    """
    Buffered change-log writer for one country.

    Contract:
        ``add`` only buffers.  ``commit`` writes all buffered entries in one
        transaction and clears the buffer; calling it with nothing buffered
        is a no-op.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        country_id: str,
        clock: Clock,
    ):
        self._session_factory = session_factory
        self._country_id = country_id
        self._clock = clock
        self._pending: list[tuple[str, str, str]] = []

    @property
    def country_id(self) -> str:
        return self._country_id

    def add(self, table_name: str, record_id: str, operation: str) -> None:
        self._pending.append((table_name, record_id, operation))

    def commit(self) -> int:
        """Write buffered entries; return how many were written."""
        if not self._pending:
            return 0
        now = self._clock.now()
        entries = [
            ChangeLogEntryModel(
                country_id=self._country_id,
                table_name=table_name,
                record_id=record_id,
                operation=operation,
                timestamp=now,
                synchronized=False,
            )
            for table_name, record_id, operation in self._pending
        ]
        with session_scope(self._session_factory) as session:
            session.add_all(entries)
        written = len(entries)
        self._pending.clear()
        logger.debug(
            "change_log_committed",
            extra={"country_id": self._country_id, "entries": written},
        )
        return written


class ChangeLogService:
    """
    Factory for change-log sessions plus the sync-side read/acknowledge API.

    Contract:
        ``begin_session(country)`` returns an object exposing
        ``add(table, id, op)`` and ``commit()``.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def begin_session(self, country_id: str) -> ChangeLogSession:
        return ChangeLogSession(self._session_factory, country_id, self._clock)

    def pending(self, country_id: str) -> list[ChangeLogRecord]:
        """Entries not yet acknowledged by the sync side, oldest first."""
        with session_scope(self._session_factory) as session:
            stmt = (
                select(ChangeLogEntryModel)
                .where(
                    ChangeLogEntryModel.country_id == country_id,
                    ChangeLogEntryModel.synchronized.is_(False),
                )
                .order_by(ChangeLogEntryModel.change_id)
            )
            return [
                ChangeLogRecord(
                    change_id=m.change_id,
                    country_id=m.country_id,
                    table_name=m.table_name,
                    record_id=m.record_id,
                    operation=m.operation,
                    timestamp=m.timestamp,
                    synchronized=m.synchronized,
                )
                for m in session.scalars(stmt)
            ]

    def mark_synchronized(self, change_ids: Iterable[int]) -> int:
        ids = list(change_ids)
        if not ids:
            return 0
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(ChangeLogEntryModel)
                .where(ChangeLogEntryModel.change_id.in_(ids))
                .values(synchronized=True)
            )
            return result.rowcount
