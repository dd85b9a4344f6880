"""
reco_services.persister -- Diff-aware persistence of reconciliation records.

Responsibility:
    Save candidate reconciliation records so that only columns that really
    changed are written, and describe each save as ``INSERT``,
    ``UPDATE(cols)`` or ``NOOP`` for the change-log/sync side.

Architecture position:
    Services -- flush-only over a caller-owned ``Session``.  The caller
    (``ReconciliationService.save``) owns the transaction, so every record
    of one batch commits or rolls back together.

Invariants enforced:
    - NOOP: a record equal to its stored row (null-aware) writes nothing,
      audit columns included.
    - UPDATE: only changed business columns are assigned, plus
      ``modified_by``/``last_modified``; the descriptor names exactly those.
    - INSERT: ``creation_date`` is stamped when absent; all columns written.
    - The candidate record is stamped with the audit values that were
      written, so a cache patched from it matches the database.

Failure modes:
    - Database errors propagate from ``flush``; the caller rolls back.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from reco_kernel.domain.clock import Clock, SystemClock
from reco_kernel.domain.dtos import (
    BOOLEAN_FIELDS,
    RECONCILIATION_BUSINESS_FIELDS,
    ChangeDescriptor,
    Reconciliation,
)
from reco_kernel.logging_config import get_logger
from reco_kernel.models.reconciliation import ReconciliationModel
from reco_kernel.selectors.ledger_selector import reconciliation_to_dto

logger = get_logger("services.persister")

_MODEL_COLUMNS: tuple[str, ...] = tuple(c.key for c in ReconciliationModel.__table__.columns)


def _comparable(name: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    if name in BOOLEAN_FIELDS:
        return bool(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


def values_equal(name: str, stored: Any, candidate: Any) -> bool:
    """Null-aware equality: empty strings equal None, booleans coerced, datetimes in UTC."""
    return _comparable(name, stored) == _comparable(name, candidate)


def diff_reconciliation(stored: Reconciliation, candidate: Reconciliation) -> tuple[str, ...]:
    """Business columns whose values differ, in column order."""
    return tuple(
        name
        for name in RECONCILIATION_BUSINESS_FIELDS
        if not values_equal(name, getattr(stored, name), getattr(candidate, name))
    )


class ReconciliationPersister:
    """
    Flush-only, diff-aware writer for reconciliation records.

    Contract:
        ``save(session, record, actor)`` returns the ``ChangeDescriptor`` of
        the write it performed (or did not perform).

    Non-goals:
        Does not commit, does not touch the cache or the change log.
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()

    def save(self, session: Session, record: Reconciliation, actor: str) -> ChangeDescriptor:
        model = session.get(ReconciliationModel, record.id)
        now = self._clock.now()

        if model is None:
            if record.creation_date is None:
                record.creation_date = now
            record.modified_by = actor
            record.last_modified = now
            values = {name: getattr(record, name) for name in _MODEL_COLUMNS}
            session.add(ReconciliationModel(**values))
            session.flush()
            logger.info("reconciliation_inserted", extra={"record_id": record.id, "actor_id": actor})
            return ChangeDescriptor.insert()

        stored = reconciliation_to_dto(model)
        changed = diff_reconciliation(stored, record)
        if not changed:
            # keep the candidate's audit view in line with storage
            record.creation_date = stored.creation_date
            record.modified_by = stored.modified_by
            record.last_modified = stored.last_modified
            logger.debug("reconciliation_noop", extra={"record_id": record.id})
            return ChangeDescriptor.noop()

        for name in changed:
            value = getattr(record, name)
            if isinstance(value, str) and not value.strip():
                value = None
            setattr(model, name, value)
        model.modified_by = actor
        model.last_modified = now
        session.flush()

        record.creation_date = stored.creation_date
        record.modified_by = actor
        record.last_modified = now

        descriptor = ChangeDescriptor.update(changed)
        logger.info(
            "reconciliation_updated",
            extra={"record_id": record.id, "actor_id": actor, "descriptor": str(descriptor)},
        )
        return descriptor

    def save_batch(
        self,
        session: Session,
        records: Sequence[Reconciliation],
        actor: str,
    ) -> list[tuple[Reconciliation, ChangeDescriptor]]:
        """Save every record in the caller's transaction; order preserved."""
        return [(record, self.save(session, record, actor)) for record in records]
