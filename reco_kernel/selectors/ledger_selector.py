"""
Module: reco_kernel.selectors.ledger_selector
Responsibility: Read access to ledger rows and their reconciliation records,
    translated to DTOs through the explicit field tables of
    reco_kernel.domain.dtos.
Architecture position: Kernel > Selectors.
"""

from collections.abc import Iterable, Sequence

from sqlalchemy import select

from reco_kernel.domain.dtos import (
    LEDGER_FIELDS,
    LedgerEntry,
    Reconciliation,
)
from reco_kernel.models.ledger import LedgerEntryModel
from reco_kernel.models.reconciliation import ReconciliationModel
from reco_kernel.selectors.base import BaseSelector

_RECONCILIATION_COLUMNS: tuple[str, ...] = tuple(
    c.key for c in ReconciliationModel.__table__.columns
)


def ledger_to_dto(model: LedgerEntryModel) -> LedgerEntry:
    return LedgerEntry(**{name: getattr(model, name) for name in LEDGER_FIELDS})


def reconciliation_to_dto(model: ReconciliationModel) -> Reconciliation:
    return Reconciliation(**{name: getattr(model, name) for name in _RECONCILIATION_COLUMNS})


class LedgerSelector(BaseSelector):
    """Ledger rows by id or by country."""

    def get(self, ledger_id: str, *, include_deleted: bool = False) -> LedgerEntry | None:
        model = self.session.get(LedgerEntryModel, ledger_id)
        if model is None:
            return None
        if model.delete_date is not None and not include_deleted:
            return None
        return ledger_to_dto(model)

    def get_many(self, ledger_ids: Iterable[str]) -> dict[str, LedgerEntry]:
        """Live ledger rows for the given ids, keyed by id (missing ids omitted)."""
        ids = list(dict.fromkeys(ledger_ids))
        if not ids:
            return {}
        stmt = select(LedgerEntryModel).where(
            LedgerEntryModel.id.in_(ids),
            LedgerEntryModel.delete_date.is_(None),
        )
        return {m.id: ledger_to_dto(m) for m in self.session.scalars(stmt)}

    def list_live(self, country_id: str) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntryModel)
            .where(
                LedgerEntryModel.country_id == country_id,
                LedgerEntryModel.delete_date.is_(None),
            )
            .order_by(LedgerEntryModel.id)
        )
        return [ledger_to_dto(m) for m in self.session.scalars(stmt)]


class ReconciliationSelector(BaseSelector):
    """Reconciliation records by id."""

    def get(self, reconciliation_id: str, *, include_deleted: bool = False) -> Reconciliation | None:
        model = self.session.get(ReconciliationModel, reconciliation_id)
        if model is None:
            return None
        if model.delete_date is not None and not include_deleted:
            return None
        return reconciliation_to_dto(model)

    def get_many(self, reconciliation_ids: Sequence[str]) -> dict[str, Reconciliation]:
        """Live records for the given ids, keyed by id (missing ids omitted)."""
        ids = list(dict.fromkeys(reconciliation_ids))
        if not ids:
            return {}
        stmt = select(ReconciliationModel).where(
            ReconciliationModel.id.in_(ids),
            ReconciliationModel.delete_date.is_(None),
        )
        return {m.id: reconciliation_to_dto(m) for m in self.session.scalars(stmt)}
