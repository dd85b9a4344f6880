"""Read-only selectors returning domain DTOs."""

from reco_kernel.selectors.base import BaseSelector
from reco_kernel.selectors.ledger_selector import (
    LedgerSelector,
    ReconciliationSelector,
    ledger_to_dto,
    reconciliation_to_dto,
)
from reco_kernel.selectors.reference_selector import ReferenceSelector

__all__ = [
    "BaseSelector",
    "LedgerSelector",
    "ReconciliationSelector",
    "ReferenceSelector",
    "ledger_to_dto",
    "reconciliation_to_dto",
]
