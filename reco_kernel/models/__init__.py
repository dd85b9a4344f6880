"""ORM models for the reconciliation kernel."""

from reco_kernel.models.change_log import ChangeLogEntryModel
from reco_kernel.models.ledger import LedgerEntryModel
from reco_kernel.models.reconciliation import ReconciliationModel
from reco_kernel.models.reference import ReferenceGuaranteeModel, ReferenceInvoiceModel

__all__ = [
    "ChangeLogEntryModel",
    "LedgerEntryModel",
    "ReconciliationModel",
    "ReferenceGuaranteeModel",
    "ReferenceInvoiceModel",
]
