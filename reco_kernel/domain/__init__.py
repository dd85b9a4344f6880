"""
Pure domain layer.

Plain data transfer objects and small value enums with NO dependencies on
the ORM, the database or I/O.  Time is reached only through an injected
Clock.
"""

from reco_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from reco_kernel.domain.dtos import (
    AUDIT_FIELDS,
    LEDGER_FIELDS,
    LINKAGE_FIELDS,
    RECONCILIATION_BUSINESS_FIELDS,
    ChangeDescriptor,
    Country,
    LedgerEntry,
    Reconciliation,
    ReferenceGuarantee,
    ReferenceInvoice,
    ViewRow,
)
from reco_kernel.domain.values import AccountSide, ChangeOperation, Tri

__all__ = [
    "AUDIT_FIELDS",
    "LEDGER_FIELDS",
    "LINKAGE_FIELDS",
    "RECONCILIATION_BUSINESS_FIELDS",
    "AccountSide",
    "ChangeDescriptor",
    "ChangeOperation",
    "Clock",
    "Country",
    "DeterministicClock",
    "LedgerEntry",
    "Reconciliation",
    "ReferenceGuarantee",
    "ReferenceInvoice",
    "SystemClock",
    "Tri",
    "ViewRow",
]
