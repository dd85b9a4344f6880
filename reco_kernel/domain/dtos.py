"""
Data transfer objects for the reconciliation kernel.

Responsibility:
    Plain dataclasses that carry ledger rows, reconciliation records,
    reference catalog rows and assembled view rows between the kernel,
    the pure engines and the services.  ORM models never leave the kernel;
    selectors and the persister translate them to these types through the
    explicit field tables declared here.

Architecture position:
    Kernel > Domain -- pure, no ORM or I/O imports.

Invariants enforced:
    - ``ViewRow.id == ViewRow.ledger.id`` (the reconciliation record shares
      the ledger id; a ledger row without a stored record is paired with a
      fresh ``Reconciliation(id=ledger.id)``).
    - ``ViewRow`` is frozen.  Cache patching swaps whole rows, so a reader
      holding a row never observes a half-updated one.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime
from decimal import Decimal

from reco_kernel.domain.values import AccountSide, ChangeOperation

# ---------------------------------------------------------------------------
# Field tables
# ---------------------------------------------------------------------------

LINKAGE_FIELDS: tuple[str, ...] = (
    "invoice_id",
    "guarantee_id",
    "payment_ref",
    "internal_invoice_reference",
)

# Mutable columns compared by the diff-aware persister, in column order.
RECONCILIATION_BUSINESS_FIELDS: tuple[str, ...] = LINKAGE_FIELDS + (
    "action",
    "action_status",
    "action_date",
    "kpi",
    "incident_type",
    "risky_item",
    "reason_non_risky",
    "comments",
    "assignee",
    "to_remind",
    "to_remind_date",
    "ack",
    "swift_code",
    "trigger_date",
    "first_claim_date",
    "last_claim_date",
    "delete_date",
)

AUDIT_FIELDS: tuple[str, ...] = ("modified_by", "last_modified")

BOOLEAN_FIELDS: frozenset[str] = frozenset(
    {"action_status", "risky_item", "to_remind", "ack"}
)

LEDGER_FIELDS: tuple[str, ...] = (
    "id",
    "country_id",
    "account_id",
    "currency",
    "signed_amount",
    "operation_date",
    "value_date",
    "raw_label",
    "category",
    "event_num",
    "reconciliation_num",
    "reconciliation_origin_num",
    "receivable_invoice_ref",
    "receivable_dw_ref",
    "creation_date",
    "delete_date",
)


# ---------------------------------------------------------------------------
# Configuration-side value
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Country:
    """Country profile: the two account ids that define the mirrored sides."""

    country_id: str
    name: str
    pivot_account_id: str
    receivable_account_id: str


# ---------------------------------------------------------------------------
# Ledger and reconciliation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerEntry:
    """One imported accounting movement line.  Read-only to this core."""

    id: str
    country_id: str
    account_id: str
    signed_amount: Decimal
    currency: str | None = None
    operation_date: date | None = None
    value_date: date | None = None
    raw_label: str | None = None
    category: int | None = None
    event_num: str | None = None
    reconciliation_num: str | None = None
    reconciliation_origin_num: str | None = None
    receivable_invoice_ref: str | None = None
    receivable_dw_ref: str | None = None
    creation_date: datetime | None = None
    delete_date: datetime | None = None

    @property
    def is_live(self) -> bool:
        return self.delete_date is None


@dataclass
class Reconciliation:
    """
    Mutable reconciliation record, 1:1 with a ledger entry by id.

    Mutated in memory by the rule engine and by user edits; persisted only
    through the diff-aware persister.  Archived by setting ``delete_date``.
    """

    id: str
    # Linkage
    invoice_id: str | None = None
    guarantee_id: str | None = None
    payment_ref: str | None = None
    internal_invoice_reference: str | None = None
    # Business
    action: int | None = None
    action_status: bool | None = None
    action_date: datetime | None = None
    kpi: int | None = None
    incident_type: int | None = None
    risky_item: bool | None = None
    reason_non_risky: int | None = None
    comments: str | None = None
    assignee: str | None = None
    to_remind: bool | None = None
    to_remind_date: date | None = None
    ack: bool | None = None
    swift_code: str | None = None
    # Workflow dates
    trigger_date: date | None = None
    first_claim_date: date | None = None
    last_claim_date: date | None = None
    # Audit
    creation_date: datetime | None = None
    modified_by: str | None = None
    last_modified: datetime | None = None
    delete_date: datetime | None = None

    @property
    def is_archived(self) -> bool:
        return self.delete_date is not None

    def copy(self) -> Reconciliation:
        return replace(self)

    def as_dict(self) -> dict[str, object]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# ---------------------------------------------------------------------------
# Reference catalogs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReferenceInvoice:
    """External invoice catalog row (read-only)."""

    invoice_id: str
    payment_reference: str | None = None
    business_case_reference: str | None = None
    business_case_id: str | None = None
    status: str | None = None
    mt_status: str | None = None
    comm_id_email: bool | None = None
    payment_method: str | None = None
    billing_amount: Decimal | None = None
    billing_currency: str | None = None
    debtor_name: str | None = None


@dataclass(frozen=True)
class ReferenceGuarantee:
    """External guarantee catalog row (read-only)."""

    guarantee_id: str
    guarantee_type: str | None = None
    status: str | None = None
    outstanding_amount: Decimal | None = None
    currency: str | None = None
    party_name: str | None = None


# ---------------------------------------------------------------------------
# View
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ViewRow:
    """
    Annotated projection of one live ledger entry.

    ``account_side``, ``is_matched_across_accounts`` and ``missing_amount``
    are grouping-derived.  After a cache patch they may be stale until the
    next rebuild; the reconciliation fields never are.
    """

    ledger: LedgerEntry
    reconciliation: Reconciliation
    invoice: ReferenceInvoice | None = None
    guarantee: ReferenceGuarantee | None = None
    canonical_key: str | None = None
    grouping_keys: tuple[tuple[str, str], ...] = ()
    account_side: AccountSide = AccountSide.UNKNOWN
    is_matched_across_accounts: bool = False
    missing_amount: Decimal | None = None
    is_potential_duplicate: bool = False
    is_newly_added: bool = False
    is_updated: bool = False

    @property
    def id(self) -> str:
        return self.ledger.id

    @property
    def country_id(self) -> str:
        return self.ledger.country_id

    def with_reconciliation(self, record: Reconciliation) -> ViewRow:
        """Return a copy carrying a snapshot of ``record``; flags untouched."""
        return replace(self, reconciliation=record.copy())


# ---------------------------------------------------------------------------
# Change descriptor
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChangeDescriptor:
    """
    Result of a diff-aware save, consumed by the change-log/sync side.

    ``str()`` gives the wire form: ``INSERT``, ``NOOP`` or
    ``UPDATE(col1,col2,...)``.  Update columns are the changed business
    columns followed by the audit columns written with them.
    """

    operation: ChangeOperation
    columns: tuple[str, ...] = field(default=())

    @classmethod
    def insert(cls) -> ChangeDescriptor:
        return cls(ChangeOperation.INSERT)

    @classmethod
    def noop(cls) -> ChangeDescriptor:
        return cls(ChangeOperation.NOOP)

    @classmethod
    def update(cls, changed: tuple[str, ...]) -> ChangeDescriptor:
        return cls(ChangeOperation.UPDATE, tuple(changed) + AUDIT_FIELDS)

    @property
    def business_columns(self) -> tuple[str, ...]:
        return tuple(c for c in self.columns if c not in AUDIT_FIELDS)

    @property
    def is_write(self) -> bool:
        return self.operation is not ChangeOperation.NOOP

    def __str__(self) -> str:
        if self.operation is ChangeOperation.UPDATE:
            return f"UPDATE({','.join(self.columns)})"
        return self.operation.value
