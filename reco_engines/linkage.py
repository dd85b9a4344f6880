"""
reco_engines.linkage -- Canonical reference resolution for ledger rows.

Responsibility:
    Given a ledger row and its reconciliation record, resolve the external
    reference (invoice / guarantee / payment reference) the row belongs to,
    using explicit stored ids first and regex token heuristics over free
    text second.  Also finds the matching catalog invoice and backfills
    missing linkage ids on a copy of the record.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The reference catalog is
    passed in as an immutable ``ReferenceIndex`` snapshot.

Invariants enforced:
    - Resolution order for the canonical key, first non-empty wins:
        1. invoice id, payment reference or guarantee id stored on the record
        2. the ledger-side receivable invoice reference
        3. a BGI token found in reconciliation number, comments, label,
           receivable reference or internal reference
        4. the internal invoice reference
    - Backfill is non-destructive: a non-empty stored value is never
      replaced, and the caller's record is never mutated (``link`` works on
      a copy).
    - Keys are normalized (trimmed, upper-cased) before comparison.

Failure modes:
    - Nothing matched: ``resolve`` returns None.  Callers treat the row as
      ungrouped; this is not an error.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from reco_kernel.domain.dtos import (
    LedgerEntry,
    Reconciliation,
    ReferenceGuarantee,
    ReferenceInvoice,
)

_BGI_PATTERN = re.compile(r"(?:^|[^A-Za-z0-9])(BGI\d{13})(?![A-Za-z0-9])", re.IGNORECASE)
_BGPMT_PATTERN = re.compile(
    r"(?:^|[^A-Za-z0-9])(BGPMT[A-Za-z0-9]{8,20})(?![A-Za-z0-9])", re.IGNORECASE
)
_GUARANTEE_PATTERN = re.compile(
    r"(?:^|[^A-Za-z0-9])(G\d{4}[A-Za-z]{2}\d{9})(?![A-Za-z0-9])", re.IGNORECASE
)


def normalize_reference(value: str | None) -> str | None:
    """Trim and upper-case; empty becomes None."""
    if value is None:
        return None
    value = value.strip()
    return value.upper() if value else None


def _first_token(pattern: re.Pattern[str], texts: Iterable[str | None]) -> str | None:
    for text in texts:
        if not text:
            continue
        match = pattern.search(text)
        if match:
            return match.group(1).upper()
    return None


def extract_bgi_token(*texts: str | None) -> str | None:
    """First invoice token (``BGI`` + 13 digits) across ``texts``."""
    return _first_token(_BGI_PATTERN, texts)


def extract_bgpmt_token(*texts: str | None) -> str | None:
    """First payment-reference token (``BGPMT`` + 8-20 alphanumerics)."""
    return _first_token(_BGPMT_PATTERN, texts)


def extract_guarantee_id(*texts: str | None) -> str | None:
    """First guarantee id (``G`` + 4 digits + 2 letters + 9 digits)."""
    return _first_token(_GUARANTEE_PATTERN, texts)


class GroupingDimension(str, Enum):
    """
    Independent grouping views a row may take part in, in residual priority.

    CANONICAL groups on the resolved key whatever its source, so a stored
    invoice id on one side meets a label token on the other.  INVOICE and
    INTERNAL_REFERENCE group on the stored values alone.
    """

    CANONICAL = "canonical"
    INVOICE = "invoice"
    INTERNAL_REFERENCE = "internal_reference"


@dataclass(frozen=True)
class LinkageKeys:
    """
    Resolution sources for one row; any of them may be absent.

    ``explicit``, ``token`` and ``internal_reference`` feed the canonical
    key in that order.  ``invoice`` is the stored invoice id on its own.
    """

    explicit: str | None = None
    token: str | None = None
    internal_reference: str | None = None
    invoice: str | None = None

    @property
    def canonical(self) -> str | None:
        return self.explicit or self.token or self.internal_reference

    def by_dimension(self) -> tuple[tuple[str, str], ...]:
        pairs = (
            (GroupingDimension.CANONICAL, self.canonical),
            (GroupingDimension.INVOICE, self.invoice),
            (GroupingDimension.INTERNAL_REFERENCE, self.internal_reference),
        )
        return tuple((dim.value, key) for dim, key in pairs if key)


@dataclass(frozen=True)
class ReferenceIndex:
    """
    Immutable lookup snapshot over the reference catalogs.

    Keys are normalized references.  Built once per catalog load and
    swapped wholesale on refresh.
    """

    invoices_by_id: Mapping[str, ReferenceInvoice] = field(default_factory=dict)
    invoices_by_payment_ref: Mapping[str, ReferenceInvoice] = field(default_factory=dict)
    guarantees_by_id: Mapping[str, ReferenceGuarantee] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        invoices: Iterable[ReferenceInvoice],
        guarantees: Iterable[ReferenceGuarantee],
    ) -> ReferenceIndex:
        by_id: dict[str, ReferenceInvoice] = {}
        by_payment: dict[str, ReferenceInvoice] = {}
        for invoice in invoices:
            key = normalize_reference(invoice.invoice_id)
            if key:
                by_id.setdefault(key, invoice)
            payment = normalize_reference(invoice.payment_reference)
            if payment:
                by_payment.setdefault(payment, invoice)
        by_guarantee: dict[str, ReferenceGuarantee] = {}
        for guarantee in guarantees:
            key = normalize_reference(guarantee.guarantee_id)
            if key:
                by_guarantee.setdefault(key, guarantee)
        return cls(by_id, by_payment, by_guarantee)

    def invoice(self, invoice_id: str | None) -> ReferenceInvoice | None:
        key = normalize_reference(invoice_id)
        return self.invoices_by_id.get(key) if key else None

    def invoice_by_payment_ref(self, payment_ref: str | None) -> ReferenceInvoice | None:
        key = normalize_reference(payment_ref)
        return self.invoices_by_payment_ref.get(key) if key else None

    def guarantee(self, guarantee_id: str | None) -> ReferenceGuarantee | None:
        key = normalize_reference(guarantee_id)
        return self.guarantees_by_id.get(key) if key else None


@dataclass(frozen=True)
class LinkageResult:
    """Outcome of linking one row: enriched record copy plus resolved refs."""

    reconciliation: Reconciliation
    keys: LinkageKeys
    invoice: ReferenceInvoice | None = None
    guarantee: ReferenceGuarantee | None = None
    backfilled: tuple[str, ...] = ()

    @property
    def canonical_key(self) -> str | None:
        return self.keys.canonical


def _free_texts(ledger: LedgerEntry, record: Reconciliation) -> tuple[str | None, ...]:
    return (
        ledger.reconciliation_num,
        record.comments,
        ledger.raw_label,
        ledger.receivable_dw_ref,
    )


class LinkageResolver:
    """
    Resolve canonical references and catalog links for ledger rows.

    Contract:
        ``resolve(ledger, record)`` returns the canonical key or None.
        ``link(ledger, record)`` returns a ``LinkageResult`` whose record is
        a backfilled copy; the input record is left untouched.

    Non-goals:
        Does not persist anything.  Whether a backfilled id is ever stored
        is decided by whoever saves the record.
    """

    def __init__(self, references: ReferenceIndex | None = None):
        self._references = references or ReferenceIndex()

    @property
    def references(self) -> ReferenceIndex:
        return self._references

    def resolve_keys(self, ledger: LedgerEntry, record: Reconciliation) -> LinkageKeys:
        explicit = (
            normalize_reference(record.invoice_id)
            or normalize_reference(record.payment_ref)
            or normalize_reference(record.guarantee_id)
            or normalize_reference(ledger.receivable_invoice_ref)
        )
        token = extract_bgi_token(*_free_texts(ledger, record), record.internal_invoice_reference)
        internal = normalize_reference(record.internal_invoice_reference)
        return LinkageKeys(
            explicit=explicit,
            token=token,
            internal_reference=internal,
            invoice=normalize_reference(record.invoice_id),
        )

    def resolve(self, ledger: LedgerEntry, record: Reconciliation) -> str | None:
        return self.resolve_keys(ledger, record).canonical

    def find_invoice(self, ledger: LedgerEntry, record: Reconciliation) -> ReferenceInvoice | None:
        """
        Catalog invoice for the row.

        A ledger-side receivable reference is authoritative: when present,
        it is the only lookup performed.
        """
        refs = self._references
        if normalize_reference(ledger.receivable_invoice_ref):
            return refs.invoice(ledger.receivable_invoice_ref)

        invoice = refs.invoice(record.invoice_id) or refs.invoice_by_payment_ref(record.payment_ref)
        if invoice is not None:
            return invoice

        texts = _free_texts(ledger, record)
        bgi = extract_bgi_token(*texts)
        if bgi:
            invoice = refs.invoice(bgi)
            if invoice is not None:
                return invoice
        bgpmt = extract_bgpmt_token(*texts)
        if bgpmt:
            return refs.invoice_by_payment_ref(bgpmt)
        return None

    def propose_guarantee_id(
        self,
        ledger: LedgerEntry,
        record: Reconciliation,
        invoice: ReferenceInvoice | None = None,
    ) -> str | None:
        """Guarantee id from free text, else from the invoice's business case."""
        gid = extract_guarantee_id(
            ledger.reconciliation_num,
            record.comments,
            ledger.receivable_dw_ref,
            ledger.raw_label,
        )
        if gid:
            return gid
        if invoice is not None:
            return normalize_reference(invoice.business_case_reference) or normalize_reference(
                invoice.business_case_id
            )
        return None

    def link(
        self,
        ledger: LedgerEntry,
        record: Reconciliation,
        *,
        fallback_invoice: ReferenceInvoice | None = None,
        fallback_guarantee: ReferenceGuarantee | None = None,
    ) -> LinkageResult:
        """
        Enrich a copy of ``record`` and resolve its keys.

        ``fallback_invoice``/``fallback_guarantee`` are reference rows the
        caller already joined on stored ids; they are used when the catalog
        snapshot has no entry.
        """
        enriched = record.copy()
        backfilled: list[str] = []

        invoice = self.find_invoice(ledger, enriched) or fallback_invoice
        if invoice is not None:
            if not normalize_reference(enriched.invoice_id):
                enriched.invoice_id = invoice.invoice_id
                backfilled.append("invoice_id")
            if invoice.payment_reference and not normalize_reference(enriched.payment_ref):
                enriched.payment_ref = invoice.payment_reference
                backfilled.append("payment_ref")

        if not normalize_reference(enriched.guarantee_id):
            gid = self.propose_guarantee_id(ledger, enriched, invoice)
            if gid:
                enriched.guarantee_id = gid
                backfilled.append("guarantee_id")

        guarantee = self._references.guarantee(enriched.guarantee_id) or fallback_guarantee

        return LinkageResult(
            reconciliation=enriched,
            keys=self.resolve_keys(ledger, enriched),
            invoice=invoice,
            guarantee=guarantee,
            backfilled=tuple(backfilled),
        )
