"""
reco_services.reference_catalog -- Cached invoice/guarantee reference data.

Responsibility:
    Load the invoice and guarantee catalogs once, index them into an
    immutable ``ReferenceIndex`` and serve lookups and invoice suggestions
    from that snapshot.

Architecture position:
    Services -- owns the only reference-data cache.  Readers never lock:
    they read the current snapshot attribute, which ``refresh`` replaces
    wholesale.

Invariants enforced:
    - At most one load runs at a time; concurrent first readers wait for
      it rather than loading twice.
    - A snapshot is never edited after publication.

Failure modes:
    - A failing source propagates from the first load.  The view path
      treats that as a best-effort failure and builds without enrichment.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from decimal import Decimal
from typing import Protocol

from sqlalchemy.orm import Session, sessionmaker

from reco_engines.linkage import (
    ReferenceIndex,
    extract_bgi_token,
    extract_bgpmt_token,
    extract_guarantee_id,
    normalize_reference,
)
from reco_kernel.db.engine import session_scope
from reco_kernel.domain.dtos import ReferenceGuarantee, ReferenceInvoice
from reco_kernel.logging_config import get_logger
from reco_kernel.selectors.reference_selector import ReferenceSelector

logger = get_logger("services.reference_catalog")


class ReferenceDataSource(Protocol):
    def get_reference_invoices(self) -> Sequence[ReferenceInvoice]: ...

    def get_reference_guarantees(self) -> Sequence[ReferenceGuarantee]: ...


class SqlReferenceDataSource:
    """Reads both catalogs through ``ReferenceSelector``."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def get_reference_invoices(self) -> list[ReferenceInvoice]:
        with session_scope(self._session_factory) as session:
            return ReferenceSelector(session).list_invoices()

    def get_reference_guarantees(self) -> list[ReferenceGuarantee]:
        with session_scope(self._session_factory) as session:
            return ReferenceSelector(session).list_guarantees()


def _amount_delta(amount: Decimal | None, invoice: ReferenceInvoice) -> Decimal | None:
    if amount is None or invoice.billing_amount is None:
        return None
    return abs(abs(amount) - abs(invoice.billing_amount))


def _closest_by_amount(
    candidates: Sequence[ReferenceInvoice], amount: Decimal | None
) -> list[ReferenceInvoice]:
    """Candidates ordered by amount proximity; unknown amounts last, stable otherwise."""

    def score(invoice: ReferenceInvoice) -> tuple[int, Decimal]:
        delta = _amount_delta(amount, invoice)
        return (1, Decimal(0)) if delta is None else (0, delta)

    return sorted(candidates, key=score)


class ReferenceCatalog:
    """
    Lazily loaded, wholesale-refreshed reference catalog.

    Contract:
        ``index`` returns the current snapshot, loading it on first use.
        ``refresh`` reloads from the source and swaps the snapshot.
        ``clear`` drops the snapshot; the next read reloads.

    Non-goals:
        No TTL.  Callers decide when reference data is stale.
    """

    def __init__(self, source: ReferenceDataSource):
        self._source = source
        self._lock = threading.Lock()
        self._snapshot: ReferenceIndex | None = None
        self._invoices: tuple[ReferenceInvoice, ...] = ()

    @property
    def is_loaded(self) -> bool:
        return self._snapshot is not None

    def index(self) -> ReferenceIndex:
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        with self._lock:
            if self._snapshot is None:
                self._load_locked()
            return self._snapshot

    def invoices(self) -> tuple[ReferenceInvoice, ...]:
        self.index()
        return self._invoices

    def refresh(self) -> ReferenceIndex:
        with self._lock:
            self._load_locked()
            return self._snapshot

    def clear(self) -> None:
        with self._lock:
            self._snapshot = None
            self._invoices = ()

    def _load_locked(self) -> None:
        invoices = tuple(self._source.get_reference_invoices())
        guarantees = tuple(self._source.get_reference_guarantees())
        snapshot = ReferenceIndex.build(invoices, guarantees)
        # invoices first so a reader that sees the new snapshot also sees its list
        self._invoices = invoices
        self._snapshot = snapshot
        logger.info(
            "reference_catalog_loaded",
            extra={"invoice_count": len(invoices), "guarantee_count": len(guarantees)},
        )

    def suggest_invoices(
        self,
        *,
        raw_label: str | None = None,
        reconciliation_num: str | None = None,
        reconciliation_origin_num: str | None = None,
        explicit_invoice_id: str | None = None,
        guarantee_id: str | None = None,
        amount: Decimal | None = None,
        take: int = 20,
    ) -> list[ReferenceInvoice]:
        """
        Ranked invoice candidates for one ledger row, best first.

        Strategies, in order: invoice (BGI) id, payment reference (BGPMT),
        then invoices of the guarantee's business case ranked by amount
        proximity.  Each invoice appears at most once.
        """
        invoices = self.invoices()
        suggestions: list[ReferenceInvoice] = []
        seen: set[str] = set()

        def add(invoice: ReferenceInvoice | None) -> None:
            if invoice is None:
                return
            key = normalize_reference(invoice.invoice_id)
            if key and key not in seen:
                seen.add(key)
                suggestions.append(invoice)

        texts = (reconciliation_num, reconciliation_origin_num, raw_label)

        bgi = normalize_reference(explicit_invoice_id) or extract_bgi_token(*texts)
        if bgi:
            hits = [i for i in invoices if normalize_reference(i.invoice_id) == bgi]
            add(next(iter(_closest_by_amount(hits, amount)), None))
        if len(suggestions) >= take:
            return suggestions[:take]

        bgpmt = extract_bgpmt_token(*texts)
        if bgpmt:
            hits = [i for i in invoices if normalize_reference(i.payment_reference) == bgpmt]
            add(next(iter(_closest_by_amount(hits, amount)), None))
        if len(suggestions) >= take:
            return suggestions[:take]

        gid = normalize_reference(guarantee_id) or extract_guarantee_id(reconciliation_num, raw_label)
        if gid:
            exact = [
                i
                for i in invoices
                if gid in (normalize_reference(i.business_case_reference), normalize_reference(i.business_case_id))
            ]
            candidates = exact or [
                i
                for i in invoices
                if gid in (normalize_reference(i.business_case_reference) or "")
                or gid in (normalize_reference(i.business_case_id) or "")
            ]
            for invoice in _closest_by_amount(candidates, amount):
                add(invoice)

        return suggestions[:take]
