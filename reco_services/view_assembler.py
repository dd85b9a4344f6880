"""
reco_services.view_assembler -- Assemble the annotated reconciliation view.

Responsibility:
    Query ledger rows joined with their reconciliation records and the two
    reference catalogs, then annotate every row: linkage (canonical key,
    catalog invoice/guarantee, backfilled ids), cross-account grouping
    (side, matched flag, missing amount) and transient flags (newly added,
    updated by an automated actor, potential duplicate).

Architecture position:
    Services -- composes the pure engines (linkage, grouping, filters)
    with the query-execution collaborator and the reference catalog.

Invariants enforced:
    - Live rows only (ledger and reconciliation ``delete_date`` null)
      unless ``include_deleted``.
    - The caller's filter text only ever lands in one predicate slot over
      the labelled view subquery, after passing the keyword gate.  A
      rejected filter is logged and the query runs without it.
    - Column-to-field mapping is the static ``VIEW_ROW_COLUMNS`` table;
      every label is unique, lower-case and usable in a filter.
    - Grouping runs over the full fetched row set, after linkage.

Failure modes:
    - Query errors propagate (nothing to show).
    - Reference catalog unavailable, or linkage failing on one row:
      logged, the row stays visible with partial annotation.
    - Country not configured: rows stay visible on the UNKNOWN side,
      ungrouped.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, fields
from datetime import date
from typing import Any

from sqlalchemy import Select, and_, func, select, text
from sqlalchemy.sql import ColumnElement

from reco_engines.filters import FilterFragment, parse_filter
from reco_engines.grouping import GroupingCalculator, GroupingItem, classify_account_side
from reco_engines.linkage import LinkageKeys, LinkageResolver, ReferenceIndex
from reco_kernel.domain.clock import Clock, SystemClock
from reco_kernel.domain.dtos import (
    LEDGER_FIELDS,
    Country,
    LedgerEntry,
    Reconciliation,
    ReferenceGuarantee,
    ReferenceInvoice,
    ViewRow,
)
from reco_kernel.exceptions import FilterRejectedError
from reco_kernel.logging_config import get_logger
from reco_kernel.models.ledger import LedgerEntryModel
from reco_kernel.models.reconciliation import ReconciliationModel
from reco_kernel.models.reference import ReferenceGuaranteeModel, ReferenceInvoiceModel
from reco_services.query_executor import QueryExecutor
from reco_services.reference_catalog import ReferenceCatalog

logger = get_logger("services.view_assembler")

# ---------------------------------------------------------------------------
# Static column mapping: (label, section, dataclass field)
# ---------------------------------------------------------------------------

LEDGER = "ledger"
RECONCILIATION = "reconciliation"
INVOICE = "invoice"
GUARANTEE = "guarantee"

_RECONCILIATION_LABELS = {
    "id": "reco_id",
    "creation_date": "reco_creation_date",
    "delete_date": "reco_delete_date",
}
_INVOICE_LABELS = {"invoice_id": "ref_invoice_id", "status": "invoice_status"}
_GUARANTEE_LABELS = {
    "guarantee_id": "ref_guarantee_id",
    "status": "guarantee_status",
    "currency": "guarantee_currency",
}

VIEW_ROW_COLUMNS: tuple[tuple[str, str, str], ...] = (
    tuple((name, LEDGER, name) for name in LEDGER_FIELDS)
    + tuple(
        (_RECONCILIATION_LABELS.get(f.name, f.name), RECONCILIATION, f.name)
        for f in fields(Reconciliation)
    )
    + tuple((_INVOICE_LABELS.get(f.name, f.name), INVOICE, f.name) for f in fields(ReferenceInvoice))
    + tuple(
        (_GUARANTEE_LABELS.get(f.name, f.name), GUARANTEE, f.name) for f in fields(ReferenceGuarantee)
    )
)

DUP_COUNT_LABEL = "dup_count"

_SECTION_TABLES = {
    LEDGER: LedgerEntryModel.__table__,
    RECONCILIATION: ReconciliationModel.__table__,
    INVOICE: ReferenceInvoiceModel.__table__,
    GUARANTEE: ReferenceGuaranteeModel.__table__,
}

assert len({label for label, _, _ in VIEW_ROW_COLUMNS}) == len(VIEW_ROW_COLUMNS), "duplicate view label"


def _section_values(row: Mapping[str, Any], section: str) -> dict[str, Any]:
    return {field_name: row[label] for label, sec, field_name in VIEW_ROW_COLUMNS if sec == section}


def decode_row(
    row: Mapping[str, Any],
) -> tuple[LedgerEntry, Reconciliation, ReferenceInvoice | None, ReferenceGuarantee | None]:
    """Split one labelled result row into its DTOs."""
    ledger = LedgerEntry(**_section_values(row, LEDGER))
    if row["reco_id"] is None:
        record = Reconciliation(id=ledger.id)
    else:
        record = Reconciliation(**_section_values(row, RECONCILIATION))
    invoice = ReferenceInvoice(**_section_values(row, INVOICE)) if row["ref_invoice_id"] is not None else None
    guarantee = (
        ReferenceGuarantee(**_section_values(row, GUARANTEE)) if row["ref_guarantee_id"] is not None else None
    )
    return ledger, record, invoice, guarantee


# ---------------------------------------------------------------------------
# Query builder
# ---------------------------------------------------------------------------


class ViewQueryBuilder:
    """
    Builds the view statements.

    The labelled join is wrapped in subquery ``v`` so the caller's filter
    sees one flat namespace of unique column names.
    """

    def _view_subquery(self, country_id: str, include_deleted: bool):
        ledger = _SECTION_TABLES[LEDGER]
        reco = _SECTION_TABLES[RECONCILIATION]
        invoices = _SECTION_TABLES[INVOICE]
        guarantees = _SECTION_TABLES[GUARANTEE]
        dup = ledger.alias("dup")

        dup_count = (
            select(func.count())
            .select_from(dup)
            .where(
                dup.c.country_id == ledger.c.country_id,
                dup.c.event_num == ledger.c.event_num,
                dup.c.delete_date.is_(None),
            )
            .scalar_subquery()
        )

        columns: list[ColumnElement[Any]] = [
            _SECTION_TABLES[section].c[field_name].label(label)
            for label, section, field_name in VIEW_ROW_COLUMNS
        ]
        columns.append(dup_count.label(DUP_COUNT_LABEL))

        joined = (
            ledger.outerjoin(reco, reco.c.id == ledger.c.id)
            .outerjoin(invoices, invoices.c.invoice_id == reco.c.invoice_id)
            .outerjoin(guarantees, guarantees.c.guarantee_id == reco.c.guarantee_id)
        )
        conditions = [ledger.c.country_id == country_id]
        if not include_deleted:
            conditions.append(ledger.c.delete_date.is_(None))
            conditions.append(reco.c.delete_date.is_(None))
        return select(*columns).select_from(joined).where(and_(*conditions)).subquery("v")

    def _restrict(self, stmt: Select, v, predicate: str | None, potential_duplicates: bool) -> Select:
        if potential_duplicates:
            stmt = stmt.where(v.c[DUP_COUNT_LABEL] > 1)
        if predicate:
            # colons are literal text, not bind parameters
            escaped = predicate.replace(":", r"\:")
            stmt = stmt.where(text(f"({escaped})"))
        return stmt

    def build(
        self,
        country_id: str,
        *,
        predicate: str | None = None,
        include_deleted: bool = False,
        potential_duplicates: bool = False,
    ) -> Select:
        v = self._view_subquery(country_id, include_deleted)
        stmt = select(*v.c).select_from(v)
        stmt = self._restrict(stmt, v, predicate, potential_duplicates)
        return stmt.order_by(v.c.operation_date.desc(), v.c.id)

    def build_count(
        self,
        country_id: str,
        *,
        predicate: str | None = None,
        include_deleted: bool = False,
        potential_duplicates: bool = False,
    ) -> Select:
        v = self._view_subquery(country_id, include_deleted)
        stmt = select(func.count().label("row_count")).select_from(v)
        return self._restrict(stmt, v, predicate, potential_duplicates)


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnnotatedRow:
    """A view row before grouping: linkage done, sides known."""

    ledger: LedgerEntry
    reconciliation: Reconciliation
    invoice: ReferenceInvoice | None
    guarantee: ReferenceGuarantee | None
    keys: LinkageKeys
    is_potential_duplicate: bool


class ViewAssembler:
    """
    Builds the annotated row list for one (country, filter, include_deleted).

    Contract:
        ``build`` returns one ``ViewRow`` per fetched ledger row, in query
        order.  ``count`` returns the number of rows ``build`` would fetch.

    Non-goals:
        No caching (see ``ViewCache``); no writes.
    """

    def __init__(
        self,
        executor: QueryExecutor,
        catalog: ReferenceCatalog,
        countries: Mapping[str, Country],
        *,
        clock: Clock | None = None,
        calculator: GroupingCalculator | None = None,
        automated_actors: Sequence[str] = ("SYSTEM", "IMPORT", "RULES"),
        query_builder: ViewQueryBuilder | None = None,
    ):
        self._executor = executor
        self._catalog = catalog
        self._countries = countries
        self._clock = clock or SystemClock()
        self._calculator = calculator or GroupingCalculator()
        self._automated_actors = frozenset(a.strip().upper() for a in automated_actors)
        self._queries = query_builder or ViewQueryBuilder()

    @property
    def calculator(self) -> GroupingCalculator:
        return self._calculator

    def _country(self, country_id: str) -> Country | None:
        return self._countries.get(country_id.strip().upper())

    def _predicate(self, fragment: FilterFragment, country_id: str) -> str | None:
        try:
            return fragment.safe_predicate()
        except FilterRejectedError as exc:
            logger.warning(
                "filter_rejected",
                extra={"country_id": country_id, "token": exc.token, "fragment": exc.fragment},
            )
            return None

    def _references(self) -> ReferenceIndex:
        try:
            return self._catalog.index()
        except Exception:
            logger.warning("reference_catalog_unavailable", exc_info=True)
            return ReferenceIndex()

    def build(
        self,
        country_id: str,
        filter_text: str | None = None,
        include_deleted: bool = False,
    ) -> list[ViewRow]:
        fragment = parse_filter(filter_text)
        stmt = self._queries.build(
            country_id,
            predicate=self._predicate(fragment, country_id),
            include_deleted=include_deleted,
            potential_duplicates=fragment.potential_duplicates,
        )
        raw_rows = self._executor.execute_query(stmt, {})

        resolver = LinkageResolver(self._references())
        annotated = [self._link(resolver, raw) for raw in raw_rows]
        rows = self.annotate(annotated, self._country(country_id))

        logger.info(
            "view_built",
            extra={
                "country_id": country_id,
                "row_count": len(rows),
                "include_deleted": include_deleted,
                "filtered": fragment.predicate is not None,
            },
        )
        return rows

    def count(
        self,
        country_id: str,
        filter_text: str | None = None,
        include_deleted: bool = False,
    ) -> int:
        fragment = parse_filter(filter_text)
        stmt = self._queries.build_count(
            country_id,
            predicate=self._predicate(fragment, country_id),
            include_deleted=include_deleted,
            potential_duplicates=fragment.potential_duplicates,
        )
        result = self._executor.execute_query(stmt, {})
        return int(result[0]["row_count"]) if result else 0

    def _link(self, resolver: LinkageResolver, raw: Mapping[str, Any]) -> AnnotatedRow:
        ledger, record, invoice, guarantee = decode_row(raw)
        is_dup = (raw.get(DUP_COUNT_LABEL) or 0) > 1
        try:
            link = resolver.link(ledger, record, fallback_invoice=invoice, fallback_guarantee=guarantee)
        except Exception:
            logger.warning("linkage_failed", extra={"record_id": ledger.id}, exc_info=True)
            return AnnotatedRow(ledger, record, invoice, guarantee, LinkageKeys(), is_dup)
        return AnnotatedRow(
            ledger,
            link.reconciliation,
            link.invoice,
            link.guarantee,
            link.keys,
            is_dup,
        )

    def annotate(self, annotated: Sequence[AnnotatedRow], country: Country | None) -> list[ViewRow]:
        """Group the linked rows and attach transient flags."""
        items = [
            GroupingItem(
                row_id=a.ledger.id,
                account_side=classify_account_side(a.ledger.account_id, country),
                signed_amount=a.ledger.signed_amount,
                keys=a.keys.by_dimension(),
            )
            for a in annotated
        ]
        outcomes = self._calculator.group(items)
        today = self._clock.today()

        rows: list[ViewRow] = []
        for a, item in zip(annotated, items):
            outcome = outcomes[item.row_id]
            rows.append(
                ViewRow(
                    ledger=a.ledger,
                    reconciliation=a.reconciliation,
                    invoice=a.invoice,
                    guarantee=a.guarantee,
                    canonical_key=a.keys.canonical,
                    grouping_keys=item.keys,
                    account_side=item.account_side,
                    is_matched_across_accounts=outcome.is_matched,
                    missing_amount=outcome.missing_amount,
                    is_potential_duplicate=a.is_potential_duplicate,
                    is_newly_added=self.is_newly_added(a.reconciliation, today),
                    is_updated=self.is_updated(a.reconciliation, today),
                )
            )
        return rows

    @staticmethod
    def is_newly_added(record: Reconciliation, today: date) -> bool:
        return record.creation_date is not None and record.creation_date.date() == today

    def is_updated(self, record: Reconciliation, today: date) -> bool:
        """Touched today, after creation, by an automated actor (blank counts as automated)."""
        modified = record.last_modified
        if modified is None or modified.date() != today:
            return False
        if record.creation_date is not None and modified <= record.creation_date:
            return False
        actor = (record.modified_by or "").strip().upper()
        return not actor or actor in self._automated_actors
