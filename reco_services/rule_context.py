"""
reco_services.rule_context -- Derive the per-row ``RuleContext``.

Responsibility:
    Turn a ledger row, its reconciliation record, the linked catalog rows
    and the row's grouping outcome into the flat, normalized inputs the
    rule engine evaluates.

Architecture position:
    Services -- pure given its inputs, but lives beside the services that
    gather those inputs (catalog, cached view, configuration).

Invariants enforced:
    - Values that cannot be derived are ``Tri.UNKNOWN`` / None, never
      False.  A missing grouping outcome leaves ``is_grouped`` and
      ``is_amount_match`` UNKNOWN.
    - No country profile -> no context (``build`` returns None); callers
      skip evaluation.
"""

from __future__ import annotations

from datetime import date, datetime

from reco_engines.grouping import GroupingOutcome, classify_account_side
from reco_engines.linkage import normalize_reference
from reco_engines.rules import RuleContext
from reco_engines.transaction_types import classify_transaction_type
from reco_kernel.domain.dtos import (
    Country,
    LedgerEntry,
    Reconciliation,
    ReferenceGuarantee,
    ReferenceInvoice,
)
from reco_kernel.domain.values import AccountSide, Tri

INITIATED_STATUS = "INITIATED"


def _days_between(today: date, value: date | datetime | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        value = value.date()
    return (today - value).days


def _has_link(record: Reconciliation) -> bool:
    return any(
        normalize_reference(v)
        for v in (record.invoice_id, record.guarantee_id, record.payment_ref)
    )


class RuleContextBuilder:
    """
    Stateless builder of ``RuleContext`` values.

    Contract:
        ``build(...)`` returns a context or None when ``country`` is None.
    """

    def build(
        self,
        ledger: LedgerEntry,
        record: Reconciliation,
        country: Country | None,
        *,
        today: date,
        invoice: ReferenceInvoice | None = None,
        guarantee: ReferenceGuarantee | None = None,
        grouping: GroupingOutcome | None = None,
    ) -> RuleContext | None:
        if country is None:
            return None

        side = classify_account_side(ledger.account_id, country)
        tx_type = classify_transaction_type(
            ledger.raw_label,
            is_pivot=side is AccountSide.PIVOT,
            category=ledger.category,
            payment_method=invoice.payment_method if invoice is not None else None,
        )

        has_link = _has_link(record)

        if grouping is None:
            is_grouped = Tri.UNKNOWN
            is_amount_match = Tri.UNKNOWN
        else:
            is_grouped = Tri.of(grouping.is_matched)
            is_amount_match = Tri.of(grouping.is_matched and grouping.is_amount_match)

        mt_status = None
        comm_id_email = Tri.UNKNOWN
        bgi_initiated = Tri.UNKNOWN
        if invoice is not None:
            mt_status = invoice.mt_status
            comm_id_email = Tri.of(invoice.comm_id_email)
            if invoice.status and invoice.status.strip():
                bgi_initiated = Tri.of(invoice.status.strip().upper() == INITIATED_STATUS)

        return RuleContext(
            country_id=ledger.country_id,
            account_side=side,
            transaction_type=tx_type.value if tx_type is not None else None,
            # guarantee type only means something on the receivable side
            guarantee_type=(
                guarantee.guarantee_type
                if guarantee is not None and side is AccountSide.RECEIVABLE
                else None
            ),
            sign="C" if ledger.signed_amount >= 0 else "D",
            has_link=Tri.of(has_link),
            is_grouped=is_grouped,
            is_amount_match=is_amount_match,
            mt_status=mt_status,
            comm_id_email=comm_id_email,
            bgi_initiated=bgi_initiated,
            trigger_date_is_null=Tri.of(record.trigger_date is None),
            days_since_trigger=_days_between(today, record.trigger_date),
            operation_days_ago=_days_between(today, ledger.operation_date),
            # a catalog link counts as a match; manual matching and transitory
            # status are not tracked here and stay UNKNOWN
            is_matched=Tri.of(has_link),
            is_first_request=Tri.of(record.first_claim_date is None),
            days_since_reminder=_days_between(today, record.last_claim_date),
            current_action_id=record.action,
        )
