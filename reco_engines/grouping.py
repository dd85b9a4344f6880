"""
reco_engines.grouping -- Cross-side grouping and balance residual.

Responsibility:
    Classify ledger rows as pivot / receivable side, group rows sharing a
    reference key, flag rows whose group spans both sides, and compute the
    signed residual ("missing amount") of each such group.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Group membership is NOT exclusive.  A row takes part in one group per
      grouping dimension it has a key for (canonical key, stored invoice
      id, internal reference), each computed independently.  A row is matched
      when ANY of its groups holds at least one pivot and one receivable
      row.
    - missing_amount = sum(receivable amounts) + sum(pivot amounts) of the
      group; balanced when |missing_amount| < tolerance (0.01).
    - Amount equality alone never groups rows: only shared keys do.
    - Symmetry: membership depends only on keys, never on input order.
    - Rows without keys, or on an unknown side, are never matched and have
      no missing amount.
    - The counterparts of a matched row are the opposite-side members of
      its matched groups.

Failure modes:
    None.  Missing configuration simply yields UNKNOWN sides and no matches.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from reco_engines.tracer import traced_engine
from reco_kernel.domain.dtos import Country
from reco_kernel.domain.values import AccountSide

BALANCE_TOLERANCE = Decimal("0.01")


def classify_account_side(account_id: str | None, country: Country | None) -> AccountSide:
    """Compare the account against the country's pivot/receivable ids (trimmed, case-insensitive)."""
    if country is None or not account_id:
        return AccountSide.UNKNOWN
    account = account_id.strip().casefold()
    if country.pivot_account_id and account == country.pivot_account_id.strip().casefold():
        return AccountSide.PIVOT
    if country.receivable_account_id and account == country.receivable_account_id.strip().casefold():
        return AccountSide.RECEIVABLE
    return AccountSide.UNKNOWN


@dataclass(frozen=True)
class GroupingItem:
    """One row as seen by the calculator."""

    row_id: str
    account_side: AccountSide
    signed_amount: Decimal
    keys: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class GroupSummary:
    """Totals for one (dimension, key) group."""

    dimension: str
    key: str
    member_ids: tuple[str, ...]
    pivot_count: int
    receivable_count: int
    pivot_total: Decimal
    receivable_total: Decimal

    @property
    def is_matched(self) -> bool:
        return self.pivot_count > 0 and self.receivable_count > 0

    @property
    def missing_amount(self) -> Decimal | None:
        if not self.is_matched:
            return None
        return self.receivable_total + self.pivot_total


@dataclass(frozen=True)
class GroupingOutcome:
    """Grouping-derived flags for one row."""

    row_id: str
    is_matched: bool = False
    missing_amount: Decimal | None = None
    is_amount_match: bool = False
    matched_groups: tuple[tuple[str, str], ...] = ()
    counterpart_ids: tuple[str, ...] = ()


def _grouping_summary(outcomes: dict[str, GroupingOutcome]) -> dict[str, int]:
    return {"rows": len(outcomes), "matched_rows": sum(1 for o in outcomes.values() if o.is_matched)}


class GroupingCalculator:
    """
    Non-exclusive, symmetric grouping over a full row set.

    Contract:
        ``group(items)`` returns one ``GroupingOutcome`` per input row id.
    """

    def __init__(self, tolerance: Decimal = BALANCE_TOLERANCE):
        self._tolerance = tolerance

    @property
    def tolerance(self) -> Decimal:
        return self._tolerance

    def is_balanced(self, missing_amount: Decimal | None) -> bool:
        return missing_amount is not None and abs(missing_amount) < self._tolerance

    def summarize(self, items: Sequence[GroupingItem]) -> dict[tuple[str, str], GroupSummary]:
        members: dict[tuple[str, str], list[GroupingItem]] = defaultdict(list)
        for item in items:
            for group_key in dict.fromkeys(item.keys):
                members[group_key].append(item)

        summaries: dict[tuple[str, str], GroupSummary] = {}
        for (dimension, key), rows in members.items():
            pivots = [r for r in rows if r.account_side is AccountSide.PIVOT]
            receivables = [r for r in rows if r.account_side is AccountSide.RECEIVABLE]
            summaries[(dimension, key)] = GroupSummary(
                dimension=dimension,
                key=key,
                member_ids=tuple(r.row_id for r in rows),
                pivot_count=len(pivots),
                receivable_count=len(receivables),
                pivot_total=sum((r.signed_amount for r in pivots), Decimal("0")),
                receivable_total=sum((r.signed_amount for r in receivables), Decimal("0")),
            )
        return summaries

    @traced_engine("grouping", "1.0", summarize=_grouping_summary)
    def group(self, items: Sequence[GroupingItem]) -> dict[str, GroupingOutcome]:
        summaries = self.summarize(items)
        sides = {item.row_id: item.account_side for item in items}
        outcomes: dict[str, GroupingOutcome] = {}
        for item in items:
            if item.account_side is AccountSide.UNKNOWN:
                outcomes[item.row_id] = GroupingOutcome(item.row_id)
                continue
            # keys are ordered by dimension priority; first matched group sets the residual
            matched = [
                group_key
                for group_key in dict.fromkeys(item.keys)
                if summaries[group_key].is_matched
            ]
            if not matched:
                outcomes[item.row_id] = GroupingOutcome(item.row_id)
                continue
            missing = summaries[matched[0]].missing_amount
            counterparts = dict.fromkeys(
                member
                for group_key in matched
                for member in summaries[group_key].member_ids
                if sides[member] not in (item.account_side, AccountSide.UNKNOWN)
            )
            outcomes[item.row_id] = GroupingOutcome(
                row_id=item.row_id,
                is_matched=True,
                missing_amount=missing,
                is_amount_match=self.is_balanced(missing),
                matched_groups=tuple(matched),
                counterpart_ids=tuple(counterparts),
            )
        return outcomes
