"""
Module: reco_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines of the
    reconciliation view: linkage resolution, cross-side grouping, rule
    evaluation, filter gating and transaction-type classification.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import reco_kernel.domain and reco_kernel.exceptions.
    MUST NOT import reco_services or reco_config.

Invariants enforced:
    - Purity: engines never read the clock.  "Now"/"today" are passed in.
    - Decimal-only arithmetic for amounts.
    - Determinism: identical inputs always produce identical outputs.
"""

from reco_engines.filters import (
    FilterFragment,
    extract_safe_predicate,
    normalize_filter_for_cache,
    parse_filter,
)
from reco_engines.grouping import (
    BALANCE_TOLERANCE,
    GroupingCalculator,
    GroupingItem,
    GroupingOutcome,
    GroupSummary,
    classify_account_side,
)
from reco_engines.linkage import (
    GroupingDimension,
    LinkageKeys,
    LinkageResolver,
    LinkageResult,
    ReferenceIndex,
    extract_bgi_token,
    extract_bgpmt_token,
    extract_guarantee_id,
    normalize_reference,
)
from reco_engines.rules import (
    AppliedRule,
    ApplyTarget,
    EvaluationScope,
    MtStatusCondition,
    RuleConditions,
    RuleContext,
    RuleEngine,
    RuleOutputs,
    RuleResult,
    RuleScope,
    TruthRule,
    apply_counterpart_result,
    apply_rule_result,
)
from reco_engines.transaction_types import TransactionType, classify_transaction_type

__all__ = [
    "BALANCE_TOLERANCE",
    "AppliedRule",
    "ApplyTarget",
    "EvaluationScope",
    "FilterFragment",
    "GroupSummary",
    "GroupingCalculator",
    "GroupingDimension",
    "GroupingItem",
    "GroupingOutcome",
    "LinkageKeys",
    "LinkageResolver",
    "LinkageResult",
    "MtStatusCondition",
    "ReferenceIndex",
    "RuleConditions",
    "RuleContext",
    "RuleEngine",
    "RuleOutputs",
    "RuleResult",
    "RuleScope",
    "TransactionType",
    "TruthRule",
    "apply_counterpart_result",
    "apply_rule_result",
    "classify_account_side",
    "classify_transaction_type",
    "extract_bgi_token",
    "extract_bgpmt_token",
    "extract_guarantee_id",
    "extract_safe_predicate",
    "normalize_filter_for_cache",
    "normalize_reference",
    "parse_filter",
]
