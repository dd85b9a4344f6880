"""
reco_engines.rules -- Ordered truth-table rule engine.

Responsibility:
    Evaluate an ordered table of condition -> output rules over a per-row
    ``RuleContext`` and apply the winning rule's outputs to an in-memory
    reconciliation record.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Time enters only as the
    ``now`` argument of ``apply_rule_result``.

Invariants enforced:
    - Rules are scanned in (priority, rule_id) order; the FIRST matching
      enabled rule whose scope admits the evaluation scope wins.
    - ``evaluate`` is a pure function of (rules, context, scope): repeated
      evaluation yields an identical result.
    - A condition that is set never matches a context value that is
      UNKNOWN (``Tri.UNKNOWN`` / None).  Unknown is not false.
    - Override protection on apply:
        * IMPORT: outputs are applied only when the record has no Action.
        * EDIT / RUN_NOW: auto-apply outputs overwrite current fields.
        * auto_apply=False: no field is mutated in any scope.
      Counterpart outputs (``apply_to`` counterpart or both) follow the same
      protection on the opposite-side rows grouped with the matched row.
      The advisory message is appended in every case, at most once
      (deduplicated on its ``[Rule <id>] <message>`` body).

Failure modes:
    None raised by evaluation.  Context construction failures are handled
    by the caller, which skips evaluation.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from enum import Enum

from reco_engines.tracer import traced_engine
from reco_kernel.domain.dtos import Reconciliation
from reco_kernel.domain.values import AccountSide, Tri

WILDCARD = "*"
ACTION_NA = 0
_SET_SEPARATORS = (";", ",", "|")


class RuleScope(str, Enum):
    """Which evaluation paths a rule is written for."""

    IMPORT = "import"
    EDIT = "edit"
    BOTH = "both"


class EvaluationScope(str, Enum):
    """Path that triggered an evaluation."""

    IMPORT = "import"
    EDIT = "edit"
    RUN_NOW = "run_now"

    @property
    def rule_scope(self) -> RuleScope:
        # RUN_NOW is an explicit user action and uses edit rules
        return RuleScope.IMPORT if self is EvaluationScope.IMPORT else RuleScope.EDIT


class ApplyTarget(str, Enum):
    """Rows that receive a rule's outputs: the matched row, its counterparts, or both."""

    SELF = "self"
    COUNTERPART = "counterpart"
    BOTH = "both"

    @property
    def includes_self(self) -> bool:
        return self is not ApplyTarget.COUNTERPART

    @property
    def includes_counterpart(self) -> bool:
        return self is not ApplyTarget.SELF


class MtStatusCondition(str, Enum):
    WILDCARD = "*"
    ACKED = "ACKED"
    NOT_ACKED = "NOT_ACKED"
    NULL = "NULL"


def parse_value_set(raw: str | Iterable[str] | None) -> frozenset[str]:
    """Split ``a;b,c|d`` (or an iterable) into an upper-cased set; ``*`` means any."""
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        text = raw
        for sep in _SET_SEPARATORS[1:]:
            text = text.replace(sep, _SET_SEPARATORS[0])
        parts = text.split(_SET_SEPARATORS[0])
    else:
        parts = list(raw)
    values = frozenset(p.strip().upper() for p in parts if p and p.strip())
    return frozenset() if WILDCARD in values else values


def normalize_sign(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    value = value.strip().upper()
    if value.startswith("D"):
        return "D"
    if value.startswith("C"):
        return "C"
    return value


def normalize_guarantee_type(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    value = value.strip().upper()
    if value.startswith("REISSU"):
        return "REISSUANCE"
    if value.startswith("ISSU"):
        return "ISSUANCE"
    if value.startswith("NOTIF") or value.startswith("ADVISING"):
        return "ADVISING"
    return value


def normalize_transaction_type(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    return value.strip().upper().replace(" ", "_")


# ---------------------------------------------------------------------------
# Rule definition
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuleConditions:
    """Predicate half of a rule.  Every unset condition is a wildcard."""

    account_side: str = WILDCARD
    booking: frozenset[str] = frozenset()
    guarantee_types: frozenset[str] = frozenset()
    transaction_types: frozenset[str] = frozenset()
    sign: str = WILDCARD
    has_link: bool | None = None
    is_grouped: bool | None = None
    is_amount_match: bool | None = None
    mt_status: MtStatusCondition = MtStatusCondition.WILDCARD
    comm_id_email: bool | None = None
    bgi_status_initiated: bool | None = None
    trigger_date_is_null: bool | None = None
    days_since_trigger_min: int | None = None
    days_since_trigger_max: int | None = None
    is_transitory: bool | None = None
    operation_days_ago_min: int | None = None
    operation_days_ago_max: int | None = None
    is_matched: bool | None = None
    has_manual_match: bool | None = None
    is_first_request: bool | None = None
    days_since_reminder_min: int | None = None
    days_since_reminder_max: int | None = None
    current_action_id: int | None = None


@dataclass(frozen=True)
class RuleOutputs:
    """Field values a rule writes when its outputs are applied."""

    action: int | None = None
    kpi: int | None = None
    incident_type: int | None = None
    risky_item: bool | None = None
    reason_non_risky: int | None = None
    to_remind: bool | None = None
    to_remind_days: int | None = None
    first_claim_today: bool | None = None
    last_claim_today: bool | None = None

    def as_dict(self) -> dict[str, object]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def for_counterpart(self) -> RuleOutputs:
        # claim dates belong to the row that was claimed
        return replace(self, first_claim_today=None, last_claim_today=None)


@dataclass(frozen=True)
class TruthRule:
    rule_id: str
    conditions: RuleConditions = field(default_factory=RuleConditions)
    outputs: RuleOutputs = field(default_factory=RuleOutputs)
    priority: int = 100
    enabled: bool = True
    scope: RuleScope = RuleScope.BOTH
    apply_to: ApplyTarget = ApplyTarget.SELF
    auto_apply: bool = True
    message: str | None = None

    def admits(self, scope: EvaluationScope) -> bool:
        return self.scope is RuleScope.BOTH or self.scope is scope.rule_scope


# ---------------------------------------------------------------------------
# Context and result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuleContext:
    """
    Derived per-row inputs for one evaluation.  Never persisted.

    Tri fields are UNKNOWN when the value could not be derived; integer
    day-deltas are None in that case.
    """

    country_id: str | None = None
    account_side: AccountSide = AccountSide.UNKNOWN
    transaction_type: str | None = None
    guarantee_type: str | None = None
    sign: str | None = None
    has_link: Tri = Tri.UNKNOWN
    is_grouped: Tri = Tri.UNKNOWN
    is_amount_match: Tri = Tri.UNKNOWN
    mt_status: str | None = None
    comm_id_email: Tri = Tri.UNKNOWN
    bgi_initiated: Tri = Tri.UNKNOWN
    trigger_date_is_null: Tri = Tri.UNKNOWN
    days_since_trigger: int | None = None
    is_transitory: Tri = Tri.UNKNOWN
    operation_days_ago: int | None = None
    is_matched: Tri = Tri.UNKNOWN
    has_manual_match: Tri = Tri.UNKNOWN
    is_first_request: Tri = Tri.UNKNOWN
    days_since_reminder: int | None = None
    current_action_id: int | None = None

    def normalized(self) -> RuleContext:
        mt_status = self.mt_status.strip().upper() if self.mt_status and self.mt_status.strip() else None
        return replace(
            self,
            country_id=self.country_id.strip().upper() if self.country_id else None,
            sign=normalize_sign(self.sign),
            guarantee_type=normalize_guarantee_type(self.guarantee_type),
            transaction_type=normalize_transaction_type(self.transaction_type),
            mt_status=mt_status,
        )


@dataclass(frozen=True)
class RuleResult:
    """The winning rule of one evaluation."""

    rule_id: str
    scope: EvaluationScope
    outputs: RuleOutputs
    auto_apply: bool
    message: str | None = None
    apply_to: ApplyTarget = ApplyTarget.SELF


@dataclass(frozen=True)
class AppliedRule:
    """What ``apply_rule_result`` did to a record."""

    rule_id: str
    outputs_applied: bool
    message_appended: bool
    changed_fields: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def _tri_matches(required: bool | None, actual: Tri) -> bool:
    if required is None:
        return True
    if not actual.is_known:
        return False
    return actual.as_bool() == required


def _range_matches(low: int | None, high: int | None, actual: int | None) -> bool:
    if low is None and high is None:
        return True
    if actual is None:
        return False
    if low is not None and actual < low:
        return False
    if high is not None and actual > high:
        return False
    return True


def _set_matches(allowed: frozenset[str], actual: str | None) -> bool:
    if not allowed:
        return True
    return actual is not None and actual.upper() in allowed


def _mt_status_matches(condition: MtStatusCondition, mt_status: str | None) -> bool:
    if condition is MtStatusCondition.WILDCARD:
        return True
    if condition is MtStatusCondition.NULL:
        return mt_status is None
    if mt_status is None:
        return False
    acked = mt_status == "ACKED"
    return acked if condition is MtStatusCondition.ACKED else not acked


def rule_matches(rule: TruthRule, context: RuleContext) -> bool:
    """True when every set condition of ``rule`` holds for a normalized ``context``."""
    c = rule.conditions

    side = (c.account_side or WILDCARD).strip().upper()
    if side != WILDCARD:
        if context.account_side is AccountSide.UNKNOWN or context.account_side.value != side:
            return False

    if not _set_matches(c.booking, context.country_id):
        return False
    if not _set_matches(c.guarantee_types, context.guarantee_type):
        return False
    if not _set_matches(c.transaction_types, context.transaction_type):
        return False

    sign = (c.sign or WILDCARD).strip().upper()
    if sign != WILDCARD and context.sign != sign:
        return False

    tri_checks = (
        (c.has_link, context.has_link),
        (c.is_grouped, context.is_grouped),
        (c.is_amount_match, context.is_amount_match),
        (c.comm_id_email, context.comm_id_email),
        (c.bgi_status_initiated, context.bgi_initiated),
        (c.trigger_date_is_null, context.trigger_date_is_null),
        (c.is_transitory, context.is_transitory),
        (c.is_matched, context.is_matched),
        (c.has_manual_match, context.has_manual_match),
        (c.is_first_request, context.is_first_request),
    )
    if not all(_tri_matches(required, actual) for required, actual in tri_checks):
        return False

    if not _mt_status_matches(c.mt_status, context.mt_status):
        return False

    if not _range_matches(c.days_since_trigger_min, c.days_since_trigger_max, context.days_since_trigger):
        return False
    if not _range_matches(c.operation_days_ago_min, c.operation_days_ago_max, context.operation_days_ago):
        return False
    if not _range_matches(c.days_since_reminder_min, c.days_since_reminder_max, context.days_since_reminder):
        return False

    if c.current_action_id is not None and context.current_action_id != c.current_action_id:
        return False

    return True


class RuleEngine:
    """
    First-match evaluator over an ordered truth table.

    Contract:
        ``evaluate(context, scope)`` returns the ``RuleResult`` of the first
        enabled rule (by priority, then rule id) whose scope admits
        ``scope`` and whose conditions match, or None.

    Non-goals:
        Loading or caching the table (see reco_services.rule_repository).
    """

    def __init__(self, rules: Sequence[TruthRule]):
        self._rules: tuple[TruthRule, ...] = tuple(
            sorted(rules, key=lambda r: (r.priority, r.rule_id))
        )

    @property
    def rules(self) -> tuple[TruthRule, ...]:
        return self._rules

    @traced_engine("rules", "1.0", summarize=lambda result: {"rule_id": result.rule_id if result else None})
    def evaluate(self, context: RuleContext, scope: EvaluationScope) -> RuleResult | None:
        normalized = context.normalized()
        for rule in self._rules:
            if not rule.enabled or not rule.admits(scope):
                continue
            if not rule_matches(rule, normalized):
                continue
            return RuleResult(
                rule_id=rule.rule_id,
                scope=scope,
                outputs=rule.outputs,
                auto_apply=rule.auto_apply,
                apply_to=rule.apply_to,
                message=rule.message.strip() if rule.message and rule.message.strip() else None,
            )
        return None


# ---------------------------------------------------------------------------
# Applying a result
# ---------------------------------------------------------------------------


def advisory_body(rule_id: str, message: str) -> str:
    return f"[Rule {rule_id}] {message}"


def format_advisory_line(rule_id: str, message: str, *, actor: str, now: datetime) -> str:
    return f"[{now:%Y-%m-%d %H:%M}] {actor}: {advisory_body(rule_id, message)}"


def ensure_action_defaults(record: Reconciliation, now: datetime, *, action_changed: bool = False) -> None:
    """
    Keep action status/date consistent with the action.

    A set action gets a pending status and a date (reset when the action
    itself changed).  No action, or NA, clears both.
    """
    if record.action is None or record.action == ACTION_NA:
        record.action_status = None
        record.action_date = None
        return
    if action_changed or record.action_status is None:
        record.action_status = False
    if action_changed or record.action_date is None:
        record.action_date = now


def _apply_outputs(record: Reconciliation, outputs: RuleOutputs, now: datetime) -> None:
    today = now.date()
    if outputs.action is not None:
        changed = record.action != outputs.action
        record.action = outputs.action
        ensure_action_defaults(record, now, action_changed=changed)
    if outputs.kpi is not None:
        record.kpi = outputs.kpi
    if outputs.incident_type is not None:
        record.incident_type = outputs.incident_type
    if outputs.risky_item is not None:
        record.risky_item = outputs.risky_item
    if outputs.reason_non_risky is not None:
        record.reason_non_risky = outputs.reason_non_risky
    if outputs.to_remind is not None:
        record.to_remind = outputs.to_remind
    if outputs.to_remind_days is not None:
        record.to_remind_date = today + timedelta(days=outputs.to_remind_days)
    if outputs.first_claim_today:
        record.first_claim_date = today
    if outputs.last_claim_today:
        record.last_claim_date = today


def apply_rule_result(
    record: Reconciliation,
    result: RuleResult,
    *,
    actor: str,
    now: datetime,
) -> AppliedRule:
    """
    Mutate ``record`` in memory according to ``result`` and its scope.

    Never persists.  Applying the same result twice leaves the record as
    after the first application.
    """
    before = record.as_dict()

    if not result.auto_apply or not result.apply_to.includes_self:
        apply_outputs = False
    elif result.scope is EvaluationScope.IMPORT:
        apply_outputs = record.action is None
    else:
        apply_outputs = True

    if apply_outputs:
        _apply_outputs(record, result.outputs, now)

    message_appended = False
    if result.message:
        body = advisory_body(result.rule_id, result.message)
        existing = record.comments or ""
        if body not in existing:
            line = format_advisory_line(result.rule_id, result.message, actor=actor, now=now)
            record.comments = f"{existing}\n{line}" if existing.strip() else line
            message_appended = True

    after = record.as_dict()
    changed = tuple(name for name, value in after.items() if before[name] != value)
    return AppliedRule(
        rule_id=result.rule_id,
        outputs_applied=apply_outputs,
        message_appended=message_appended,
        changed_fields=changed,
    )


def apply_counterpart_result(
    record: Reconciliation,
    result: RuleResult,
    *,
    now: datetime,
) -> AppliedRule:
    """
    Apply ``result``'s outputs to a counterpart of the matched row.

    Override protection is the same as on the matched row; the advisory
    message and the claim dates stay with the matched row.
    """
    before = record.as_dict()
    apply_outputs = result.auto_apply and result.apply_to.includes_counterpart
    if apply_outputs and result.scope is EvaluationScope.IMPORT:
        apply_outputs = record.action is None
    if apply_outputs:
        _apply_outputs(record, result.outputs.for_counterpart(), now)

    after = record.as_dict()
    return AppliedRule(
        rule_id=result.rule_id,
        outputs_applied=apply_outputs,
        message_appended=False,
        changed_fields=tuple(name for name, value in after.items() if before[name] != value),
    )
