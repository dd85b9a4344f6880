"""
Tests for the truth-table rule engine.

Covers:
- First match by (priority, rule_id); scope admission
- UNKNOWN inputs never satisfy a constrained condition
- Value sets, sign, MT status and day ranges
- Applying results: import protection, auto_apply, message dedup,
  action status/date defaults, idempotence
- Counterpart targets: which rows receive outputs, claim dates kept on self
"""

from datetime import date, datetime, timedelta, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from reco_engines.rules import (
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
    ensure_action_defaults,
    parse_value_set,
)
from reco_kernel.domain.dtos import Reconciliation
from reco_kernel.domain.values import AccountSide, Tri

NOW = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)


def _rule(rule_id, *, priority=100, scope=RuleScope.BOTH, outputs=None, message=None, auto_apply=True, **conditions):
    return TruthRule(
        rule_id=rule_id,
        conditions=RuleConditions(**conditions),
        outputs=outputs or RuleOutputs(action=1),
        priority=priority,
        scope=scope,
        auto_apply=auto_apply,
        message=message,
    )


def _result(
    scope=EvaluationScope.EDIT,
    *,
    outputs=None,
    message=None,
    auto_apply=True,
    rule_id="R1",
    apply_to=ApplyTarget.SELF,
):
    return RuleResult(
        rule_id=rule_id,
        scope=scope,
        outputs=outputs or RuleOutputs(action=4, kpi=18),
        auto_apply=auto_apply,
        message=message,
        apply_to=apply_to,
    )


class TestParseValueSet:

    def test_mixed_separators(self):
        assert parse_value_set("a; b,c|d") == frozenset({"A", "B", "C", "D"})

    def test_wildcard_means_any(self):
        assert parse_value_set("ISSUANCE;*") == frozenset()

    def test_none_and_iterable(self):
        assert parse_value_set(None) == frozenset()
        assert parse_value_set(["x", " y "]) == frozenset({"X", "Y"})


class TestEvaluation:
    """Tests for first-match evaluation."""

    def test_lower_priority_wins(self):
        engine = RuleEngine([_rule("B", priority=20), _rule("A", priority=10)])

        assert engine.evaluate(RuleContext(), EvaluationScope.EDIT).rule_id == "A"

    def test_rule_id_breaks_priority_ties(self):
        engine = RuleEngine([_rule("B"), _rule("A")])

        assert engine.evaluate(RuleContext(), EvaluationScope.EDIT).rule_id == "A"

    def test_disabled_rules_skipped(self):
        engine = RuleEngine([
            TruthRule("A", enabled=False, outputs=RuleOutputs(action=1)),
            _rule("B"),
        ])

        assert engine.evaluate(RuleContext(), EvaluationScope.EDIT).rule_id == "B"

    def test_scope_admission(self):
        engine = RuleEngine([_rule("IMP", scope=RuleScope.IMPORT), _rule("EDT", scope=RuleScope.EDIT, priority=200)])

        assert engine.evaluate(RuleContext(), EvaluationScope.IMPORT).rule_id == "IMP"
        assert engine.evaluate(RuleContext(), EvaluationScope.EDIT).rule_id == "EDT"
        assert engine.evaluate(RuleContext(), EvaluationScope.RUN_NOW).rule_id == "EDT"

    def test_no_match_returns_none(self):
        engine = RuleEngine([_rule("A", account_side="P")])

        assert engine.evaluate(RuleContext(account_side=AccountSide.RECEIVABLE), EvaluationScope.EDIT) is None

    def test_unknown_tri_never_matches_constraint(self):
        engine = RuleEngine([_rule("A", is_amount_match=False)])

        assert engine.evaluate(RuleContext(is_amount_match=Tri.UNKNOWN), EvaluationScope.EDIT) is None
        assert engine.evaluate(RuleContext(is_amount_match=Tri.FALSE), EvaluationScope.EDIT).rule_id == "A"

    def test_unknown_side_never_matches_side_constraint(self):
        engine = RuleEngine([_rule("A", account_side="R")])

        assert engine.evaluate(RuleContext(), EvaluationScope.EDIT) is None

    def test_context_normalized_before_matching(self):
        engine = RuleEngine([
            _rule(
                "A",
                guarantee_types=frozenset({"REISSUANCE"}),
                transaction_types=frozenset({"INCOMING_PAYMENT"}),
                sign="D",
                booking=frozenset({"FR"}),
            )
        ])
        context = RuleContext(
            country_id=" fr ",
            guarantee_type="reissued",
            transaction_type="incoming payment",
            sign="debit",
        )

        assert engine.evaluate(context, EvaluationScope.EDIT).rule_id == "A"

    @pytest.mark.parametrize(
        "condition,mt_status,expected",
        [
            (MtStatusCondition.ACKED, "acked", True),
            (MtStatusCondition.ACKED, "NACK", False),
            (MtStatusCondition.ACKED, None, False),
            (MtStatusCondition.NOT_ACKED, "PENDING", True),
            (MtStatusCondition.NOT_ACKED, None, False),
            (MtStatusCondition.NULL, None, True),
            (MtStatusCondition.NULL, "ACKED", False),
            (MtStatusCondition.WILDCARD, None, True),
        ],
    )
    def test_mt_status(self, condition, mt_status, expected):
        engine = RuleEngine([_rule("A", mt_status=condition)])

        result = engine.evaluate(RuleContext(mt_status=mt_status), EvaluationScope.EDIT)

        assert (result is not None) is expected

    def test_day_range_requires_known_value(self):
        engine = RuleEngine([_rule("A", days_since_reminder_min=30)])

        assert engine.evaluate(RuleContext(days_since_reminder=None), EvaluationScope.EDIT) is None
        assert engine.evaluate(RuleContext(days_since_reminder=29), EvaluationScope.EDIT) is None
        assert engine.evaluate(RuleContext(days_since_reminder=30), EvaluationScope.EDIT) is not None

    def test_current_action_condition(self):
        engine = RuleEngine([_rule("A", current_action_id=7)])

        assert engine.evaluate(RuleContext(current_action_id=7), EvaluationScope.EDIT) is not None
        assert engine.evaluate(RuleContext(current_action_id=None), EvaluationScope.EDIT) is None

    def test_blank_message_dropped(self):
        engine = RuleEngine([_rule("A", message="   ")])

        assert engine.evaluate(RuleContext(), EvaluationScope.EDIT).message is None


class TestActionDefaults:

    def test_new_action_gets_pending_status_and_date(self):
        record = Reconciliation(id="L-1", action=4)

        ensure_action_defaults(record, NOW)

        assert record.action_status is False
        assert record.action_date == NOW

    def test_existing_status_kept_unless_action_changed(self):
        earlier = NOW - timedelta(days=3)
        record = Reconciliation(id="L-1", action=4, action_status=True, action_date=earlier)

        ensure_action_defaults(record, NOW)
        assert (record.action_status, record.action_date) == (True, earlier)

        ensure_action_defaults(record, NOW, action_changed=True)
        assert (record.action_status, record.action_date) == (False, NOW)

    @pytest.mark.parametrize("action", [None, 0])
    def test_no_action_clears_status(self, action):
        record = Reconciliation(id="L-1", action=action, action_status=True, action_date=NOW)

        ensure_action_defaults(record, NOW)

        assert record.action_status is None
        assert record.action_date is None


class TestApplyRuleResult:
    """Tests for applying a winning rule to a record."""

    def test_edit_scope_overwrites_action(self):
        record = Reconciliation(id="L-1", action=1)

        applied = apply_rule_result(record, _result(), actor="RULES", now=NOW)

        assert record.action == 4
        assert record.kpi == 18
        assert record.action_status is False
        assert applied.outputs_applied is True
        assert "action" in applied.changed_fields

    def test_import_scope_keeps_existing_action(self):
        record = Reconciliation(id="L-1", action=5)

        applied = apply_rule_result(
            record,
            _result(EvaluationScope.IMPORT, message="check it"),
            actor="IMPORT",
            now=NOW,
        )

        assert record.action == 5
        assert record.kpi is None
        assert applied.outputs_applied is False
        assert applied.message_appended is True
        assert "[Rule R1] check it" in record.comments

    def test_import_scope_fills_empty_action(self):
        record = Reconciliation(id="L-1")

        apply_rule_result(record, _result(EvaluationScope.IMPORT), actor="IMPORT", now=NOW)

        assert record.action == 4

    def test_auto_apply_false_is_message_only(self):
        record = Reconciliation(id="L-1", action=1)

        applied = apply_rule_result(
            record, _result(auto_apply=False, message="consider closing"), actor="RULES", now=NOW
        )

        assert record.action == 1
        assert applied.outputs_applied is False
        assert applied.changed_fields == ("comments",)

    def test_message_line_format(self):
        record = Reconciliation(id="L-1")

        apply_rule_result(record, _result(message="hello"), actor="RULES", now=NOW)

        assert record.comments == "[2024-03-15 09:00] RULES: [Rule R1] hello"

    def test_message_appended_on_new_line(self):
        record = Reconciliation(id="L-1", comments="manual note")

        apply_rule_result(record, _result(message="hello"), actor="RULES", now=NOW)

        assert record.comments.split("\n") == ["manual note", "[2024-03-15 09:00] RULES: [Rule R1] hello"]

    def test_message_not_duplicated_on_later_day(self):
        record = Reconciliation(id="L-1")
        apply_rule_result(record, _result(message="hello"), actor="RULES", now=NOW)

        applied = apply_rule_result(
            record, _result(message="hello"), actor="SYSTEM", now=NOW + timedelta(days=2)
        )

        assert applied.message_appended is False
        assert record.comments.count("[Rule R1] hello") == 1

    def test_date_outputs(self):
        record = Reconciliation(id="L-1")
        outputs = RuleOutputs(to_remind=True, to_remind_days=30, first_claim_today=True, last_claim_today=True)

        apply_rule_result(record, _result(outputs=outputs), actor="RULES", now=NOW)

        assert record.to_remind is True
        assert record.to_remind_date == date(2024, 4, 14)
        assert record.first_claim_date == date(2024, 3, 15)
        assert record.last_claim_date == date(2024, 3, 15)


class TestApplyTarget:
    """Tests for rules whose outputs reach the counterpart rows."""

    def test_evaluation_carries_target(self):
        engine = RuleEngine([TruthRule(rule_id="ANY", apply_to=ApplyTarget.BOTH)])

        result = engine.evaluate(RuleContext(), EvaluationScope.IMPORT)

        assert result.apply_to is ApplyTarget.BOTH

    @pytest.mark.parametrize(
        "target,on_self,on_counterpart",
        [
            (ApplyTarget.SELF, True, False),
            (ApplyTarget.COUNTERPART, False, True),
            (ApplyTarget.BOTH, True, True),
        ],
    )
    def test_which_rows_receive_outputs(self, target, on_self, on_counterpart):
        result = _result(apply_to=target, message="grouped")
        matched = Reconciliation(id="P1")
        counterpart = Reconciliation(id="R1")

        apply_rule_result(matched, result, actor="RULES", now=NOW)
        apply_counterpart_result(counterpart, result, now=NOW)

        assert (matched.action == 4) is on_self
        assert (counterpart.action == 4) is on_counterpart
        assert "[Rule R1] grouped" in matched.comments

    def test_counterpart_gets_no_message_or_claim_dates(self):
        outputs = RuleOutputs(action=1, kpi=16, to_remind_days=30, first_claim_today=True, last_claim_today=True)
        counterpart = Reconciliation(id="R1")

        applied = apply_counterpart_result(
            counterpart, _result(outputs=outputs, message="note", apply_to=ApplyTarget.BOTH), now=NOW
        )

        assert counterpart.action == 1
        assert counterpart.kpi == 16
        assert counterpart.to_remind_date == date(2024, 4, 14)
        assert counterpart.first_claim_date is None
        assert counterpart.last_claim_date is None
        assert counterpart.comments is None
        assert applied.message_appended is False

    def test_import_keeps_counterpart_action(self):
        counterpart = Reconciliation(id="R1", action=9)

        applied = apply_counterpart_result(
            counterpart, _result(EvaluationScope.IMPORT, apply_to=ApplyTarget.BOTH), now=NOW
        )

        assert counterpart.action == 9
        assert counterpart.kpi is None
        assert applied.outputs_applied is False
        assert applied.changed_fields == ()

    def test_edit_overwrites_counterpart_action(self):
        counterpart = Reconciliation(id="R1", action=9)

        apply_counterpart_result(counterpart, _result(apply_to=ApplyTarget.COUNTERPART), now=NOW)

        assert counterpart.action == 4
        assert counterpart.action_status is False
        assert counterpart.action_date == NOW

    def test_advisory_rule_never_touches_counterpart(self):
        counterpart = Reconciliation(id="R1")

        applied = apply_counterpart_result(
            counterpart, _result(auto_apply=False, apply_to=ApplyTarget.BOTH), now=NOW
        )

        assert applied.changed_fields == ()


outputs_strategy = st.builds(
    RuleOutputs,
    action=st.none() | st.integers(min_value=0, max_value=20),
    kpi=st.none() | st.integers(min_value=0, max_value=30),
    risky_item=st.none() | st.booleans(),
    to_remind=st.none() | st.booleans(),
    to_remind_days=st.none() | st.integers(min_value=0, max_value=90),
    first_claim_today=st.none() | st.booleans(),
)


@given(
    outputs=outputs_strategy,
    scope=st.sampled_from(list(EvaluationScope)),
    auto_apply=st.booleans(),
    message=st.none() | st.text(alphabet="abc xyz", min_size=1, max_size=20).filter(lambda s: s.strip()),
    action=st.none() | st.integers(min_value=0, max_value=20),
    comments=st.none() | st.text(alphabet="abc \n", max_size=30),
)
@settings(max_examples=300, deadline=None)
def test_applying_twice_equals_applying_once(outputs, scope, auto_apply, message, action, comments):
    record = Reconciliation(id="L-1", action=action, comments=comments)
    result = RuleResult("R1", scope, outputs, auto_apply, message.strip() if message else None)

    apply_rule_result(record, result, actor="RULES", now=NOW)
    once = record.as_dict()
    second = apply_rule_result(record, result, actor="RULES", now=NOW)

    assert record.as_dict() == once
    assert second.changed_fields == ()
