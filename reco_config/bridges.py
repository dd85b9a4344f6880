"""
Config -> Engine Bridges.

Functions that convert configuration definitions into engine and kernel
inputs.  They live in reco_config (the producer) because neither the
kernel nor the engines may import reco_config.

Usage:
    from reco_config.bridges import build_country, build_truth_rule

    rule = build_truth_rule(rule_def)
    country = build_country(country_config)
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from reco_config.schema import CountryConfig, TruthRuleDef
from reco_engines.rules import (
    WILDCARD,
    ApplyTarget,
    MtStatusCondition,
    RuleConditions,
    RuleOutputs,
    RuleScope,
    TruthRule,
    normalize_sign,
    parse_value_set,
)
from reco_kernel.domain.dtos import Country
from reco_kernel.exceptions import InvalidRuleDefinitionError


def _as_bool(value: Any) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "yes", "1"):
            return True
        if text in ("false", "no", "0"):
            return False
        if text in ("", "*", "null", "none"):
            return None
    if isinstance(value, int):
        return bool(value)
    raise ValueError(f"not a boolean: {value!r}")


def _as_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"not an integer: {value!r}")
    return int(value)


def _as_side(value: Any) -> str:
    if value is None:
        return WILDCARD
    text = str(value).strip().upper()
    if text in ("", WILDCARD):
        return WILDCARD
    if text in ("P", "PIVOT"):
        return "P"
    if text in ("R", "RECEIVABLE"):
        return "R"
    raise ValueError(f"account side must be P, R or *: {value!r}")


def _as_sign(value: Any) -> str:
    if value is None or str(value).strip() in ("", WILDCARD):
        return WILDCARD
    sign = normalize_sign(str(value))
    if sign not in ("C", "D"):
        raise ValueError(f"sign must be C, D or *: {value!r}")
    return sign


def _as_mt_status(value: Any) -> MtStatusCondition:
    if value is None:
        return MtStatusCondition.WILDCARD
    text = str(value).strip().upper().replace(" ", "_").replace("-", "_")
    if text in ("", WILDCARD):
        return MtStatusCondition.WILDCARD
    return MtStatusCondition(text)


# YAML name -> (RuleConditions field, converter)
_CONDITION_FIELDS: dict[str, tuple[str, Callable[[Any], Any]]] = {
    "account_side": ("account_side", _as_side),
    "booking": ("booking", parse_value_set),
    "guarantee_type": ("guarantee_types", parse_value_set),
    "transaction_type": ("transaction_types", parse_value_set),
    "sign": ("sign", _as_sign),
    "has_link": ("has_link", _as_bool),
    "is_grouped": ("is_grouped", _as_bool),
    "is_amount_match": ("is_amount_match", _as_bool),
    "mt_status": ("mt_status", _as_mt_status),
    "comm_id_email": ("comm_id_email", _as_bool),
    "bgi_status_initiated": ("bgi_status_initiated", _as_bool),
    "trigger_date_is_null": ("trigger_date_is_null", _as_bool),
    "days_since_trigger_min": ("days_since_trigger_min", _as_int),
    "days_since_trigger_max": ("days_since_trigger_max", _as_int),
    "is_transitory": ("is_transitory", _as_bool),
    "operation_days_ago_min": ("operation_days_ago_min", _as_int),
    "operation_days_ago_max": ("operation_days_ago_max", _as_int),
    "is_matched": ("is_matched", _as_bool),
    "has_manual_match": ("has_manual_match", _as_bool),
    "is_first_request": ("is_first_request", _as_bool),
    "days_since_reminder_min": ("days_since_reminder_min", _as_int),
    "days_since_reminder_max": ("days_since_reminder_max", _as_int),
    "current_action_id": ("current_action_id", _as_int),
}

_OUTPUT_FIELDS: dict[str, Callable[[Any], Any]] = {
    "action": _as_int,
    "kpi": _as_int,
    "incident_type": _as_int,
    "risky_item": _as_bool,
    "reason_non_risky": _as_int,
    "to_remind": _as_bool,
    "to_remind_days": _as_int,
    "first_claim_today": _as_bool,
    "last_claim_today": _as_bool,
}


def build_country(config: CountryConfig) -> Country:
    """Kernel ``Country`` from a country definition."""
    return Country(
        country_id=config.country_id,
        name=config.name,
        pivot_account_id=config.pivot_account_id,
        receivable_account_id=config.receivable_account_id,
    )


def build_truth_rule(rule_def: TruthRuleDef) -> TruthRule:
    """Compile one rule definition into an engine ``TruthRule``.

    Raises:
        InvalidRuleDefinitionError: unknown condition/output name, bad
            value, or unknown scope or target.
    """
    rule_id = rule_def.rule_id
    if not rule_id:
        raise InvalidRuleDefinitionError("<empty>", "rule_id is required")

    try:
        scope = RuleScope(rule_def.scope.strip().lower())
    except ValueError as exc:
        raise InvalidRuleDefinitionError(rule_id, f"unknown scope {rule_def.scope!r}") from exc
    try:
        apply_to = ApplyTarget(rule_def.apply_to.strip().lower())
    except ValueError as exc:
        raise InvalidRuleDefinitionError(rule_id, f"unknown apply_to {rule_def.apply_to!r}") from exc

    condition_kwargs: dict[str, Any] = {}
    for name, raw in rule_def.conditions:
        mapping = _CONDITION_FIELDS.get(name)
        if mapping is None:
            raise InvalidRuleDefinitionError(rule_id, f"unknown condition {name!r}")
        target, convert = mapping
        try:
            condition_kwargs[target] = convert(raw)
        except (TypeError, ValueError) as exc:
            raise InvalidRuleDefinitionError(rule_id, f"condition {name!r}: {exc}") from exc

    output_kwargs: dict[str, Any] = {}
    for name, raw in rule_def.outputs:
        convert = _OUTPUT_FIELDS.get(name)
        if convert is None:
            raise InvalidRuleDefinitionError(rule_id, f"unknown output {name!r}")
        try:
            output_kwargs[name] = convert(raw)
        except (TypeError, ValueError) as exc:
            raise InvalidRuleDefinitionError(rule_id, f"output {name!r}: {exc}") from exc

    message = rule_def.message.strip() if rule_def.message and rule_def.message.strip() else None
    return TruthRule(
        rule_id=rule_id,
        conditions=RuleConditions(**condition_kwargs),
        outputs=RuleOutputs(**output_kwargs),
        priority=rule_def.priority,
        enabled=rule_def.enabled,
        scope=scope,
        apply_to=apply_to,
        auto_apply=rule_def.auto_apply,
        message=message,
    )


def build_truth_rules(rule_defs: tuple[TruthRuleDef, ...]) -> tuple[TruthRule, ...]:
    """Compile all rules, ordered by (priority, rule_id)."""
    rules = [build_truth_rule(d) for d in rule_defs]
    return tuple(sorted(rules, key=lambda r: (r.priority, r.rule_id)))
