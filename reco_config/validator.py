"""
Configuration Validator (``reco_config.validator``).

Responsibility
--------------
Validates a ``ReconciliationConfigurationSet`` before it is compiled,
ensuring structural integrity of countries, rules and settings.

Architecture position
---------------------
**Config layer** -- build-time validation.  Called by
``reco_config.get_active_config`` after loading and before compilation.

Invariants enforced
-------------------
* Country uniqueness -- duplicate country ids are errors.
* Account distinctness -- a country's pivot and receivable accounts must
  differ and be non-empty.
* Rule id uniqueness -- duplicate rule ids are errors.
* Rule compilability -- every rule must compile (known condition and
  output names, well-typed values, known scope and target).
* Settings sanity -- tolerance must be positive, TTL non-negative.

Failure modes
-------------
* Validation errors (``ConfigValidationResult.errors``)  -> configuration
  MUST NOT be compiled.
* Validation warnings (``ConfigValidationResult.warnings``)  ->
  configuration may be compiled but should be reviewed.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from reco_config.bridges import build_truth_rule
from reco_config.schema import ReconciliationConfigurationSet
from reco_kernel.exceptions import InvalidRuleDefinitionError


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    Contract
    --------
    * ``is_valid`` returns ``True`` only when ``errors`` is empty.
    * Warnings do not block compilation but should be reviewed.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_configuration(config: ReconciliationConfigurationSet) -> ConfigValidationResult:
    """Validate a configuration set; never raises."""
    result = ConfigValidationResult()
    _validate_countries(config, result)
    _validate_rule_uniqueness(config, result)
    _validate_rule_definitions(config, result)
    _validate_settings(config, result)
    return result


def _validate_countries(config: ReconciliationConfigurationSet, result: ConfigValidationResult) -> None:
    counts = Counter(c.country_id for c in config.countries)
    for country_id, count in sorted(counts.items()):
        if count > 1:
            result.add_error(f"Duplicate country: {country_id} ({count} definitions)")

    for country in config.countries:
        if not country.pivot_account_id or not country.receivable_account_id:
            result.add_error(f"Country {country.country_id}: both account ids are required")
            continue
        if country.pivot_account_id.casefold() == country.receivable_account_id.casefold():
            result.add_error(
                f"Country {country.country_id}: pivot and receivable accounts are the same "
                f"({country.pivot_account_id})"
            )

    if not config.countries:
        result.add_warning("No countries configured; every row will be on the UNKNOWN side")


def _validate_rule_uniqueness(config: ReconciliationConfigurationSet, result: ConfigValidationResult) -> None:
    counts = Counter(r.rule_id for r in config.rules)
    for rule_id, count in sorted(counts.items()):
        if count > 1:
            result.add_error(f"Duplicate rule id: {rule_id!r} ({count} definitions)")


def _validate_rule_definitions(config: ReconciliationConfigurationSet, result: ConfigValidationResult) -> None:
    for rule_def in config.rules:
        try:
            rule = build_truth_rule(rule_def)
        except InvalidRuleDefinitionError as exc:
            result.add_error(str(exc))
            continue
        if not rule.outputs.as_dict() and not rule.message:
            result.add_warning(f"Rule {rule.rule_id!r} has neither outputs nor a message")


def _validate_settings(config: ReconciliationConfigurationSet, result: ConfigValidationResult) -> None:
    settings = config.settings
    if settings.balance_tolerance <= 0:
        result.add_error(f"balance_tolerance must be positive, got {settings.balance_tolerance}")
    if settings.rules_cache_ttl_seconds < 0:
        result.add_error(
            f"rules_cache_ttl_seconds must not be negative, got {settings.rules_cache_ttl_seconds}"
        )
