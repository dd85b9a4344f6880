"""
Configuration Compiler -- ReconciliationConfigurationSet -> ReconciliationConfig.

Produces the frozen runtime artifact consumed by the services: countries
keyed by id and the truth table compiled into engine rules.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from reco_config.bridges import build_country, build_truth_rules
from reco_config.schema import ReconciliationConfigurationSet, ViewSettings
from reco_engines.rules import TruthRule
from reco_kernel.domain.dtos import Country
from reco_kernel.exceptions import CountryNotConfiguredError


@dataclass(frozen=True)
class ReconciliationConfig:
    """Validated, frozen runtime configuration.

    Attributes:
        config_id: Source configuration identifier
        config_version: Source configuration version
        checksum: Matches source ReconciliationConfigurationSet
        countries: Country profiles keyed by upper-cased country id
        rules: Compiled truth table, ordered by (priority, rule_id)
        settings: View and rule tunables
    """

    config_id: str
    config_version: int
    checksum: str
    countries: Mapping[str, Country] = field(default_factory=dict)
    rules: tuple[TruthRule, ...] = ()
    settings: ViewSettings = ViewSettings()

    def find_country(self, country_id: str | None) -> Country | None:
        """Country profile or None; used on paths that degrade gracefully."""
        if not country_id:
            return None
        return self.countries.get(country_id.strip().upper())

    def country(self, country_id: str) -> Country:
        """Country profile.

        Raises:
            CountryNotConfiguredError: no profile for ``country_id``.
        """
        country = self.find_country(country_id)
        if country is None:
            raise CountryNotConfiguredError(country_id)
        return country


def compile_config(config_set: ReconciliationConfigurationSet) -> ReconciliationConfig:
    """Compile a validated configuration set.

    Raises:
        InvalidRuleDefinitionError: a rule does not compile.
    """
    countries = {c.country_id.upper(): build_country(c) for c in config_set.countries}
    return ReconciliationConfig(
        config_id=config_set.config_id,
        config_version=config_set.version,
        checksum=config_set.checksum,
        countries=MappingProxyType(countries),
        rules=build_truth_rules(config_set.rules),
        settings=config_set.settings,
    )
