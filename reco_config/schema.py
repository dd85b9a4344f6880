"""
ReconciliationConfigurationSet schema.

Defines the human-authored, reviewable source artifact for reconciliation
configuration.  YAML files are parsed into these types by the loader,
checked by the validator, and compiled into a ``ReconciliationConfig`` by
the compiler.

Key distinction:
  ReconciliationConfigurationSet = source artifact (human-authored, versioned)
  ReconciliationConfig           = runtime artifact (validated, frozen)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

# ---------------------------------------------------------------------------
# Countries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CountryConfig:
    """The pivot/receivable account pair of one country (booking entity)."""

    country_id: str
    name: str
    pivot_account_id: str
    receivable_account_id: str


# ---------------------------------------------------------------------------
# Truth table rules (declarative data, no executable logic)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TruthRuleDef:
    """One row of the truth table as authored.

    ``conditions`` and ``outputs`` stay as raw (name, value) pairs here;
    names and values are checked when the rule is compiled.
    """

    rule_id: str
    priority: int = 100
    enabled: bool = True
    scope: str = "both"
    apply_to: str = "self"
    auto_apply: bool = True
    message: str | None = None
    conditions: tuple[tuple[str, Any], ...] = ()
    outputs: tuple[tuple[str, Any], ...] = ()


# ---------------------------------------------------------------------------
# View settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ViewSettings:
    """Tunables of the view and rule paths."""

    balance_tolerance: Decimal = Decimal("0.01")
    rules_cache_ttl_seconds: int = 120
    # modified_by values that count as automated for the "updated" flag
    automated_actors: tuple[str, ...] = ("SYSTEM", "IMPORT", "RULES")
    rules_actor: str = "RULES"


# ---------------------------------------------------------------------------
# Top-level configuration set
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReconciliationConfigurationSet:
    """Human-authored source artifact for reconciliation configuration.

    Attributes:
        config_id: Unique identifier (e.g., "default")
        version: Configuration version number
        checksum: SHA-256 of canonical serialization of the source YAML
        countries: Country account definitions
        rules: Truth table rows, in file order
        settings: View and rule tunables
    """

    config_id: str
    version: int
    checksum: str
    countries: tuple[CountryConfig, ...] = ()
    rules: tuple[TruthRuleDef, ...] = ()
    settings: ViewSettings = ViewSettings()
