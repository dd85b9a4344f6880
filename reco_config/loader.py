"""
Configuration Loader (``reco_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into typed
``reco_config.schema`` dataclass instances.  Runtime callers go through
``reco_config.get_active_config()``; this module is build/test tooling.

Architecture position
---------------------
**Config layer**.  Depends on nothing but PyYAML and the schema.

Invariants enforced
-------------------
* Required keys raise ``KeyError`` when missing; no silent defaults for
  country ids or account ids.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the raw
  document, used as the configuration identity.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Malformed values (non-numeric tolerance, non-mapping conditions)
  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from reco_config.schema import (
    CountryConfig,
    ReconciliationConfigurationSet,
    TruthRuleDef,
    ViewSettings,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _as_pairs(value: Any, what: str, rule_id: str) -> tuple[tuple[str, Any], ...]:
    if value is None:
        return ()
    if not isinstance(value, dict):
        raise ValueError(f"Rule {rule_id!r}: {what} must be a mapping, got {type(value).__name__}")
    return tuple((str(k), v) for k, v in value.items())


def parse_country(data: dict[str, Any]) -> CountryConfig:
    """Parse a CountryConfig from a dict."""
    country_id = str(data["country_id"]).strip().upper()
    return CountryConfig(
        country_id=country_id,
        name=str(data.get("name", country_id)),
        pivot_account_id=str(data["pivot_account_id"]).strip(),
        receivable_account_id=str(data["receivable_account_id"]).strip(),
    )


def parse_rule(data: dict[str, Any]) -> TruthRuleDef:
    """Parse a TruthRuleDef from a dict.  Names and values are not checked here."""
    rule_id = str(data["rule_id"]).strip()
    message = data.get("message")
    return TruthRuleDef(
        rule_id=rule_id,
        priority=int(data.get("priority", 100)),
        enabled=bool(data.get("enabled", True)),
        scope=str(data.get("scope", "both")).strip().lower(),
        apply_to=str(data.get("apply_to", "self")).strip().lower(),
        auto_apply=bool(data.get("auto_apply", True)),
        message=str(message) if message is not None else None,
        conditions=_as_pairs(data.get("conditions"), "conditions", rule_id),
        outputs=_as_pairs(data.get("outputs"), "outputs", rule_id),
    )


def parse_settings(data: dict[str, Any] | None) -> ViewSettings:
    """Parse ViewSettings; absent keys keep their defaults."""
    if not data:
        return ViewSettings()
    defaults = ViewSettings()
    raw_tolerance = data.get("balance_tolerance", defaults.balance_tolerance)
    try:
        tolerance = Decimal(str(raw_tolerance))
    except InvalidOperation as exc:
        raise ValueError(f"balance_tolerance is not a number: {raw_tolerance!r}") from exc
    actors = data.get("automated_actors", defaults.automated_actors)
    if isinstance(actors, str):
        actors = [actors]
    return ViewSettings(
        balance_tolerance=tolerance,
        rules_cache_ttl_seconds=int(data.get("rules_cache_ttl_seconds", defaults.rules_cache_ttl_seconds)),
        automated_actors=tuple(str(a).strip().upper() for a in actors if str(a).strip()),
        rules_actor=str(data.get("rules_actor", defaults.rules_actor)),
    )


def parse_configuration_set(data: dict[str, Any]) -> ReconciliationConfigurationSet:
    """Parse a whole configuration document."""
    return ReconciliationConfigurationSet(
        config_id=str(data["config_id"]),
        version=int(data.get("version", 1)),
        checksum=compute_checksum(data),
        countries=tuple(parse_country(c) for c in data.get("countries") or ()),
        rules=tuple(parse_rule(r) for r in data.get("rules") or ()),
        settings=parse_settings(data.get("settings")),
    )


def load_config_file(path: Path) -> ReconciliationConfigurationSet:
    """Load and parse one configuration YAML file."""
    return parse_configuration_set(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
