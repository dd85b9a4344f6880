"""
reco_config -- single public entrypoint for reconciliation configuration.

Responsibility:
    Provides the way to obtain configuration at runtime through
    ``get_active_config()``.  Returns a ``ReconciliationConfig`` -- the
    runtime artifact holding country account pairs, the compiled truth
    table and view settings.

Architecture position:
    Configuration -- YAML-driven, validated before use.  This package sits
    above ``reco_kernel`` and ``reco_engines`` and below
    ``reco_services``.  The kernel and engines MUST NEVER import from
    ``reco_config``; bridges in this package translate definitions into
    their inputs.

Invariants enforced:
    - Validation: the configuration must pass ``validate_configuration``
      before it is compiled.
    - Deterministic identity: the same YAML always yields the same
      checksum.

Failure modes:
    - ``FileNotFoundError`` -- configuration file missing.
    - ``ValueError`` -- validation failures (all errors listed).

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``RECO_CONFIG_TRACE`` log entry with config id, version, checksum,
    country count and rule count.
"""

from __future__ import annotations

import logging
from pathlib import Path

from reco_config.compiler import ReconciliationConfig, compile_config
from reco_config.loader import load_config_file
from reco_config.validator import validate_configuration

_logger = logging.getLogger("reco_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"

__all__ = [
    "ReconciliationConfig",
    "get_active_config",
]


def get_active_config(config_path: Path | None = None) -> ReconciliationConfig:
    """The public configuration entrypoint.

    Guarantees:
        - The returned ``ReconciliationConfig`` has passed validation.
        - A ``RECO_CONFIG_TRACE`` log entry is emitted on every
          successful call.

    Non-goals:
        - Does NOT cache across calls; the service holds the returned
          config for its lifetime.

    Args:
        config_path: Override path to a configuration YAML file.
            Defaults to reco_config/sets/default.yaml.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        ValueError: If configuration validation fails.
    """
    path = config_path or _DEFAULT_CONFIG_PATH
    config_set = load_config_file(path)

    validation = validate_configuration(config_set)
    if not validation.is_valid:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in validation.errors)
        )
    for warning in validation.warnings:
        _logger.warning("config_validation_warning", extra={"warning": warning})

    config = compile_config(config_set)

    _logger.info(
        "RECO_CONFIG_TRACE",
        extra={
            "trace_type": "RECO_CONFIG_TRACE",
            "config_set_id": config.config_id,
            "config_set_version": config.config_version,
            "checksum": config.checksum,
            "country_count": len(config.countries),
            "rule_count": len(config.rules),
        },
    )
    return config
