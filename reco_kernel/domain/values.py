"""
Small value enums shared across kernel, engines and services.

All enums are ``str, Enum`` so they serialize cleanly into structured log
payloads and YAML.
"""

from enum import Enum


class AccountSide(str, Enum):
    """Which mirrored accounting side a ledger row belongs to."""

    PIVOT = "P"
    RECEIVABLE = "R"
    UNKNOWN = "U"


class Tri(str, Enum):
    """
    Three-valued truth for rule-context inputs.

    UNKNOWN means the value could not be derived (no invoice linked, no
    grouping computed, ...).  It is never the same as FALSE: a rule that
    constrains a field whose value is UNKNOWN does not match.
    """

    UNKNOWN = "unknown"
    TRUE = "true"
    FALSE = "false"

    @classmethod
    def of(cls, value: bool | None) -> "Tri":
        if value is None:
            return cls.UNKNOWN
        return cls.TRUE if value else cls.FALSE

    @property
    def is_known(self) -> bool:
        return self is not Tri.UNKNOWN

    def as_bool(self) -> bool | None:
        if self is Tri.UNKNOWN:
            return None
        return self is Tri.TRUE


class ChangeOperation(str, Enum):
    """Outcome of a single diff-aware save."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    NOOP = "NOOP"
