"""
Typed Exception Hierarchy for the Reconciliation Kernel.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ReconciliationKernelError:

    ReconciliationKernelError (base)
    |
    +-- ConfigurationError
    |   +-- CountryNotConfiguredError
    |   +-- InvalidRuleDefinitionError
    |
    +-- RecordError
    |   +-- LedgerEntryNotFoundError
    |
    +-- PersistenceError
    |   +-- ReconciliationSaveError
    |
    +-- FilterError
        +-- FilterRejectedError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Configuration   | COUNTRY_NOT_CONFIGURED      | Explicit lookup of an unknown country
                | INVALID_RULE_DEFINITION     | Truth-table row cannot be parsed
----------------|-----------------------------|-----------------------------------------
Record          | LEDGER_ENTRY_NOT_FOUND      | Ledger ID doesn't exist (or archived)
----------------|-----------------------------|-----------------------------------------
Persistence     | RECONCILIATION_SAVE_FAILED  | Save batch rolled back
----------------|-----------------------------|-----------------------------------------
Filter          | FILTER_REJECTED             | Fragment hit the structural denylist

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Save failures are the only errors UI-facing callers should expect:

    try:
        service.save(records, actor="jdoe")
    except ReconciliationSaveError as e:
        notify_user(f"Save failed ({e.code}) for {e.record_ids}")

2. Rejected filters never reach callers of the view; the assembler catches
   FilterRejectedError, logs it, and proceeds with no extra predicate.

3. Configuration gaps degrade the view (rows stay visible, unannotated).
   CountryNotConfiguredError is raised only by explicit lookups.
"""

from collections.abc import Sequence


class ReconciliationKernelError(Exception):
    """
    Base exception for all reconciliation kernel errors.

    All subclasses carry a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "RECO_KERNEL_ERROR"


# Configuration exceptions


class ConfigurationError(ReconciliationKernelError):
    """Base exception for configuration errors."""

    code: str = "CONFIGURATION_ERROR"


class CountryNotConfiguredError(ConfigurationError):
    """No country profile (pivot/receivable accounts) is configured."""

    code: str = "COUNTRY_NOT_CONFIGURED"

    def __init__(self, country_id: str):
        self.country_id = country_id
        super().__init__(f"Country not configured: {country_id}")


class InvalidRuleDefinitionError(ConfigurationError):
    """A truth-table rule row has an unknown field or malformed value."""

    code: str = "INVALID_RULE_DEFINITION"

    def __init__(self, rule_id: str, reason: str):
        self.rule_id = rule_id
        self.reason = reason
        super().__init__(f"Invalid rule {rule_id}: {reason}")


# Record exceptions


class RecordError(ReconciliationKernelError):
    """Base exception for record lookup errors."""

    code: str = "RECORD_ERROR"


class LedgerEntryNotFoundError(RecordError):
    """Ledger entry was not found (or is archived)."""

    code: str = "LEDGER_ENTRY_NOT_FOUND"

    def __init__(self, ledger_id: str):
        self.ledger_id = ledger_id
        super().__init__(f"Ledger entry not found: {ledger_id}")


# Persistence exceptions


class PersistenceError(ReconciliationKernelError):
    """Base exception for write-path errors."""

    code: str = "PERSISTENCE_ERROR"


class ReconciliationSaveError(PersistenceError):
    """
    A save batch failed and was rolled back in full.

    No record of the batch was written.  The underlying cause is chained
    as ``__cause__``.
    """

    code: str = "RECONCILIATION_SAVE_FAILED"

    def __init__(self, country_id: str | None, record_ids: Sequence[str], reason: str):
        self.country_id = country_id
        self.record_ids = tuple(record_ids)
        self.reason = reason
        super().__init__(
            f"Save of {len(self.record_ids)} reconciliation(s) failed "
            f"for country {country_id}: {reason}"
        )


# Filter exceptions


class FilterError(ReconciliationKernelError):
    """Base exception for caller-supplied filter fragments."""

    code: str = "FILTER_ERROR"


class FilterRejectedError(FilterError):
    """Filter fragment contains a structural SQL keyword or separator."""

    code: str = "FILTER_REJECTED"

    def __init__(self, fragment: str, token: str):
        self.fragment = fragment
        self.token = token
        super().__init__(f"Filter fragment rejected (contains {token.strip()!r})")
