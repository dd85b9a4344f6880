"""
reco_services -- Package init and public API.

Responsibility:
    Stateful orchestration over the pure engines: view assembly against the
    database, the coalescing view cache, the reference catalog, the
    TTL-cached truth table, the diff-aware persister and the
    ``ReconciliationService`` facade that composes them.  This is the
    **only** layer that holds database sessions, shared caches or reads
    the wall clock (through an injected Clock).

Architecture position:
    Services -- stateful orchestration over engines + kernel + config.

    Dependency direction:
        reco_services/ -> reco_engines/  (allowed)
        reco_services/ -> reco_kernel/   (allowed)
        reco_services/ -> reco_config/   (allowed)
        reco_engines/  -> reco_services/ (FORBIDDEN)
        reco_kernel/   -> reco_services/ (FORBIDDEN)

Invariants enforced:
    - Shared state (view cache, reference catalog, rule repository) is
      owned by a service instance, never module-global.

Audit relevance:
    - This package is the canonical import surface for UI and batch
      callers.  Changes to __all__ must be reviewed for
      backwards-compatibility.
"""

from reco_kernel.logging_config import get_logger

logger = get_logger("services")

from reco_services.persister import ReconciliationPersister, diff_reconciliation
from reco_services.query_executor import QueryExecutor, SqlAlchemyQueryExecutor
from reco_services.reconciliation_service import ReconciliationService, RuleAppliedEvent
from reco_services.reference_catalog import ReferenceCatalog, ReferenceDataSource, SqlReferenceDataSource
from reco_services.rule_context import RuleContextBuilder
from reco_services.rule_repository import RuleRepository
from reco_services.view_assembler import ViewAssembler, ViewQueryBuilder
from reco_services.view_cache import ViewCache, ViewCacheKey

__all__ = [
    "QueryExecutor",
    "ReconciliationPersister",
    "ReconciliationService",
    "ReferenceCatalog",
    "ReferenceDataSource",
    "RuleAppliedEvent",
    "RuleContextBuilder",
    "RuleRepository",
    "SqlAlchemyQueryExecutor",
    "SqlReferenceDataSource",
    "ViewAssembler",
    "ViewCache",
    "ViewCacheKey",
    "ViewQueryBuilder",
    "diff_reconciliation",
]
