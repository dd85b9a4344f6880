"""
reco_services.reconciliation_service -- Facade of the reconciliation view core.

Responsibility:
    The collaborator interface exposed to UI and batch callers:
    ``get_reconciliation_view``, ``save``, ``invalidate``, plus the record
    lookups, rule entry points (preview, run-now, import), trigger list,
    invoice suggestions and change-log access built on top of them.

Architecture position:
    Services -- stateful orchestration.  Owns the view cache, the
    reference catalog and the rule repository; composes the view
    assembler, the diff-aware persister and the change-log service.

Invariants enforced:
    - One save batch is one transaction: all records commit or none do.
    - Cache upkeep and change-log append run after the commit and are
      best-effort: their failure is logged and never undoes or fails the
      save.
    - A save that changes linkage ids or archives a row invalidates the
      country's cached views (grouping may change); any other write
      patches cached rows in place.
    - Rule evaluation on save never raises to the caller; a row without a
      configured country is saved without evaluation.

Failure modes:
    - ``ReconciliationSaveError`` -- the write transaction failed and was
      rolled back.
    - ``LedgerEntryNotFoundError`` -- ``get_or_create_reconciliation`` or
      ``suggest_invoices`` on an unknown or archived ledger id.

Usage:
    config = get_active_config()
    service = ReconciliationService(session_factory, SqlAlchemyQueryExecutor(engine), config)

    rows = service.get_reconciliation_view("FR", "/*JSON:{}*/ WHERE action IS NULL")
    record = rows[0].reconciliation.copy()
    record.comments = "checked"
    service.save([record], actor="jdoe")
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Collection, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from reco_config import ReconciliationConfig
from reco_engines.grouping import GroupingCalculator, GroupingItem, GroupingOutcome, classify_account_side
from reco_engines.linkage import LinkageResolver
from reco_engines.rules import (
    EvaluationScope,
    RuleResult,
    apply_counterpart_result,
    apply_rule_result,
    ensure_action_defaults,
)
from reco_kernel.db.engine import session_scope
from reco_kernel.domain.clock import Clock, SystemClock
from reco_kernel.domain.dtos import (
    LINKAGE_FIELDS,
    ChangeDescriptor,
    Country,
    LedgerEntry,
    Reconciliation,
    ReferenceInvoice,
    ViewRow,
)
from reco_kernel.domain.values import AccountSide, ChangeOperation
from reco_kernel.exceptions import LedgerEntryNotFoundError, ReconciliationSaveError
from reco_kernel.logging_config import LogContext, get_logger
from reco_kernel.selectors.ledger_selector import LedgerSelector, ReconciliationSelector
from reco_kernel.services.change_log_service import ChangeLogRecord, ChangeLogService
from reco_services.persister import ReconciliationPersister
from reco_services.query_executor import QueryExecutor
from reco_services.reference_catalog import ReferenceCatalog, SqlReferenceDataSource
from reco_services.rule_context import RuleContextBuilder
from reco_services.rule_repository import RuleRepository
from reco_services.view_assembler import ViewAssembler
from reco_services.view_cache import ViewCache, ViewCacheKey

logger = get_logger("services.reconciliation")

RECONCILIATION_TABLE = "reconciliations"
ACTION_TRIGGER = 7

# Columns whose change can move a row between groups or out of the live view
GROUPING_FIELDS: frozenset[str] = frozenset(LINKAGE_FIELDS) | {"delete_date"}


@dataclass(frozen=True)
class RuleAppliedEvent:
    """Notification sent to rule listeners after a rule touched a record."""

    origin: EvaluationScope
    country_id: str | None
    record_id: str
    rule_id: str
    outputs: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    changed_fields: tuple[str, ...] = ()
    counterpart_of: str | None = None


RuleListener = Callable[[RuleAppliedEvent], None]


class ReconciliationService:
    """
    Entry point for reading and writing the reconciliation view.

    Contract:
        ``get_reconciliation_view(country, filter, include_deleted)``
        returns the (possibly cached) annotated rows.  ``save(records)``
        persists a batch atomically and returns True.  ``invalidate``
        drops cached views.

    Guarantees:
        - Concurrent view requests for one key run one build.
        - A NOOP save writes nothing and journals nothing.

    Non-goals:
        - Does NOT import ledger rows.  The import pipeline owns the
          ledger table; ``apply_import_rules`` runs after it.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        executor: QueryExecutor,
        config: ReconciliationConfig,
        *,
        clock: Clock | None = None,
        catalog: ReferenceCatalog | None = None,
        cache: ViewCache | None = None,
        change_log: ChangeLogService | None = None,
        rules: RuleRepository | None = None,
    ):
        self._session_factory = session_factory
        self._config = config
        self._clock = clock or SystemClock()
        settings = config.settings

        self._catalog = catalog or ReferenceCatalog(SqlReferenceDataSource(session_factory))
        self._cache = cache or ViewCache()
        self._change_log = change_log or ChangeLogService(session_factory, self._clock)
        self._rules = rules or RuleRepository(
            lambda: config.rules,
            ttl_seconds=settings.rules_cache_ttl_seconds,
            clock=self._clock,
        )
        self._calculator = GroupingCalculator(settings.balance_tolerance)
        self._assembler = ViewAssembler(
            executor,
            self._catalog,
            config.countries,
            clock=self._clock,
            calculator=self._calculator,
            automated_actors=settings.automated_actors,
        )
        self._persister = ReconciliationPersister(self._clock)
        self._contexts = RuleContextBuilder()
        self._listeners: list[RuleListener] = []

    @property
    def cache(self) -> ViewCache:
        return self._cache

    @property
    def catalog(self) -> ReferenceCatalog:
        return self._catalog

    @property
    def rules(self) -> RuleRepository:
        return self._rules

    # ------------------------------------------------------------------
    # View
    # ------------------------------------------------------------------

    def get_reconciliation_view(
        self,
        country_id: str,
        filter_text: str | None = None,
        include_deleted: bool = False,
    ) -> list[ViewRow]:
        key = ViewCacheKey.of(country_id, filter_text, include_deleted)
        return self._cache.get(
            key,
            lambda: self._assembler.build(key.country_id, filter_text, include_deleted),
        )

    def count_view(self, country_id: str, filter_text: str | None = None, include_deleted: bool = False) -> int:
        return self._assembler.count(country_id.strip().upper(), filter_text, include_deleted)

    def get_trigger_reconciliations(self, country_id: str) -> list[ViewRow]:
        """Live receivable-side rows whose action is TRIGGER."""
        return [
            row
            for row in self.get_reconciliation_view(country_id)
            if row.account_side is AccountSide.RECEIVABLE and row.reconciliation.action == ACTION_TRIGGER
        ]

    def invalidate(self, country_id: str | None = None) -> int:
        return self._cache.invalidate(country_id)

    def refresh_reference_data(self) -> None:
        """Reload the reference catalogs and drop every cached view."""
        self._catalog.refresh()
        self._cache.invalidate()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get_reconciliation(self, reconciliation_id: str) -> Reconciliation | None:
        with session_scope(self._session_factory) as session:
            return ReconciliationSelector(session).get(reconciliation_id)

    def get_or_create_reconciliation(self, ledger_id: str) -> Reconciliation:
        """The live stored record, or a fresh unsaved one for a live ledger row."""
        with session_scope(self._session_factory) as session:
            ledger = LedgerSelector(session).get(ledger_id)
            if ledger is None:
                raise LedgerEntryNotFoundError(ledger_id)
            record = ReconciliationSelector(session).get(ledger_id)
        return record if record is not None else Reconciliation(id=ledger_id)

    def suggest_invoices(self, ledger_id: str, take: int = 20) -> list[ReferenceInvoice]:
        with session_scope(self._session_factory) as session:
            ledger = LedgerSelector(session).get(ledger_id)
            record = ReconciliationSelector(session).get(ledger_id)
        if ledger is None:
            raise LedgerEntryNotFoundError(ledger_id)
        return self._catalog.suggest_invoices(
            raw_label=ledger.raw_label,
            reconciliation_num=ledger.reconciliation_num,
            reconciliation_origin_num=ledger.reconciliation_origin_num,
            explicit_invoice_id=(record.invoice_id if record else None) or ledger.receivable_invoice_ref,
            guarantee_id=record.guarantee_id if record else None,
            amount=ledger.signed_amount,
            take=take,
        )

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    def save(
        self,
        records: Sequence[Reconciliation],
        *,
        actor: str = "SYSTEM",
        apply_rules: bool = True,
    ) -> bool:
        """
        Persist a batch of edited records in one transaction.

        Edit-scope rules are evaluated on each record first (unless
        ``apply_rules`` is False).

        Raises:
            ReconciliationSaveError: the batch was rolled back.
        """
        self._save_batch(records, actor=actor, edit_rules=apply_rules)
        return True

    def _save_batch(
        self,
        records: Sequence[Reconciliation],
        *,
        actor: str,
        edit_rules: bool,
    ) -> list[tuple[Reconciliation, ChangeDescriptor]]:
        records = list(records)
        if not records:
            return []
        ids = [r.id for r in records]
        ledgers: dict[str, LedgerEntry] = {}

        with LogContext.bind(actor_id=actor):
            try:
                with session_scope(self._session_factory) as session:
                    ledgers = LedgerSelector(session).get_many(ids)
                    stored = ReconciliationSelector(session).get_many(ids)
                    now = self._clock.now()
                    counterparts: dict[str, Reconciliation] = {}
                    for record in records:
                        previous = stored.get(record.id)
                        ensure_action_defaults(
                            record,
                            now,
                            action_changed=previous is not None and previous.action != record.action,
                        )
                        if edit_rules:
                            self._evaluate_on_edit(
                                session, record, ledgers.get(record.id), counterparts, skip=ids
                            )
                    if counterparts:
                        ledgers.update(LedgerSelector(session).get_many(counterparts))
                    results = self._persister.save_batch(
                        session, records + list(counterparts.values()), actor
                    )
            except Exception as exc:
                countries = sorted({ledger.country_id for ledger in ledgers.values()})
                logger.error(
                    "reconciliation_save_failed",
                    extra={"record_ids": ids, "error": str(exc)},
                )
                raise ReconciliationSaveError(
                    countries[0] if len(countries) == 1 else None, ids, str(exc)
                ) from exc

            logger.info(
                "reconciliation_batch_saved",
                extra={"records": len(results), "written": sum(1 for _, d in results if d.is_write)},
            )
            self._after_commit(results, ledgers)
        return results

    def _after_commit(
        self,
        results: Sequence[tuple[Reconciliation, ChangeDescriptor]],
        ledgers: dict[str, LedgerEntry],
    ) -> None:
        writes = [(r, d) for r, d in results if d.is_write]
        if not writes:
            return

        try:
            self._update_cache(writes, ledgers)
        except Exception:
            logger.warning("cache_update_failed", exc_info=True)
            self._cache.invalidate()

        by_country: dict[str | None, list[tuple[Reconciliation, ChangeDescriptor]]] = defaultdict(list)
        for record, descriptor in writes:
            ledger = ledgers.get(record.id)
            by_country[ledger.country_id if ledger else None].append((record, descriptor))
        for country_id, entries in by_country.items():
            if country_id is None:
                # no live ledger row to attribute the change to
                logger.warning(
                    "change_log_skipped",
                    extra={"records": [r.id for r, _ in entries]},
                )
                continue
            try:
                journal = self._change_log.begin_session(country_id)
                for record, descriptor in entries:
                    journal.add(RECONCILIATION_TABLE, record.id, str(descriptor))
                journal.commit()
            except Exception:
                logger.warning(
                    "change_log_failed",
                    extra={"country_id": country_id, "records": [r.id for r, _ in entries]},
                    exc_info=True,
                )

    def _update_cache(
        self,
        writes: Sequence[tuple[Reconciliation, ChangeDescriptor]],
        ledgers: dict[str, LedgerEntry],
    ) -> None:
        to_patch: list[Reconciliation] = []
        to_invalidate: set[str | None] = set()
        for record, descriptor in writes:
            if self._moves_groups(record, descriptor):
                ledger = ledgers.get(record.id)
                to_invalidate.add(ledger.country_id if ledger else None)
            else:
                to_patch.append(record)

        if None in to_invalidate:
            self._cache.invalidate()
        else:
            for country_id in to_invalidate:
                self._cache.invalidate(country_id)
        if to_patch:
            self._cache.patch(to_patch)

    @staticmethod
    def _moves_groups(record: Reconciliation, descriptor: ChangeDescriptor) -> bool:
        if descriptor.operation is ChangeOperation.INSERT:
            return any(getattr(record, name) for name in GROUPING_FIELDS)
        return bool(GROUPING_FIELDS.intersection(descriptor.business_columns))

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def add_rule_listener(self, listener: RuleListener) -> None:
        self._listeners.append(listener)

    def remove_rule_listener(self, listener: RuleListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, event: RuleAppliedEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning("rule_listener_failed", extra={"rule_id": event.rule_id}, exc_info=True)

    def _country(self, country_id: str | None) -> Country | None:
        return self._config.find_country(country_id)

    def _edit_grouping(self, ledger: LedgerEntry, record: Reconciliation, resolver: LinkageResolver) -> GroupingOutcome | None:
        """
        Grouping outcome of the candidate record against the cached live
        view of its country; None when that view is not cached.
        """
        country = self._country(ledger.country_id)
        cached = self._cache.peek(ViewCacheKey.of(ledger.country_id))
        if country is None or cached is None:
            return None
        candidate_keys = resolver.resolve_keys(ledger, record).by_dimension()
        items = [
            GroupingItem(
                row_id=row.id,
                account_side=row.account_side,
                signed_amount=row.ledger.signed_amount,
                keys=candidate_keys if row.id == record.id else row.grouping_keys,
            )
            for row in cached
        ]
        if not any(item.row_id == record.id for item in items):
            items.append(
                GroupingItem(
                    row_id=record.id,
                    account_side=classify_account_side(ledger.account_id, country),
                    signed_amount=ledger.signed_amount,
                    keys=candidate_keys,
                )
            )
        return self._calculator.group(items).get(record.id)

    def _evaluate(
        self,
        record: Reconciliation,
        ledger: LedgerEntry,
        scope: EvaluationScope,
        *,
        grouping: GroupingOutcome | None,
        resolver: LinkageResolver,
    ) -> RuleResult | None:
        country = self._country(ledger.country_id)
        link = resolver.link(ledger, record)
        context = self._contexts.build(
            ledger,
            record,
            country,
            today=self._clock.today(),
            invoice=link.invoice,
            guarantee=link.guarantee,
            grouping=grouping,
        )
        if context is None:
            logger.debug(
                "rule_evaluation_skipped",
                extra={"record_id": record.id, "country_id": ledger.country_id},
            )
            return None
        return self._rules.engine().evaluate(context, scope)

    def _apply(
        self,
        record: Reconciliation,
        ledger: LedgerEntry,
        result: RuleResult,
        actor: str,
    ) -> bool:
        applied = apply_rule_result(record, result, actor=actor, now=self._clock.now())
        if not applied.changed_fields:
            return False
        logger.info(
            "rule_applied",
            extra={
                "record_id": record.id,
                "rule_id": result.rule_id,
                "scope": result.scope.value,
                "outputs_applied": applied.outputs_applied,
                "changed_fields": list(applied.changed_fields),
            },
        )
        self._notify(
            RuleAppliedEvent(
                origin=result.scope,
                country_id=ledger.country_id,
                record_id=record.id,
                rule_id=result.rule_id,
                outputs=result.outputs.as_dict() if applied.outputs_applied else {},
                message=result.message,
                changed_fields=applied.changed_fields,
            )
        )
        return True

    def _apply_counterpart(
        self,
        target: Reconciliation,
        source_id: str,
        country_id: str | None,
        result: RuleResult,
    ) -> bool:
        applied = apply_counterpart_result(target, result, now=self._clock.now())
        if not applied.changed_fields:
            return False
        logger.info(
            "rule_applied_to_counterpart",
            extra={
                "record_id": target.id,
                "counterpart_of": source_id,
                "rule_id": result.rule_id,
                "scope": result.scope.value,
                "changed_fields": list(applied.changed_fields),
            },
        )
        self._notify(
            RuleAppliedEvent(
                origin=result.scope,
                country_id=country_id,
                record_id=target.id,
                rule_id=result.rule_id,
                outputs=result.outputs.for_counterpart().as_dict(),
                changed_fields=applied.changed_fields,
                counterpart_of=source_id,
            )
        )
        return True

    def _apply_to_stored_counterparts(
        self,
        session: Session,
        source_id: str,
        country_id: str | None,
        result: RuleResult,
        grouping: GroupingOutcome | None,
        pending: dict[str, Reconciliation],
        *,
        skip: Collection[str] = (),
    ) -> None:
        """
        Realize counterpart outputs on the stored records of the grouped
        opposite-side rows.  Touched records are collected in ``pending``;
        rows in ``skip`` and archived records are left alone.
        """
        if grouping is None or not result.apply_to.includes_counterpart:
            return
        target_ids = [i for i in grouping.counterpart_ids if i not in skip]
        if not target_ids:
            return
        live = LedgerSelector(session).get_many(target_ids)
        records = ReconciliationSelector(session).get_many([i for i in target_ids if i not in pending])
        for target_id in target_ids:
            if target_id not in live:
                continue
            target = pending.get(target_id) or records.get(target_id)
            if target is None:
                if ReconciliationSelector(session).get(target_id, include_deleted=True) is not None:
                    continue
                target = Reconciliation(id=target_id)
            if self._apply_counterpart(target, source_id, country_id, result):
                pending[target_id] = target

    def _evaluate_on_edit(
        self,
        session: Session,
        record: Reconciliation,
        ledger: LedgerEntry | None,
        counterparts: dict[str, Reconciliation],
        *,
        skip: Collection[str] = (),
    ) -> None:
        if ledger is None:
            return
        try:
            resolver = LinkageResolver(self._catalog.index())
            grouping = self._edit_grouping(ledger, record, resolver)
            result = self._evaluate(
                record,
                ledger,
                EvaluationScope.EDIT,
                grouping=grouping,
                resolver=resolver,
            )
            if result is None:
                return
            self._apply(record, ledger, result, self._config.settings.rules_actor)
            self._apply_to_stored_counterparts(
                session, record.id, ledger.country_id, result, grouping, counterparts, skip=skip
            )
        except Exception:
            logger.warning("rule_evaluation_failed", extra={"record_id": record.id}, exc_info=True)

    def preview_rules(self, ledger_id: str) -> RuleResult | None:
        """Edit-scope evaluation of the stored (or fresh) record; nothing is mutated."""
        with session_scope(self._session_factory) as session:
            ledger = LedgerSelector(session).get(ledger_id)
            record = ReconciliationSelector(session).get(ledger_id)
        if ledger is None:
            return None
        record = record or Reconciliation(id=ledger_id)
        resolver = LinkageResolver(self._catalog.index())
        return self._evaluate(
            record,
            ledger,
            EvaluationScope.EDIT,
            grouping=self._edit_grouping(ledger, record, resolver),
            resolver=resolver,
        )

    def apply_rules_now(self, ledger_ids: Iterable[str], *, actor: str = "SYSTEM") -> int:
        """
        Run-now evaluation over the given rows, saved as one batch.

        Missing or archived ledger rows and archived records are skipped.
        Counterpart outputs land on grouped rows outside ``ledger_ids``.
        Returns the number of records written.
        """
        ids = list(dict.fromkeys(ledger_ids))
        resolver = LinkageResolver(self._catalog.index())
        changed: list[Reconciliation] = []
        counterparts: dict[str, Reconciliation] = {}
        with session_scope(self._session_factory) as session:
            ledgers = LedgerSelector(session).get_many(ids)
            stored = ReconciliationSelector(session).get_many(ids)
            archived = {
                i for i in ids
                if i not in stored and ReconciliationSelector(session).get(i, include_deleted=True) is not None
            }

            for ledger_id in ids:
                ledger = ledgers.get(ledger_id)
                if ledger is None or ledger_id in archived:
                    continue
                record = stored.get(ledger_id) or Reconciliation(id=ledger_id)
                grouping = self._edit_grouping(ledger, record, resolver)
                result = self._evaluate(
                    record,
                    ledger,
                    EvaluationScope.RUN_NOW,
                    grouping=grouping,
                    resolver=resolver,
                )
                if result is None:
                    continue
                if self._apply(record, ledger, result, actor):
                    changed.append(record)
                self._apply_to_stored_counterparts(
                    session, record.id, ledger.country_id, result, grouping, counterparts, skip=ids
                )

        results = self._save_batch(changed + list(counterparts.values()), actor=actor, edit_rules=False)
        return sum(1 for _, d in results if d.is_write)

    def apply_import_rules(self, country_id: str, *, actor: str = "IMPORT") -> int:
        """
        Import-scope evaluation over every live ledger row of a country.

        Grouping flags are computed over the whole batch.  Linkage ids
        found during resolution are backfilled.  Outputs of rules that
        target counterparts land on the grouped opposite-side rows once
        every row had its own evaluation.  Returns the number of
        records written.
        """
        country = self._country(country_id)
        with session_scope(self._session_factory) as session:
            ledgers = LedgerSelector(session).list_live(country_id)
            stored = ReconciliationSelector(session).get_many([l.id for l in ledgers])

        resolver = LinkageResolver(self._catalog.index())
        links = {
            ledger.id: resolver.link(ledger, stored.get(ledger.id) or Reconciliation(id=ledger.id))
            for ledger in ledgers
        }
        outcomes = self._calculator.group(
            [
                GroupingItem(
                    row_id=ledger.id,
                    account_side=classify_account_side(ledger.account_id, country),
                    signed_amount=ledger.signed_amount,
                    keys=links[ledger.id].keys.by_dimension(),
                )
                for ledger in ledgers
            ]
        )

        touched = {
            ledger.id for ledger in ledgers
            if links[ledger.id].backfilled or ledger.id not in stored
        }
        intents: list[tuple[str, RuleResult]] = []
        engine = self._rules.engine()
        today = self._clock.today()
        for ledger in ledgers:
            link = links[ledger.id]
            context = self._contexts.build(
                ledger,
                link.reconciliation,
                country,
                today=today,
                invoice=link.invoice,
                guarantee=link.guarantee,
                grouping=outcomes.get(ledger.id),
            )
            if context is None:
                continue
            result = engine.evaluate(context, EvaluationScope.IMPORT)
            if result is None:
                continue
            if self._apply(link.reconciliation, ledger, result, actor):
                touched.add(ledger.id)
            if result.apply_to.includes_counterpart:
                intents.append((ledger.id, result))

        # counterparts are written after every row had its own evaluation
        for source_id, result in intents:
            for target_id in outcomes[source_id].counterpart_ids:
                if self._apply_counterpart(links[target_id].reconciliation, source_id, country_id, result):
                    touched.add(target_id)

        changed = [links[ledger.id].reconciliation for ledger in ledgers if ledger.id in touched]
        results = self._save_batch(changed, actor=actor, edit_rules=False)
        written = sum(1 for _, d in results if d.is_write)
        logger.info(
            "import_rules_applied",
            extra={"country_id": country_id, "rows": len(ledgers), "written": written},
        )
        return written

    # ------------------------------------------------------------------
    # Change log
    # ------------------------------------------------------------------

    def pending_changes(self, country_id: str) -> list[ChangeLogRecord]:
        return self._change_log.pending(country_id)

    def mark_synchronized(self, change_ids: Iterable[int]) -> int:
        return self._change_log.mark_synchronized(change_ids)
