"""
Tests for the ReconciliationService facade.

Covers:
- View caching (second read is a hit)
- Save: patch vs invalidate, change-log journaling, NOOP writes nothing
- Save failure rolls the whole batch back
- Post-commit failures (cache, change log) never fail the save
- Edit-scope rules on save (message-only suggestion)
- Import-scope rules (outputs only on rows without an action)
- Counterpart outputs on grouped opposite-side rows (import, edit, run-now)
- Preview, run-now, triggers, listeners, record lookups
"""

from datetime import datetime, timezone

import pytest

from reco_engines.rules import (
    ApplyTarget,
    EvaluationScope,
    RuleConditions,
    RuleOutputs,
    RuleScope,
    TruthRule,
)
from reco_kernel.domain.dtos import Reconciliation
from reco_kernel.exceptions import LedgerEntryNotFoundError, ReconciliationSaveError
from reco_services.persister import ReconciliationPersister
from reco_services.reconciliation_service import ReconciliationService
from reco_services.rule_repository import RuleRepository
from reco_services.view_cache import ViewCacheKey

FR_PIVOT = "PIVOT-FR-001"
FR_RECEIVABLE = "RECV-FR-001"
TOKEN = "BGI0000000000042"
EARLIER = datetime(2024, 3, 1, tzinfo=timezone.utc)

SUGGESTION = "EDIT_MATCHED_BALANCED_SUGGESTION"
UNMATCHED_COLLECTION = "PIVOT_COLLECTION_CREDIT_UNMATCHED"


def _messages(captured_logs, message):
    return [r for r in captured_logs() if r["message"] == message]


@pytest.fixture
def matched_pair(add_ledger):
    """A balanced pivot/receivable pair sharing one invoice token."""
    add_ledger("P1", FR_PIVOT, "100.00", raw_label=f"COLLECTION {TOKEN}")
    add_ledger("R1", FR_RECEIVABLE, "-100.00", receivable_dw_ref=TOKEN)


# =============================================================================
# View
# =============================================================================


class TestViewCaching:

    def test_second_read_is_a_hit(self, service, executor, add_ledger):
        add_ledger("P1", FR_PIVOT, "1")

        first = service.get_reconciliation_view("FR")
        second = service.get_reconciliation_view("fr")

        assert executor.calls == 1
        assert [r.id for r in first] == [r.id for r in second]

    def test_filters_are_cached_separately(self, service, executor, add_ledger):
        add_ledger("P1", FR_PIVOT, "1")

        service.get_reconciliation_view("FR")
        service.get_reconciliation_view("FR", "action IS NULL")
        service.get_reconciliation_view("FR", "WHERE (action IS NULL)")

        assert executor.calls == 2

    def test_invalidate_forces_rebuild(self, service, executor, add_ledger):
        add_ledger("P1", FR_PIVOT, "1")
        service.get_reconciliation_view("FR")

        service.invalidate("FR")
        service.get_reconciliation_view("FR")

        assert executor.calls == 2

    def test_refresh_reference_data(self, service, add_ledger, add_invoice):
        add_ledger("P1", FR_PIVOT, "1", raw_label=TOKEN)
        assert service.get_reconciliation_view("FR")[0].invoice is None

        add_invoice(TOKEN, status="OPEN")
        assert service.get_reconciliation_view("FR")[0].invoice is None

        service.refresh_reference_data()

        assert service.get_reconciliation_view("FR")[0].invoice.invoice_id == TOKEN


# =============================================================================
# Save
# =============================================================================


class TestSave:

    def test_plain_edit_patches_cache(self, service, executor, add_ledger):
        add_ledger("P1", FR_PIVOT, "1")
        record = service.get_reconciliation_view("FR")[0].reconciliation.copy()
        record.comments = "checked"

        assert service.save([record], actor="jdoe") is True

        row = service.get_reconciliation_view("FR")[0]
        assert executor.calls == 1
        assert row.reconciliation.comments == "checked"
        assert row.reconciliation.modified_by == "jdoe"
        assert service.get_reconciliation("P1").comments == "checked"

    def test_linkage_change_invalidates_country(self, service, executor, add_ledger):
        add_ledger("P1", FR_PIVOT, "1")
        add_ledger("B1", "PIVOT-BE-001", "1", country_id="BE")
        service.get_reconciliation_view("FR")
        service.get_reconciliation_view("BE")
        record = service.get_or_create_reconciliation("P1")
        record.invoice_id = TOKEN

        service.save([record], actor="jdoe")

        assert service.cache.peek(ViewCacheKey.of("FR")) is None
        assert service.cache.peek(ViewCacheKey.of("BE")) is not None
        row = service.get_reconciliation_view("FR")[0]
        assert row.canonical_key == TOKEN
        assert executor.calls == 3

    def test_archive_drops_row_from_live_view(self, service, add_ledger, add_reconciliation):
        add_ledger("P1", FR_PIVOT, "1")
        add_ledger("P2", FR_PIVOT, "1")
        add_reconciliation("P2")
        service.get_reconciliation_view("FR")
        record = service.get_reconciliation("P2")
        record.delete_date = EARLIER

        service.save([record], actor="jdoe")

        assert [r.id for r in service.get_reconciliation_view("FR")] == ["P1"]
        assert service.get_reconciliation("P2") is None

    def test_change_log_journals_writes_only(self, service, add_ledger):
        add_ledger("P1", FR_PIVOT, "1")
        record = service.get_or_create_reconciliation("P1")
        record.comments = "first"

        service.save([record], actor="jdoe")
        service.save([record], actor="jdoe")
        record.comments = "second"
        service.save([record], actor="jdoe")

        pending = service.pending_changes("FR")
        assert [(c.table_name, c.record_id, c.operation) for c in pending] == [
            ("reconciliations", "P1", "INSERT"),
            ("reconciliations", "P1", "UPDATE(comments,modified_by,last_modified)"),
        ]
        assert service.mark_synchronized([c.change_id for c in pending]) == 2
        assert service.pending_changes("FR") == []

    def test_empty_batch(self, service):
        assert service.save([]) is True

    def test_action_change_resets_status_and_date(self, service, add_ledger, add_reconciliation):
        add_ledger("P1", FR_PIVOT, "1")
        add_reconciliation("P1", action=1, action_status=True, action_date=EARLIER)
        record = service.get_reconciliation("P1")
        record.action = 4

        service.save([record], actor="jdoe")

        stored = service.get_reconciliation("P1")
        assert stored.action == 4
        assert stored.action_status is False
        assert stored.action_date == datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)

    def test_unconfigured_country_saved_without_rules(self, service, add_ledger, captured_logs):
        add_ledger("X1", "ACC-1", "1", country_id="XX")
        record = Reconciliation(id="X1", comments="note")

        service.save([record], actor="jdoe")

        assert service.get_reconciliation("X1").comments == "note"
        assert _messages(captured_logs, "rule_evaluation_skipped")

    def test_record_without_ledger_is_not_journaled(self, service, captured_logs):
        service.save([Reconciliation(id="ORPHAN", comments="note")], actor="jdoe")

        assert service.get_reconciliation("ORPHAN").comments == "note"
        assert service.pending_changes("") == []
        skipped = _messages(captured_logs, "change_log_skipped")
        assert skipped[0]["records"] == ["ORPHAN"]


class TestSaveFailures:

    def test_failed_batch_rolls_back(self, service, add_ledger, captured_logs, monkeypatch):
        add_ledger("L-1", FR_PIVOT, "1")
        add_ledger("L-2", FR_PIVOT, "1")
        original = ReconciliationPersister.save

        def flaky(self, session, record, actor):
            if record.id == "L-2":
                raise RuntimeError("disk full")
            return original(self, session, record, actor)

        monkeypatch.setattr(ReconciliationPersister, "save", flaky)

        with pytest.raises(ReconciliationSaveError) as exc_info:
            service.save([Reconciliation(id="L-1", comments="a"), Reconciliation(id="L-2", comments="b")])

        assert exc_info.value.country_id == "FR"
        assert exc_info.value.record_ids == ("L-1", "L-2")
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert service.get_reconciliation("L-1") is None
        assert service.pending_changes("FR") == []
        assert _messages(captured_logs, "reconciliation_save_failed")

    def test_cache_failure_does_not_fail_save(self, service, add_ledger, captured_logs, monkeypatch):
        add_ledger("P1", FR_PIVOT, "1")
        service.get_reconciliation_view("FR")

        def broken_patch(records):
            raise RuntimeError("cache broken")

        monkeypatch.setattr(service.cache, "patch", broken_patch)

        assert service.save([Reconciliation(id="P1", comments="x")]) is True
        assert service.get_reconciliation("P1").comments == "x"
        assert service.cache.cached_keys() == []
        assert _messages(captured_logs, "cache_update_failed")

    def test_change_log_failure_does_not_fail_save(
        self, session_factory, executor, active_config, deterministic_clock, add_ledger, captured_logs
    ):
        class BrokenChangeLog:
            def begin_session(self, country_id):
                raise RuntimeError("journal offline")

        service = ReconciliationService(
            session_factory,
            executor,
            active_config,
            clock=deterministic_clock,
            change_log=BrokenChangeLog(),
        )
        add_ledger("P1", FR_PIVOT, "1")

        assert service.save([Reconciliation(id="P1", comments="x")]) is True
        assert service.get_reconciliation("P1").comments == "x"
        failures = _messages(captured_logs, "change_log_failed")
        assert failures[0]["country_id"] == "FR"
        assert failures[0]["level"] == "WARNING"


# =============================================================================
# Rules
# =============================================================================


class TestEditRules:

    def test_suggestion_appended_on_save(self, service, matched_pair):
        service.get_reconciliation_view("FR")
        record = service.get_or_create_reconciliation("P1")
        record.invoice_id = TOKEN

        service.save([record], actor="jdoe")

        stored = service.get_reconciliation("P1")
        assert stored.comments == (
            f"[2024-03-15 09:00] RULES: [Rule {SUGGESTION}] "
            "Matched and balanced across accounts, consider closing"
        )
        assert stored.action is None
        assert stored.modified_by == "jdoe"

    def test_no_suggestion_without_cached_view(self, service, matched_pair):
        record = service.get_or_create_reconciliation("P1")
        record.invoice_id = TOKEN

        service.save([record], actor="jdoe")

        assert service.get_reconciliation("P1").comments is None

    def test_rules_can_be_skipped(self, service, matched_pair):
        service.get_reconciliation_view("FR")
        record = service.get_or_create_reconciliation("P1")
        record.invoice_id = TOKEN

        service.save([record], actor="jdoe", apply_rules=False)

        assert service.get_reconciliation("P1").comments is None

    def test_listener_notified(self, service, matched_pair):
        events = []
        service.add_rule_listener(events.append)
        service.get_reconciliation_view("FR")
        record = service.get_or_create_reconciliation("P1")
        record.invoice_id = TOKEN

        service.save([record], actor="jdoe")

        assert len(events) == 1
        event = events[0]
        assert event.origin is EvaluationScope.EDIT
        assert event.rule_id == SUGGESTION
        assert event.country_id == "FR"
        assert event.outputs == {}
        assert event.changed_fields == ("comments",)

    def test_failing_listener_is_logged(self, service, matched_pair, captured_logs):
        def broken(event):
            raise RuntimeError("listener down")

        service.add_rule_listener(broken)
        service.get_reconciliation_view("FR")
        record = service.get_or_create_reconciliation("P1")
        record.invoice_id = TOKEN

        assert service.save([record], actor="jdoe") is True
        assert _messages(captured_logs, "rule_listener_failed")

    def test_removed_listener_not_called(self, service, matched_pair):
        events = []
        service.add_rule_listener(events.append)
        service.remove_rule_listener(events.append)
        service.get_reconciliation_view("FR")
        record = service.get_or_create_reconciliation("P1")
        record.invoice_id = TOKEN

        service.save([record], actor="jdoe")

        assert events == []


class TestPreviewAndRunNow:

    def test_preview_does_not_mutate(self, service, matched_pair, add_reconciliation):
        add_reconciliation("P1", invoice_id=TOKEN)
        service.get_reconciliation_view("FR")

        result = service.preview_rules("P1")

        assert result.rule_id == SUGGESTION
        assert result.auto_apply is False
        assert service.get_reconciliation("P1").comments is None

    def test_preview_unknown_ledger(self, service):
        assert service.preview_rules("nope") is None

    def test_preview_without_grouping_finds_nothing(self, service, matched_pair, add_reconciliation):
        add_reconciliation("P1", invoice_id=TOKEN)

        assert service.preview_rules("P1") is None

    def test_apply_rules_now(self, service, matched_pair, add_reconciliation, add_ledger):
        add_reconciliation("P1", invoice_id=TOKEN)
        add_ledger("A1", FR_PIVOT, "1")
        add_reconciliation("A1", delete_date=EARLIER)
        service.get_reconciliation_view("FR")

        written = service.apply_rules_now(["P1", "A1", "MISSING", "P1"], actor="jdoe")

        assert written == 1
        comments = service.get_reconciliation("P1").comments
        assert comments.startswith(f"[2024-03-15 09:00] jdoe: [Rule {SUGGESTION}]")

    def test_apply_rules_now_is_idempotent(self, service, matched_pair, add_reconciliation):
        add_reconciliation("P1", invoice_id=TOKEN)
        service.get_reconciliation_view("FR")

        assert service.apply_rules_now(["P1"]) == 1
        assert service.apply_rules_now(["P1"]) == 0


class TestImportRules:

    def test_outputs_only_on_rows_without_action(self, service, add_ledger, add_reconciliation):
        add_ledger("P1", FR_PIVOT, "250.00", raw_label="SEPA COLLECTION 0001")
        add_ledger("P2", FR_PIVOT, "80.00", raw_label="SEPA COLLECTION 0002")
        add_reconciliation("P2", action=5, comments="existing note")
        line = (
            f"[2024-03-15 09:00] IMPORT: [Rule {UNMATCHED_COLLECTION}] "
            "Collection credit without amount match, investigation required"
        )

        written = service.apply_import_rules("FR")

        assert written == 2
        new = service.get_reconciliation("P1")
        assert new.action == 7
        assert new.kpi == 18
        assert new.action_status is False
        assert new.comments == line
        kept = service.get_reconciliation("P2")
        assert kept.action == 5
        assert kept.kpi is None
        assert kept.comments == f"existing note\n{line}"

    def test_second_import_writes_nothing(self, service, add_ledger):
        add_ledger("P1", FR_PIVOT, "250.00", raw_label="SEPA COLLECTION 0001")

        assert service.apply_import_rules("FR") == 1
        assert service.apply_import_rules("FR") == 0

    def test_backfill_is_persisted(self, service, add_ledger, add_invoice):
        add_invoice(TOKEN, payment_reference="BGPMT00000042")
        add_ledger("X1", FR_PIVOT, "-5.00", raw_label=f"REF {TOKEN}")

        service.apply_import_rules("FR")

        stored = service.get_reconciliation("X1")
        assert stored.invoice_id == TOKEN
        assert stored.payment_ref == "BGPMT00000042"
        assert stored.modified_by == "IMPORT"

    def test_import_logged(self, service, add_ledger, captured_logs):
        add_ledger("P1", FR_PIVOT, "250.00", raw_label="SEPA COLLECTION 0001")

        service.apply_import_rules("FR")

        logged = _messages(captured_logs, "import_rules_applied")
        assert logged[0]["rows"] == 1
        assert logged[0]["written"] == 1


# =============================================================================
# Counterpart outputs
# =============================================================================


@pytest.fixture
def service_with_rule(session_factory, executor, active_config, deterministic_clock):
    """Build a service whose truth table is one edit rule closing balanced groups."""

    def _build(apply_to):
        rule = TruthRule(
            rule_id="EDIT_CLOSE_BALANCED",
            conditions=RuleConditions(is_amount_match=True),
            outputs=RuleOutputs(action=4, kpi=18),
            scope=RuleScope.EDIT,
            apply_to=apply_to,
        )
        return ReconciliationService(
            session_factory,
            executor,
            active_config,
            clock=deterministic_clock,
            rules=RuleRepository(lambda: [rule], clock=deterministic_clock),
        )

    return _build


class TestCounterpartRules:

    def test_import_outputs_reach_receivable(self, service, matched_pair):
        written = service.apply_import_rules("FR")

        assert written == 2
        pivot = service.get_reconciliation("P1")
        receivable = service.get_reconciliation("R1")
        assert (pivot.action, pivot.kpi) == (4, 18)
        assert (receivable.action, receivable.kpi) == (4, 18)
        assert receivable.action_status is False
        assert receivable.comments is None
        assert receivable.modified_by == "IMPORT"

    def test_import_keeps_receivable_action(self, service, matched_pair, add_reconciliation):
        add_reconciliation("R1", action=9)

        service.apply_import_rules("FR")

        assert service.get_reconciliation("P1").action == 4
        receivable = service.get_reconciliation("R1")
        assert receivable.action == 9
        assert receivable.kpi is None

    def test_import_event_names_source_row(self, service, matched_pair):
        events = []
        service.add_rule_listener(events.append)

        service.apply_import_rules("FR")

        by_record = {e.record_id: e for e in events}
        assert by_record["P1"].counterpart_of is None
        assert by_record["R1"].counterpart_of == "P1"
        assert by_record["R1"].origin is EvaluationScope.IMPORT
        assert by_record["R1"].outputs == {"action": 4, "kpi": 18}

    def test_edit_outputs_reach_stored_counterpart(self, service_with_rule, matched_pair, captured_logs):
        service = service_with_rule(ApplyTarget.BOTH)
        events = []
        service.add_rule_listener(events.append)
        service.get_reconciliation_view("FR")
        record = service.get_or_create_reconciliation("P1")
        record.comments = "checked"

        service.save([record], actor="jdoe")

        assert service.get_reconciliation("P1").action == 4
        receivable = service.get_reconciliation("R1")
        assert (receivable.action, receivable.kpi) == (4, 18)
        assert receivable.modified_by == "jdoe"
        assert [(e.record_id, e.counterpart_of) for e in events] == [("P1", None), ("R1", "P1")]
        logged = _messages(captured_logs, "rule_applied_to_counterpart")
        assert logged[0]["counterpart_of"] == "P1"

    def test_counterpart_only_rule_leaves_edited_row(self, service_with_rule, matched_pair):
        service = service_with_rule(ApplyTarget.COUNTERPART)
        service.get_reconciliation_view("FR")
        record = service.get_or_create_reconciliation("P1")
        record.comments = "checked"

        service.save([record], actor="jdoe")

        assert service.get_reconciliation("P1").action is None
        assert service.get_reconciliation("R1").action == 4

    def test_rows_in_one_batch_are_not_overwritten(self, service_with_rule, matched_pair):
        service = service_with_rule(ApplyTarget.COUNTERPART)
        service.get_reconciliation_view("FR")
        pivot = service.get_or_create_reconciliation("P1")
        pivot.comments = "checked"
        receivable = service.get_or_create_reconciliation("R1")
        receivable.action = 2

        service.save([pivot, receivable], actor="jdoe")

        assert service.get_reconciliation("P1").action is None
        assert service.get_reconciliation("R1").action == 2

    def test_no_counterpart_without_cached_view(self, service_with_rule, matched_pair):
        service = service_with_rule(ApplyTarget.BOTH)
        record = service.get_or_create_reconciliation("P1")
        record.comments = "checked"

        service.save([record], actor="jdoe")

        assert service.get_reconciliation("R1") is None

    def test_archived_counterpart_left_alone(self, service_with_rule, matched_pair, add_reconciliation):
        service = service_with_rule(ApplyTarget.BOTH)
        service.get_reconciliation_view("FR")
        # archived after the view was cached
        add_reconciliation("R1", delete_date=EARLIER)
        record = service.get_or_create_reconciliation("P1")
        record.comments = "checked"

        service.save([record], actor="jdoe")

        assert service.get_reconciliation("P1").action == 4
        assert service.get_reconciliation("R1") is None

    def test_run_now_outputs_reach_counterpart(self, service_with_rule, matched_pair):
        service = service_with_rule(ApplyTarget.BOTH)
        service.get_reconciliation_view("FR")

        written = service.apply_rules_now(["P1"], actor="jdoe")

        assert written == 2
        assert service.get_reconciliation("R1").action == 4


# =============================================================================
# Lookups
# =============================================================================


class TestLookups:

    def test_trigger_reconciliations(self, service, add_ledger, add_reconciliation):
        add_ledger("R1", FR_RECEIVABLE, "-1")
        add_ledger("R2", FR_RECEIVABLE, "-1")
        add_ledger("P1", FR_PIVOT, "1")
        add_reconciliation("R1", action=7)
        add_reconciliation("R2", action=1)
        add_reconciliation("P1", action=7)

        assert [r.id for r in service.get_trigger_reconciliations("FR")] == ["R1"]

    def test_get_or_create(self, service, add_ledger, add_reconciliation):
        add_ledger("NEW", FR_PIVOT, "1")
        add_ledger("OLD", FR_PIVOT, "1")
        add_reconciliation("OLD", comments="kept")

        fresh = service.get_or_create_reconciliation("NEW")
        stored = service.get_or_create_reconciliation("OLD")

        assert fresh == Reconciliation(id="NEW")
        assert stored.comments == "kept"

    @pytest.mark.parametrize("ledger_id", ["MISSING", "GONE"])
    def test_get_or_create_requires_live_ledger(self, service, add_ledger, ledger_id):
        add_ledger("GONE", FR_PIVOT, "1", delete_date=EARLIER)

        with pytest.raises(LedgerEntryNotFoundError):
            service.get_or_create_reconciliation(ledger_id)

    def test_suggest_invoices(self, service, add_ledger, add_invoice):
        add_invoice(TOKEN)
        add_invoice("BGI0000000000099", payment_reference="BGPMT12345678")
        add_ledger("P1", FR_PIVOT, "1", raw_label=f"{TOKEN} BGPMT12345678")

        suggested = service.suggest_invoices("P1")

        assert [i.invoice_id for i in suggested] == [TOKEN, "BGI0000000000099"]

    def test_suggest_invoices_unknown_ledger(self, service):
        with pytest.raises(LedgerEntryNotFoundError):
            service.suggest_invoices("MISSING")
