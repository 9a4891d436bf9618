"""
Tests for count_services.lifecycle.SessionLifecycle.

Covers stage gating, persistence on every accepted change, the
discrepancy guard on the signature step, back-navigation, completion,
resume after restart, and the single-flight / stale-result behaviour of
the auto-reconciliation pass.
"""

import asyncio
from datetime import date, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from count_kernel.domain.collaborators import (
    PastSessionSummary,
    StaticHistoryProvider,
)
from count_kernel.domain.commands import QuantityStatus
from count_kernel.domain.values import (
    DiscrepancyReason,
    DiscrepancyType,
    LifecycleState,
    SessionStatus,
)
from count_kernel.domain.workflow import GUARD_ALL_DISCREPANCIES_SETTLED
from count_kernel.exceptions import (
    IllegalTransitionError,
    MalformedIdentifierError,
    NegativeQuantityError,
    NoActiveSessionError,
    ReasonNoteRequiredError,
    SessionCompletedError,
    UnregisteredGuardError,
    UnresolvedDiscrepanciesError,
)
from count_services.guards import GuardExecutor
from count_services.lifecycle import build_session_lifecycle
from count_services.session_store import InMemorySessionStore, SqlSessionStore

TEST_DAY = date(2025, 12, 15)


class _GatedOracle:
    """Oracle whose answers are held until ``release`` is set."""

    def __init__(self, explanations) -> None:
        self.explanations = dict(explanations)
        self.calls: list[str] = []
        self.release = asyncio.Event()

    async def explain(self, identifier: str):
        self.calls.append(identifier)
        await self.release.wait()
        return self.explanations.get(identifier)


def _to_reconciling(lifecycle):
    lifecycle.scan("IMEI000000001")
    lifecycle.scan("IMEI000000099")
    lifecycle.set_quantity("CASE-CLEAR", 2)
    return lifecycle.begin_reconciliation()


# =============================================================================
# Opening and resuming
# =============================================================================


class TestOpenDailySession:
    def test_opens_pending_session(self, lifecycle, sample_items):
        session = lifecycle.current
        assert session.session_id == "PDD202512150001"
        assert session.stage is LifecycleState.PENDING
        assert session.status is SessionStatus.PENDING
        assert session.items == sample_items
        assert lifecycle.estimated_minutes() == 1

    def test_same_day_resumes(self, lifecycle, sample_items):
        lifecycle.start()
        lifecycle.scan("IMEI000000001")
        resumed = lifecycle.open_daily_session(TEST_DAY, sample_items)
        assert resumed is lifecycle.current
        assert "IMEI000000001" in resumed.observed

    def test_new_day_replaces_previous(self, lifecycle, sample_items):
        lifecycle.start()
        next_day = TEST_DAY + timedelta(days=1)
        session = lifecycle.open_daily_session(next_day, sample_items)
        assert session.session_id == "PDD202512160001"
        assert session.stage is LifecycleState.PENDING
        assert session.observed == frozenset()

    def test_restart_resumes_from_store(self, make_lifecycle, sample_items, sql_store):
        first = make_lifecycle(sql_store)
        first.open_daily_session(TEST_DAY, sample_items)
        first.start()
        first.scan("IMEI000000002")

        second = make_lifecycle(sql_store)
        assert second.current == first.current
        assert second.current.stage is LifecycleState.IN_PROGRESS
        second.start()
        assert second.current.stage is LifecycleState.IN_PROGRESS

    def test_no_session_operations_fail(self, make_lifecycle):
        lifecycle = make_lifecycle(InMemorySessionStore())
        assert lifecycle.current is None
        with pytest.raises(NoActiveSessionError):
            lifecycle.scan("IMEI000000001")
        with pytest.raises(NoActiveSessionError):
            lifecycle.progress()

    def test_discard_clears_store(self, lifecycle, memory_store):
        lifecycle.discard_session()
        assert lifecycle.current is None
        assert memory_store.load() is None


# =============================================================================
# Counting
# =============================================================================


class TestCounting:
    def test_scan_requires_in_progress(self, lifecycle):
        with pytest.raises(IllegalTransitionError):
            lifecycle.scan("IMEI000000001")

    def test_start_moves_to_in_progress(self, lifecycle, captured_logs):
        session = lifecycle.start()
        assert session.stage is LifecycleState.IN_PROGRESS
        transitions = [r for r in captured_logs() if r["message"] == "lifecycle_transition"]
        assert transitions[-1]["from_state"] == "pending"
        assert transitions[-1]["to_state"] == "in_progress"

    def test_every_change_is_persisted(self, counting, memory_store):
        saves = memory_store.save_count
        counting.scan("IMEI000000001")
        assert memory_store.save_count == saves + 1
        assert memory_store.load() is counting.current

    def test_duplicate_scan_reported_and_not_persisted(self, counting, memory_store):
        counting.scan("IMEI000000001")
        saves = memory_store.save_count
        outcome = counting.scan("IMEI000000001")
        assert outcome.duplicate
        assert memory_store.save_count == saves

    def test_last_action_uses_clock(self, counting, deterministic_clock):
        deterministic_clock.advance(90)
        counting.scan("IMEI000000002")
        assert counting.current.last_action.at == deterministic_clock.now()
        assert counting.current.last_action.name == "Phone Y"

    def test_malformed_scan_has_no_effect(self, counting):
        version = counting.current.version
        with pytest.raises(MalformedIdentifierError):
            counting.scan("  ")
        assert counting.current.version == version

    def test_short_expected_identifier_can_be_counted(self, make_lifecycle, item_factory):
        lifecycle = make_lifecycle(InMemorySessionStore())
        lifecycle.open_daily_session(TEST_DAY, (item_factory("A12"),))
        lifecycle.start()
        outcome = lifecycle.scan("A12")
        assert outcome.expected
        session = lifecycle.begin_reconciliation()
        assert session.discrepancies == ()

    def test_quantity_updates_progress(self, counting):
        assert counting.progress().scanned == 0
        counting.set_quantity("CASE-CLEAR", 3)
        assert counting.progress().scanned == 1

        outcome = counting.set_quantity("CASE-CLEAR", 0)
        assert outcome.status is QuantityStatus.CONFIRMATION_REQUIRED
        assert counting.progress().scanned == 1

        counting.set_quantity("CASE-CLEAR", 0, confirm_zero=True)
        assert counting.progress().scanned == 0

    def test_increment_and_decrement(self, counting):
        counting.increment_quantity("CASE-CLEAR")
        counting.increment_quantity("CASE-CLEAR")
        assert counting.current.item_for("CASE-0001").manual_count == 2

        counting.decrement_quantity("CASE-CLEAR")
        outcome = counting.decrement_quantity("CASE-CLEAR")
        assert outcome.needs_confirmation
        assert counting.current.item_for("CASE-0001").manual_count == 1

    def test_negative_quantity_rejected(self, counting):
        with pytest.raises(NegativeQuantityError):
            counting.set_quantity("CASE-CLEAR", -2)

    def test_partition_and_search(self, counting):
        counting.scan("IMEI000000001")
        partition = counting.partition()
        assert [i.identifier for i in partition.scanned] == ["IMEI000000001"]
        assert [i.identifier for i in counting.search("phone")] == ["IMEI000000002"]
        assert [i.identifier for i in counting.search("phone", scanned=True)] == ["IMEI000000001"]


# =============================================================================
# Reconciliation and signature
# =============================================================================


class TestReconciliation:
    def test_submission_computes_discrepancies(self, counting):
        session = _to_reconciling(counting)
        assert session.stage is LifecycleState.RECONCILING
        assert [(d.identifier, d.type) for d in session.discrepancies] == [
            ("IMEI000000002", DiscrepancyType.SHORTAGE),
            ("IMEI000000099", DiscrepancyType.OVERAGE),
        ]

    def test_confirm_refused_while_unresolved(self, counting):
        _to_reconciling(counting)
        with pytest.raises(UnresolvedDiscrepanciesError) as exc_info:
            counting.confirm_discrepancies()
        assert exc_info.value.blocking == ("IMEI000000002", "IMEI000000099")
        assert exc_info.value.first_blocking == "IMEI000000002"
        assert counting.current.stage is LifecycleState.RECONCILING

    def test_auto_reconciliation_then_manual_reason_unblocks(self, counting, oracle):
        _to_reconciling(counting)
        oracle.set_explanation("IMEI000000002", DiscrepancyReason.SOLD)

        result = asyncio.run(counting.run_auto_reconciliation())
        assert result.resolved == ("IMEI000000002",)
        assert counting.blocking_discrepancies() == ("IMEI000000099",)

        with pytest.raises(ReasonNoteRequiredError):
            counting.set_discrepancy_reason("IMEI000000099", DiscrepancyReason.OTHER)
        counting.set_discrepancy_reason("IMEI000000099", DiscrepancyReason.OTHER, "display model")

        session = counting.advance()
        assert session.stage is LifecycleState.AWAITING_SIGNATURE

    def test_auto_reconciliation_result_is_persisted(self, counting, oracle, memory_store):
        _to_reconciling(counting)
        oracle.set_explanation("IMEI000000099", DiscrepancyReason.TRANSFERRED_OUT)
        asyncio.run(counting.run_auto_reconciliation())
        stored = memory_store.load().discrepancy_for("IMEI000000099")
        assert stored.auto_resolved

    def test_summary(self, counting):
        _to_reconciling(counting)
        summary = counting.summary()
        assert summary.shortage_count == 1
        assert summary.overage_count == 1
        assert summary.pending_count == 2
        assert len(counting.discrepancy_rows()) == 2

    def test_advance_from_awaiting_signature_requires_signature(self, counting):
        _to_reconciling(counting)
        for identifier in counting.blocking_discrepancies():
            counting.set_discrepancy_reason(identifier, DiscrepancyReason.SOLD)
        counting.advance()
        with pytest.raises(IllegalTransitionError, match="signature"):
            counting.advance()

    def test_signature_completes_session(self, counting, deterministic_clock):
        _to_reconciling(counting)
        for identifier in counting.blocking_discrepancies():
            counting.set_discrepancy_reason(identifier, DiscrepancyReason.SOLD)
        counting.confirm_discrepancies()
        deterministic_clock.advance(600)

        session = counting.confirm_signature()
        assert session.stage is LifecycleState.COMPLETED
        assert session.status is SessionStatus.COMPLETED
        assert session.end_time == deterministic_clock.now()

    def test_completed_session_is_read_only(self, counting):
        _to_reconciling(counting)
        for identifier in counting.blocking_discrepancies():
            counting.set_discrepancy_reason(identifier, DiscrepancyReason.SOLD)
        counting.confirm_discrepancies()
        counting.confirm_signature()

        with pytest.raises(SessionCompletedError):
            counting.scan("IMEI000000002")
        with pytest.raises(SessionCompletedError):
            counting.retreat()
        with pytest.raises(SessionCompletedError):
            counting.advance()
        # Still shown for the rest of the day
        assert counting.open_daily_session(TEST_DAY, ()) is counting.current

    def test_signature_requires_awaiting_signature(self, counting):
        with pytest.raises(IllegalTransitionError):
            counting.confirm_signature()

    def test_signature_while_reconciling_names_blocking_items(self, counting, captured_logs):
        _to_reconciling(counting)
        with pytest.raises(UnresolvedDiscrepanciesError) as exc_info:
            counting.confirm_signature()
        assert exc_info.value.blocking == ("IMEI000000002", "IMEI000000099")
        assert counting.current.stage is LifecycleState.RECONCILING
        blocked = [r for r in captured_logs() if r["message"] == "transition_blocked"]
        assert blocked[-1]["action"] == "confirm_signature"

    def test_signature_while_reconciling_settled_still_illegal(self, counting):
        _to_reconciling(counting)
        for identifier in counting.blocking_discrepancies():
            counting.set_discrepancy_reason(identifier, DiscrepancyReason.SOLD)
        with pytest.raises(IllegalTransitionError, match="confirm discrepancies first"):
            counting.confirm_signature()
        assert counting.current.stage is LifecycleState.RECONCILING

    def test_guard_without_evaluator_refuses_transition(self, make_lifecycle, sample_items):
        lifecycle = make_lifecycle(InMemorySessionStore(), guards=GuardExecutor())
        lifecycle.open_daily_session(TEST_DAY, sample_items)
        lifecycle.start()
        _to_reconciling(lifecycle)
        for identifier in lifecycle.blocking_discrepancies():
            lifecycle.set_discrepancy_reason(identifier, DiscrepancyReason.SOLD)
        with pytest.raises(UnregisteredGuardError):
            lifecycle.confirm_discrepancies()
        assert lifecycle.current.stage is LifecycleState.RECONCILING

    def test_custom_guard_evaluator_is_consulted(self, make_lifecycle, sample_items):
        guards = GuardExecutor()
        guards.register(GUARD_ALL_DISCREPANCIES_SETTLED.name, lambda session: ("HOLD",))
        lifecycle = make_lifecycle(InMemorySessionStore(), guards=guards)
        lifecycle.open_daily_session(TEST_DAY, sample_items)
        lifecycle.start()
        _to_reconciling(lifecycle)
        for identifier in lifecycle.blocking_discrepancies():
            lifecycle.set_discrepancy_reason(identifier, DiscrepancyReason.SOLD)
        with pytest.raises(UnresolvedDiscrepanciesError) as exc_info:
            lifecycle.confirm_discrepancies()
        assert exc_info.value.blocking == ("HOLD",)


# =============================================================================
# Back-navigation
# =============================================================================


class TestBackNavigation:
    def test_back_keeps_scans_and_annotations(self, counting):
        _to_reconciling(counting)
        counting.set_discrepancy_reason("IMEI000000002", DiscrepancyReason.SOLD)

        session = counting.retreat()
        assert session.stage is LifecycleState.IN_PROGRESS
        assert "IMEI000000001" in session.observed
        assert session.discrepancy_for("IMEI000000002").reason is DiscrepancyReason.SOLD

        again = counting.begin_reconciliation()
        assert again.discrepancy_for("IMEI000000002").reason is DiscrepancyReason.SOLD

    def test_resubmit_without_changes_skips_catalog(self, counting, catalog, monkeypatch):
        lookups: list[str] = []
        original = catalog.lookup

        def counting_lookup(identifier):
            lookups.append(identifier)
            return original(identifier)

        monkeypatch.setattr(catalog, "lookup", counting_lookup)
        first = _to_reconciling(counting)
        assert lookups == ["IMEI000000099"]

        counting.retreat()
        again = counting.begin_reconciliation()
        assert lookups == ["IMEI000000099"]
        assert again.discrepancies == first.discrepancies

    def test_resubmit_after_more_scans_carries_annotations(self, counting):
        _to_reconciling(counting)
        counting.set_discrepancy_reason("IMEI000000099", DiscrepancyReason.OTHER, "demo")
        counting.retreat()
        counting.scan("IMEI000000002")

        session = counting.begin_reconciliation()
        assert [d.identifier for d in session.discrepancies] == ["IMEI000000099"]
        assert session.discrepancies[0].note == "demo"

    def test_back_from_signature(self, counting):
        _to_reconciling(counting)
        for identifier in counting.blocking_discrepancies():
            counting.set_discrepancy_reason(identifier, DiscrepancyReason.SOLD)
        counting.confirm_discrepancies()
        assert counting.retreat().stage is LifecycleState.RECONCILING

    def test_no_back_from_in_progress(self, counting):
        with pytest.raises(IllegalTransitionError):
            counting.retreat()


# =============================================================================
# Single-flight and stale results
# =============================================================================


class TestAutoReconciliationConcurrency:
    def test_second_trigger_joins_in_flight_pass(self, make_lifecycle, sample_items, memory_store):
        oracle = _GatedOracle({"IMEI000000002": DiscrepancyReason.SOLD})
        lifecycle = make_lifecycle(memory_store, reconciliation_oracle=oracle)
        lifecycle.open_daily_session(TEST_DAY, sample_items)
        lifecycle.start()
        _to_reconciling(lifecycle)

        async def scenario():
            first = asyncio.create_task(lifecycle.run_auto_reconciliation())
            await asyncio.sleep(0)
            assert lifecycle.reconciliation_in_flight
            second = asyncio.create_task(lifecycle.run_auto_reconciliation())
            await asyncio.sleep(0)
            oracle.release.set()
            return await first, await second

        first, second = asyncio.run(scenario())
        assert first == second
        assert oracle.calls.count("IMEI000000002") == 1
        assert not lifecycle.reconciliation_in_flight

    def test_stale_result_is_discarded(self, make_lifecycle, sample_items, memory_store, captured_logs):
        oracle = _GatedOracle({"IMEI000000002": DiscrepancyReason.SOLD})
        lifecycle = make_lifecycle(memory_store, reconciliation_oracle=oracle)
        lifecycle.open_daily_session(TEST_DAY, sample_items)
        lifecycle.start()
        _to_reconciling(lifecycle)
        snapshot = lifecycle.current

        async def scenario():
            task = asyncio.create_task(lifecycle._reconcile(snapshot, lifecycle._generation))
            await asyncio.sleep(0)
            lifecycle.open_daily_session(TEST_DAY + timedelta(days=1), sample_items)
            oracle.release.set()
            return await task

        assert asyncio.run(scenario()) is None
        assert lifecycle.current.discrepancies == ()
        assert any(r["message"] == "stale_reconciliation_discarded" for r in captured_logs())

    def test_cancel_returns_none(self, make_lifecycle, sample_items, memory_store):
        oracle = _GatedOracle({})
        lifecycle = make_lifecycle(memory_store, reconciliation_oracle=oracle)
        lifecycle.open_daily_session(TEST_DAY, sample_items)
        lifecycle.start()
        _to_reconciling(lifecycle)
        before = lifecycle.current

        async def scenario():
            task = asyncio.create_task(lifecycle.run_auto_reconciliation())
            await asyncio.sleep(0)
            assert lifecycle.cancel_auto_reconciliation()
            return await task

        assert asyncio.run(scenario()) is None
        assert lifecycle.current == before
        assert not lifecycle.cancel_auto_reconciliation()

    def test_manual_reason_during_pass_is_kept(self, make_lifecycle, sample_items, memory_store):
        oracle = _GatedOracle(
            {
                "IMEI000000002": DiscrepancyReason.SOLD,
                "IMEI000000099": DiscrepancyReason.TRANSFERRED_OUT,
            }
        )
        lifecycle = make_lifecycle(memory_store, reconciliation_oracle=oracle)
        lifecycle.open_daily_session(TEST_DAY, sample_items)
        lifecycle.start()
        _to_reconciling(lifecycle)

        async def scenario():
            task = asyncio.create_task(lifecycle.run_auto_reconciliation())
            await asyncio.sleep(0)
            lifecycle.set_discrepancy_reason("IMEI000000099", DiscrepancyReason.OTHER, "on display")
            oracle.release.set()
            return await task

        result = asyncio.run(scenario())
        assert result.resolved == ("IMEI000000002", "IMEI000000099")
        manual = lifecycle.current.discrepancy_for("IMEI000000099")
        assert manual.reason is DiscrepancyReason.OTHER
        assert not manual.auto_resolved
        assert lifecycle.current.discrepancy_for("IMEI000000002").auto_resolved

    def test_result_dropped_after_back_navigation(self, make_lifecycle, sample_items, memory_store):
        oracle = _GatedOracle({"IMEI000000002": DiscrepancyReason.SOLD})
        lifecycle = make_lifecycle(memory_store, reconciliation_oracle=oracle)
        lifecycle.open_daily_session(TEST_DAY, sample_items)
        lifecycle.start()
        _to_reconciling(lifecycle)

        async def scenario():
            task = asyncio.create_task(lifecycle.run_auto_reconciliation())
            await asyncio.sleep(0)
            lifecycle.retreat()
            oracle.release.set()
            return await task

        assert asyncio.run(scenario()) is None
        assert lifecycle.current.stage is LifecycleState.IN_PROGRESS
        assert lifecycle.current.discrepancy_for("IMEI000000002").needs_reason

    def test_requires_reconciling(self, counting):
        with pytest.raises(IllegalTransitionError):
            asyncio.run(counting.run_auto_reconciliation())


# =============================================================================
# Persistence degradation and history
# =============================================================================




class _UnwritableSession:
    def execute(self, *args, **kwargs):
        raise OperationalError("UPDATE", {}, Exception("database is locked"))

    def commit(self):
        pass

    def rollback(self):
        pass

    def close(self):
        pass


class TestDegradedPersistence:
    def test_counting_continues_when_store_fails(self, make_lifecycle, sample_items):
        store = SqlSessionStore(_UnwritableSession, "device-1")
        lifecycle = make_lifecycle(store)
        lifecycle.open_daily_session(TEST_DAY, sample_items)

        assert lifecycle.persistence_degraded
        lifecycle.start()
        outcome = lifecycle.scan("IMEI000000001")
        assert not outcome.duplicate
        assert store.load() is lifecycle.current


class TestHistory:
    def test_history_passthrough(self, make_lifecycle, memory_store):
        past = PastSessionSummary(
            session_id="PDD202512140001",
            date=date(2025, 12, 14),
            status=SessionStatus.COMPLETED,
        )
        lifecycle = make_lifecycle(memory_store, history=StaticHistoryProvider([past]))
        assert lifecycle.history() == (past,)

    def test_no_history_provider(self, make_lifecycle, memory_store):
        assert make_lifecycle(memory_store).history() == ()


class TestBuildSessionLifecycle:
    def test_wires_sql_store_from_config(self, tmp_path, catalog, oracle, sample_items, deterministic_clock):
        path = tmp_path / "device.yaml"
        path.write_text(
            "cycle_count:\n"
            "  database_url: 'sqlite://'\n"
            "  store_key: device_9\n"
            "  session_id_prefix: CC\n"
        )
        lifecycle = build_session_lifecycle(
            catalog, oracle, config_path=path, clock=deterministic_clock
        )
        session = lifecycle.open_daily_session(TEST_DAY, sample_items)

        assert session.session_id == "CC202512150001"
        assert not lifecycle.persistence_degraded
