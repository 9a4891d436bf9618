"""
SessionLifecycle -- the cycle-count state machine and its operator API.

Responsibility:
    Owns the single mutable ``CountSession``.  Gates every operation on the
    lifecycle stage, applies ledger commands, runs the discrepancy
    calculation on submission, drives the auto-reconciliation pass, and
    persists every accepted change before returning.

Architecture position:
    Services -- imperative shell.  Delegates calculation to the pure
    engines in ``count_engines`` and persistence to a ``SessionStore``.

Invariants enforced:
    - Stages move only along ``CYCLE_COUNT_WORKFLOW`` transitions.
    - RECONCILING -> AWAITING_SIGNATURE is refused exactly when some
      discrepancy is neither auto-resolved nor classified; the refusal
      names the blocking identifiers.
    - Every change (scan, quantity, annotation, transition) is saved to
      the store before the call returns; no-op commands are not saved.
    - Back-navigation never drops scans or discrepancy annotations.
    - At most one auto-reconciliation pass is in flight; a second trigger
      joins it.  A pass launched against a session that has since been
      replaced or discarded, or that has left the reconciliation stages,
      is dropped.
    - COMPLETED sessions are read-only.

Failure modes:
    - NoActiveSessionError when no session is loaded.
    - SessionCompletedError for any mutation of a completed session.
    - IllegalTransitionError when the action is not legal in the stage.
    - UnresolvedDiscrepanciesError when a transition guard, or a premature
      ``confirm_signature()``, finds discrepancies still needing a reason.
    - UnregisteredGuardError when a transition names a guard with no evaluator.
    - Validation errors from the engines propagate unchanged (no effect).
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Any
from uuid import uuid4

from count_config.schema import CountConfig
from count_engines.discrepancy import (
    calculate_discrepancies,
    discrepancy_keys,
    merge_annotations,
)
from count_engines.ledger import CountLedger, LedgerPartition, Progress, search_items
from count_engines.reconciliation import (
    ReconciliationPassResult,
    apply_explanations,
    blocking_discrepancies,
    classify_discrepancy,
    run_auto_reconciliation,
)
from count_engines.rollup import (
    CountSummary,
    discrepancy_rows,
    estimate_duration_minutes,
    summarize,
)
from count_kernel.domain.clock import Clock, SystemClock
from count_kernel.domain.collaborators import (
    CatalogLookup,
    HistoryProvider,
    PastSessionSummary,
    ReconciliationOracle,
)
from count_kernel.domain.commands import (
    QuantityOutcome,
    ScanCommand,
    ScanOutcome,
    SetQuantityCommand,
    SetReasonCommand,
)
from count_kernel.domain.values import CountSession, Discrepancy, DiscrepancyReason, Item, LifecycleState
from count_kernel.domain.workflow import (
    ACTION_BACK,
    ACTION_CONFIRM_DISCREPANCIES,
    ACTION_CONFIRM_SIGNATURE,
    ACTION_START,
    ACTION_SUBMIT_COUNT,
    CYCLE_COUNT_WORKFLOW,
    Workflow,
)
from count_kernel.exceptions import (
    IllegalTransitionError,
    NoActiveSessionError,
    SessionCompletedError,
    UnresolvedDiscrepanciesError,
)
from count_kernel.logging_config import LogContext, configure_logging, get_logger
from count_services.guards import GuardExecutor, default_guard_executor
from count_services.session_store import SessionStore, SqlSessionStore

logger = get_logger("services.lifecycle")


class SessionLifecycle:
    """
    Operator-facing engine for one store's daily cycle count.

    Contract:
        Single operator, single thread (or event loop).  Every public
        mutation runs to completion and is persisted before returning.
        ``run_auto_reconciliation`` is the only coroutine.

    Non-goals:
        - No rendering, barcode decoding, or signature capture.
        - No multi-worker merge on one session.
    """

    def __init__(
        self,
        store: SessionStore,
        catalog: CatalogLookup,
        oracle: ReconciliationOracle,
        *,
        clock: Clock | None = None,
        config: CountConfig | None = None,
        history: HistoryProvider | None = None,
        workflow: Workflow = CYCLE_COUNT_WORKFLOW,
        guards: GuardExecutor | None = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._oracle = oracle
        self._clock = clock or SystemClock()
        self._config = config or CountConfig()
        self._history = history
        self._workflow = workflow
        self._guards = guards or default_guard_executor()
        self._ledger = CountLedger(
            min_identifier_length=self._config.min_identifier_length,
            unknown_item_name=self._config.unknown_item_name,
        )
        self._inflight: asyncio.Task[ReconciliationPassResult | None] | None = None
        # Bumped whenever the active session is replaced or discarded
        self._generation = 0

        self._current = store.load()
        if self._current is not None:
            logger.info(
                "session_resumed",
                extra={
                    "resumed_session_id": self._current.session_id,
                    "stage": self._current.stage.value,
                    "version": self._current.version,
                },
            )

    # ------------------------------------------------------------------
    # Session query
    # ------------------------------------------------------------------

    @property
    def current(self) -> CountSession | None:
        return self._current

    @property
    def persistence_degraded(self) -> bool:
        return self._store.degraded

    @property
    def reconciliation_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def daily_session_id(self, day: date) -> str:
        return f"{self._config.session_id_prefix}{day:%Y%m%d}{self._config.session_id_suffix}"

    def partition(self) -> LedgerPartition:
        return self._ledger.partition(self._require("partition"))

    def progress(self) -> Progress:
        return self._ledger.progress(self._require("progress"))

    def search(self, query: str, *, scanned: bool = False) -> tuple[Item, ...]:
        """Filter one bucket of the partition by SKU, name or identifier."""
        partition = self.partition()
        return search_items(partition.scanned if scanned else partition.unscanned, query)

    def blocking_discrepancies(self) -> tuple[str, ...]:
        return blocking_discrepancies(self._require("blocking_discrepancies").discrepancies)

    def summary(self) -> CountSummary:
        session = self._require("summary")
        return summarize(items=session.items, discrepancies=session.discrepancies)

    def estimated_minutes(self) -> int:
        session = self._require("estimated_minutes")
        return estimate_duration_minutes(len(session.items), self._config.items_per_minute)

    def discrepancy_rows(self) -> list[dict[str, Any]]:
        return discrepancy_rows(self._require("discrepancy_rows").discrepancies)

    def history(self) -> tuple[PastSessionSummary, ...]:
        if self._history is None:
            return ()
        return tuple(self._history.list_past_sessions())

    # ------------------------------------------------------------------
    # Session creation
    # ------------------------------------------------------------------

    def open_daily_session(self, day: date, items: Sequence[Item]) -> CountSession:
        """
        Return the session for ``day``, creating it when needed.

        A stored session of the same day is resumed as is (a completed one
        stays for display).  Otherwise a new PENDING session replaces
        whatever was stored.
        """
        current = self._current
        if current is not None and current.created_on == day:
            return current

        session = CountSession(
            session_id=self.daily_session_id(day),
            created_on=day,
            items=tuple(items),
        )
        self._replace(session)
        logger.info(
            "session_opened",
            extra={
                "opened_session_id": session.session_id,
                "item_count": len(session.items),
                "replaced_session_id": current.session_id if current else None,
            },
        )
        return session

    def discard_session(self) -> None:
        """Drop the active session and clear the store."""
        self._cancel_inflight()
        self._generation += 1
        discarded = self._current
        self._current = None
        self._store.clear()
        logger.info(
            "session_discarded",
            extra={"discarded_session_id": discarded.session_id if discarded else None},
        )

    # ------------------------------------------------------------------
    # Counting
    # ------------------------------------------------------------------

    def scan(self, identifier: str) -> ScanOutcome:
        session = self._require_stage("scan", LifecycleState.IN_PROGRESS)
        with LogContext.bind(session_id=session.session_id):
            result = self._ledger.apply_scan(session, ScanCommand(identifier), self._clock.now())
            if result.changed:
                self._commit(result.session)
        return result.outcome

    def set_quantity(self, sku: str, count: int, *, confirm_zero: bool = False) -> QuantityOutcome:
        session = self._require_stage("set_quantity", LifecycleState.IN_PROGRESS)
        with LogContext.bind(session_id=session.session_id):
            result = self._ledger.apply_set_quantity(
                session,
                SetQuantityCommand(sku=sku, count=count, confirm_zero=confirm_zero),
                self._clock.now(),
            )
            if result.changed:
                self._commit(result.session)
        return result.outcome

    def increment_quantity(self, sku: str) -> QuantityOutcome:
        session = self._require_stage("set_quantity", LifecycleState.IN_PROGRESS)
        current = self._ledger.representative_item(session, sku).manual_count or 0
        return self.set_quantity(sku, current + 1)

    def decrement_quantity(self, sku: str, *, confirm_zero: bool = False) -> QuantityOutcome:
        """Step the count down; reaching zero needs the usual confirmation."""
        session = self._require_stage("set_quantity", LifecycleState.IN_PROGRESS)
        current = self._ledger.representative_item(session, sku).manual_count or 0
        return self.set_quantity(sku, max(current - 1, 0), confirm_zero=confirm_zero)

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    def start(self) -> CountSession:
        """Operator confirmed the start prompt; an in-progress session just resumes."""
        session = self._require_mutable(ACTION_START)
        if session.stage is LifecycleState.IN_PROGRESS:
            return session
        return self._transition(session, ACTION_START)

    def begin_reconciliation(self) -> CountSession:
        """Submit the count: compute discrepancies and enter RECONCILING."""
        session = self._require_mutable(ACTION_SUBMIT_COUNT)
        self._check_transition(session, ACTION_SUBMIT_COUNT)

        with LogContext.bind(session_id=session.session_id):
            existing = session.discrepancies
            if existing and {d.key for d in existing} == discrepancy_keys(
                session.items, session.observed
            ):
                logger.info(
                    "discrepancies_kept",
                    extra={"discrepancy_count": len(existing)},
                )
                return self._transition(session, ACTION_SUBMIT_COUNT)

            fresh = calculate_discrepancies(
                items=session.items,
                observed=session.observed,
                catalog=self._catalog,
                unknown_item_name=self._config.unknown_item_name,
                unknown_sku=self._config.unknown_sku,
            )
            if existing:
                discrepancies = merge_annotations(existing, fresh)
            else:
                discrepancies = fresh
            return self._transition(session, ACTION_SUBMIT_COUNT, discrepancies=discrepancies)

    def set_discrepancy_reason(
        self,
        identifier: str,
        reason: DiscrepancyReason,
        note: str | None = None,
    ) -> Discrepancy:
        session = self._require_stage("set_discrepancy_reason", LifecycleState.RECONCILING)
        with LogContext.bind(session_id=session.session_id):
            discrepancies = classify_discrepancy(
                session.discrepancies,
                SetReasonCommand(identifier=identifier, reason=reason, note=note),
            )
            updated = self._commit(session.evolve(discrepancies=discrepancies))
        classified = updated.discrepancy_for(identifier)
        assert classified is not None
        return classified

    def confirm_discrepancies(self) -> CountSession:
        """RECONCILING -> AWAITING_SIGNATURE, refused while any line needs a reason."""
        session = self._require_mutable(ACTION_CONFIRM_DISCREPANCIES)
        return self._transition(session, ACTION_CONFIRM_DISCREPANCIES)

    def confirm_signature(self) -> CountSession:
        """Signature captured: complete the session and stamp the end time.

        Called while still reconciling, the refusal names the blocking
        discrepancies when there are any.
        """
        session = self._require_mutable(ACTION_CONFIRM_SIGNATURE)
        if session.stage is LifecycleState.RECONCILING:
            blocking = blocking_discrepancies(session.discrepancies)
            if blocking:
                self._refuse(ACTION_CONFIRM_SIGNATURE, blocking)
            raise IllegalTransitionError(
                session.stage.value,
                ACTION_CONFIRM_SIGNATURE,
                "confirm discrepancies first",
            )
        return self._transition(session, ACTION_CONFIRM_SIGNATURE, end_time=self._clock.now())

    def advance(self) -> CountSession:
        """Take the forward transition of the current stage."""
        session = self._require_mutable("advance")
        stage = session.stage
        if stage is LifecycleState.PENDING:
            return self.start()
        if stage is LifecycleState.IN_PROGRESS:
            return self.begin_reconciliation()
        if stage is LifecycleState.RECONCILING:
            return self.confirm_discrepancies()
        raise IllegalTransitionError(
            stage.value, "advance", "signature required; call confirm_signature()"
        )

    def retreat(self) -> CountSession:
        """Step back one stage for operator correction."""
        session = self._require_mutable(ACTION_BACK)
        return self._transition(session, ACTION_BACK)

    # ------------------------------------------------------------------
    # Auto-reconciliation
    # ------------------------------------------------------------------

    async def run_auto_reconciliation(self) -> ReconciliationPassResult | None:
        """
        Run (or join) the auto-reconciliation pass.

        Returns:
            The applied pass result, or None if the pass was cancelled or
            its session was replaced before it finished.
        """
        if self._inflight is not None and not self._inflight.done():
            logger.info("auto_reconciliation_joined")
            task = self._inflight
        else:
            session = self._require_stage(
                "run_auto_reconciliation", LifecycleState.RECONCILING
            )
            task = asyncio.get_running_loop().create_task(
                self._reconcile(session, self._generation)
            )
            self._inflight = task

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                logger.info("auto_reconciliation_cancelled")
                return None
            raise
        finally:
            if self._inflight is task and task.done():
                self._inflight = None

    def cancel_auto_reconciliation(self) -> bool:
        """Cancel the in-flight pass, if any. Returns True if one was cancelled."""
        return self._cancel_inflight()

    async def _reconcile(
        self,
        snapshot: CountSession,
        generation: int,
    ) -> ReconciliationPassResult | None:
        with LogContext.bind(session_id=snapshot.session_id, pass_id=uuid4().hex[:12]):
            result = await run_auto_reconciliation(
                snapshot.discrepancies,
                self._oracle,
                concurrency=self._config.reconciliation_concurrency,
            )
            return self._apply_pass(snapshot.session_id, generation, result)

    def _apply_pass(
        self,
        session_id: str,
        generation: int,
        result: ReconciliationPassResult,
    ) -> ReconciliationPassResult | None:
        current = self._current
        if (
            current is None
            or generation != self._generation
            or current.session_id != session_id
            or not current.stage.holds_discrepancies
        ):
            logger.info(
                "stale_reconciliation_discarded",
                extra={"pass_session_id": session_id, "resolved": len(result.resolved)},
            )
            return None

        # Merge onto the live list so lines classified meanwhile stay as they are
        explanations = {
            d.identifier: d.reason
            for d in result.discrepancies
            if d.identifier in result.resolved and d.reason is not None
        }
        merged = apply_explanations(current.discrepancies, explanations)
        if merged != current.discrepancies:
            self._commit(current.evolve(discrepancies=merged))
        logger.info(
            "auto_reconciliation_completed",
            extra={
                "resolved": len(result.resolved),
                "pending": len(blocking_discrepancies(merged)),
            },
        )
        return replace(result, discrepancies=merged)

    def _cancel_inflight(self) -> bool:
        task = self._inflight
        self._inflight = None
        if task is not None and not task.done():
            task.cancel()
            return True
        return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, action: str) -> CountSession:
        if self._current is None:
            raise NoActiveSessionError(action)
        return self._current

    def _require_mutable(self, action: str) -> CountSession:
        session = self._require(action)
        if session.is_read_only:
            raise SessionCompletedError(session.session_id, action)
        return session

    def _require_stage(self, action: str, *stages: LifecycleState) -> CountSession:
        session = self._require_mutable(action)
        if session.stage not in stages:
            raise IllegalTransitionError(session.stage.value, action)
        return session

    def _check_transition(self, session: CountSession, action: str) -> None:
        if self._workflow.find_transition(session.stage, action) is None:
            raise IllegalTransitionError(session.stage.value, action)

    def _transition(self, session: CountSession, action: str, **changes: Any) -> CountSession:
        transition = self._workflow.find_transition(session.stage, action)
        if transition is None:
            raise IllegalTransitionError(session.stage.value, action)
        if transition.guard is not None:
            blocking = self._guards.blocking(transition.guard, session)
            if blocking:
                self._refuse(action, blocking, guard=transition.guard.name)
        updated = self._commit(session.evolve(stage=transition.to_state, **changes))
        logger.info(
            "lifecycle_transition",
            extra={
                "session_id": session.session_id,
                "action": action,
                "from_state": transition.from_state.value,
                "to_state": transition.to_state.value,
                "version": updated.version,
            },
        )
        return updated

    def _refuse(self, action: str, blocking: tuple[str, ...], guard: str | None = None) -> None:
        logger.warning(
            "transition_blocked",
            extra={"action": action, "guard": guard, "blocking": list(blocking)},
        )
        raise UnresolvedDiscrepanciesError(blocking)

    def _replace(self, session: CountSession) -> None:
        self._cancel_inflight()
        self._generation += 1
        self._commit(session)

    def _commit(self, session: CountSession) -> CountSession:
        self._current = session
        self._store.save(session)
        return session


def build_session_lifecycle(
    catalog: CatalogLookup,
    oracle: ReconciliationOracle,
    *,
    config: CountConfig | None = None,
    config_path: Path | str | None = None,
    clock: Clock | None = None,
    history: HistoryProvider | None = None,
) -> SessionLifecycle:
    """Build a SessionLifecycle from config (single entrypoint for production).

    Loads config via get_active_config() unless one is given, configures
    logging at ``config.log_level``, and opens the SQL session store at
    ``config.database_url`` under ``config.store_key``.

    Args:
        catalog: Catalog lookup collaborator.
        oracle: Reconciliation oracle collaborator.
        config: Optional pre-loaded config; skips YAML loading.
        config_path: Optional YAML path for get_active_config().
        clock: Optional clock; default SystemClock.
        history: Optional history provider.
    """
    from count_config import get_active_config

    config = config or get_active_config(config_path)
    configure_logging(level=config.log_level)
    clock = clock or SystemClock()
    store = SqlSessionStore.from_url(config.database_url, config.store_key, clock)
    return SessionLifecycle(
        store,
        catalog,
        oracle,
        clock=clock,
        config=config,
        history=history,
    )
