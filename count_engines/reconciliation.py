"""
count_engines.reconciliation -- Auto-reconciliation pass and manual classification.

Responsibility:
    Annotates discrepancies with explanations from the reconciliation
    oracle (sales / transfer / returns logs) and applies operator
    classifications.  Decides which discrepancies still block the
    signature step.

Architecture position:
    Engines -- calculation layer.  The pass is a coroutine because the
    oracle is remote; everything else is synchronous and pure.

Invariants enforced:
    - Only discrepancies that still need a reason are ever sent to the
      oracle; auto-resolved or manually classified entries are skipped, so
      re-running the pass never re-queries or un-resolves a settled entry.
    - Oracle queries run with bounded parallelism (asyncio.Semaphore).
    - The pass returns a complete new list; callers swap it in one step.
    - A failing oracle query leaves its discrepancy unresolved and is
      reported in ``failed``; other queries are unaffected.
    - The 'other' reason requires a non-blank note.
    - Auto-resolved discrepancies are read-only for manual classification.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from count_kernel.domain.collaborators import ReconciliationOracle
from count_kernel.domain.commands import SetReasonCommand
from count_kernel.domain.values import Discrepancy, DiscrepancyReason
from count_kernel.exceptions import (
    DiscrepancyAlreadyResolvedError,
    DiscrepancyNotFoundError,
    ReasonNoteRequiredError,
    ValidationError,
)
from count_kernel.logging_config import get_logger

logger = get_logger("engines.reconciliation")

DEFAULT_CONCURRENCY = 4


@dataclass(frozen=True)
class ReconciliationPassResult:
    """Outcome of one auto-reconciliation pass."""

    discrepancies: tuple[Discrepancy, ...]
    queried: tuple[str, ...]
    resolved: tuple[str, ...]
    unexplained: tuple[str, ...]
    failed: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.resolved)


def blocking_discrepancies(discrepancies: Sequence[Discrepancy]) -> tuple[str, ...]:
    """Identifiers that still need a reason, in list order."""
    return tuple(d.identifier for d in discrepancies if d.needs_reason)


def apply_explanations(
    discrepancies: Sequence[Discrepancy],
    explanations: Mapping[str, DiscrepancyReason],
) -> tuple[Discrepancy, ...]:
    """Auto-resolve every unsettled discrepancy that has an explanation."""
    return tuple(
        d.auto_resolve(explanations[d.identifier])
        if d.needs_reason and d.identifier in explanations
        else d
        for d in discrepancies
    )


async def run_auto_reconciliation(
    discrepancies: Sequence[Discrepancy],
    oracle: ReconciliationOracle,
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
) -> ReconciliationPassResult:
    """
    Query the oracle for every unsettled discrepancy and annotate the hits.

    Args:
        discrepancies: Current discrepancy list (not mutated).
        oracle: Reconciliation oracle.
        concurrency: Maximum number of oracle queries in flight.

    Returns:
        ReconciliationPassResult whose ``discrepancies`` is the full,
        updated list.
    """
    discrepancies = tuple(discrepancies)
    pending = [d.identifier for d in discrepancies if d.needs_reason]
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _explain(identifier: str) -> tuple[str, DiscrepancyReason | None, bool]:
        async with semaphore:
            try:
                reason = await oracle.explain(identifier)
                if reason is not None:
                    reason = DiscrepancyReason(reason)
            except Exception:
                logger.warning(
                    "oracle_query_failed",
                    extra={"identifier": identifier},
                    exc_info=True,
                )
                return identifier, None, False
        return identifier, reason, True

    results = await asyncio.gather(*(_explain(identifier) for identifier in pending))

    explanations = {identifier: reason for identifier, reason, _ in results if reason is not None}
    failed = tuple(identifier for identifier, _, ok in results if not ok)
    unexplained = tuple(
        identifier for identifier, reason, ok in results if ok and reason is None
    )
    updated = apply_explanations(discrepancies, explanations)

    logger.info(
        "auto_reconciliation_pass",
        extra={
            "queried": len(pending),
            "resolved": len(explanations),
            "unexplained": len(unexplained),
            "failed": len(failed),
        },
    )
    return ReconciliationPassResult(
        discrepancies=updated,
        queried=tuple(pending),
        resolved=tuple(identifier for identifier in pending if identifier in explanations),
        unexplained=unexplained,
        failed=failed,
    )


def classify_discrepancy(
    discrepancies: Sequence[Discrepancy],
    command: SetReasonCommand,
) -> tuple[Discrepancy, ...]:
    """
    Apply an operator's reason to one discrepancy.

    Raises:
        ValidationError: if the reason is not in the closed enumeration.
        DiscrepancyNotFoundError: no discrepancy for the identifier.
        DiscrepancyAlreadyResolvedError: the entry was auto-resolved.
        ReasonNoteRequiredError: reason 'other' without a non-blank note.
    """
    try:
        reason = DiscrepancyReason(command.reason)
    except ValueError as exc:
        raise ValidationError(f"Unknown discrepancy reason: {command.reason!r}") from exc

    target = next((d for d in discrepancies if d.identifier == command.identifier), None)
    if target is None:
        raise DiscrepancyNotFoundError(command.identifier)
    if target.auto_resolved:
        raise DiscrepancyAlreadyResolvedError(
            command.identifier, target.reason.value if target.reason else None
        )

    note = command.note.strip() if command.note else None
    if reason is DiscrepancyReason.OTHER and not note:
        raise ReasonNoteRequiredError(command.identifier)

    logger.info(
        "discrepancy_classified",
        extra={"identifier": command.identifier, "reason": reason.value},
    )
    return tuple(
        d.classify(reason, note or None) if d.identifier == command.identifier else d
        for d in discrepancies
    )
