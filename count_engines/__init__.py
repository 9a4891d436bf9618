"""
Count Engines - pure calculation layer for cycle counts.

Engines take immutable inputs and return immutable outputs; they never
touch the session store or read the clock.
"""

from count_engines.discrepancy import calculate_discrepancies, merge_annotations
from count_engines.ledger import (
    CountLedger,
    LedgerPartition,
    Progress,
    normalize_identifier,
    search_items,
)
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

__all__ = [
    "CountLedger",
    "LedgerPartition",
    "Progress",
    "normalize_identifier",
    "search_items",
    "calculate_discrepancies",
    "merge_annotations",
    "ReconciliationPassResult",
    "apply_explanations",
    "blocking_discrepancies",
    "classify_discrepancy",
    "run_auto_reconciliation",
    "CountSummary",
    "discrepancy_rows",
    "estimate_duration_minutes",
    "summarize",
]
