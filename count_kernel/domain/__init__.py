"""Pure domain layer: values, commands, collaborators, workflow, clock."""

from count_kernel.domain.clock import Clock, DeterministicClock, SequentialClock, SystemClock
from count_kernel.domain.commands import (
    CommandResult,
    QuantityOutcome,
    QuantityStatus,
    ScanCommand,
    ScanOutcome,
    SetQuantityCommand,
    SetReasonCommand,
)
from count_kernel.domain.values import (
    CountMode,
    CountSession,
    Discrepancy,
    DiscrepancyReason,
    DiscrepancyType,
    Item,
    LastAction,
    LifecycleState,
    Product,
    SessionStatus,
)

__all__ = [
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "SequentialClock",
    "CommandResult",
    "QuantityOutcome",
    "QuantityStatus",
    "ScanCommand",
    "ScanOutcome",
    "SetQuantityCommand",
    "SetReasonCommand",
    "CountMode",
    "CountSession",
    "Discrepancy",
    "DiscrepancyReason",
    "DiscrepancyType",
    "Item",
    "LastAction",
    "LifecycleState",
    "Product",
    "SessionStatus",
]
