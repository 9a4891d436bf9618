"""
Commands -- explicit ledger commands and their outcome records.

Responsibility:
    Each operator action is modelled as a frozen command object.  Applying a
    command to a ``CountSession`` yields a ``CommandResult``: the next
    immutable snapshot plus an outcome record describing side effects the
    caller must surface (duplicate scan, zero-quantity confirmation).

Architecture position:
    Kernel > Domain -- pure value objects.  ZERO I/O.

Invariants enforced:
    - Expected outcomes are data, not exceptions: a duplicate scan and a
      zero-quantity confirmation request come back as outcome fields.
    - ``CommandResult.changed`` is False exactly when the snapshot returned
      is the input snapshot (no version bump, nothing to persist).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from count_kernel.domain.values import CountSession, DiscrepancyReason


@dataclass(frozen=True)
class ScanCommand:
    """An identifier arrived from the scanner or manual entry."""

    identifier: str


@dataclass(frozen=True)
class SetQuantityCommand:
    """Manual tally for an aggregate-counted SKU.

    ``confirm_zero`` must be True for a zero count to move an already
    counted SKU back to the unscanned bucket.
    """

    sku: str
    count: int
    confirm_zero: bool = False


@dataclass(frozen=True)
class SetReasonCommand:
    """Manual classification of a discrepancy."""

    identifier: str
    reason: DiscrepancyReason
    note: str | None = None


@dataclass(frozen=True)
class ScanOutcome:
    """Result of a scan; ``duplicate`` must be shown to the operator."""

    identifier: str
    duplicate: bool
    expected: bool
    item_name: str


class QuantityStatus(str, Enum):
    """What happened to a quantity command."""

    APPLIED = "applied"
    CONFIRMATION_REQUIRED = "confirmation_required"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class QuantityOutcome:
    """Result of a quantity command."""

    sku: str
    count: int
    status: QuantityStatus
    representative_identifier: str
    observed: bool

    @property
    def needs_confirmation(self) -> bool:
        return self.status is QuantityStatus.CONFIRMATION_REQUIRED


OutcomeT = TypeVar("OutcomeT")


@dataclass(frozen=True)
class CommandResult(Generic[OutcomeT]):
    """Next snapshot plus the side-effect record of the command."""

    session: CountSession
    outcome: OutcomeT
    changed: bool
