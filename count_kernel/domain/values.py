"""
Values -- Immutable domain objects for a cycle-count session.

Responsibility:
    Defines the enums and frozen dataclasses every other layer passes
    around: catalog ``Product``, expected ``Item``, ``Discrepancy`` lines and
    the versioned ``CountSession`` aggregate.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    Free of ORM dependencies, database access, and external services.

Invariants enforced:
    - Identifiers in the expectation list are unique.
    - The observed set is a ``frozenset`` (uniqueness enforced); its
      iteration order carries no meaning.
    - Each identifier appears in at most one Discrepancy.
    - Every state change goes through ``CountSession.evolve()``, which bumps
      ``version`` so snapshots can be ordered and replayed.

Failure modes:
    - ValueError on an Item with an empty identifier or negative price.
    - ValueError on a CountSession with duplicate expectation identifiers
      or duplicate discrepancy identifiers.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from functools import cached_property
from typing import Any


class CountMode(str, Enum):
    """How an expected item is counted."""

    IDENTIFIER_SCAN = "identifier_scan"  # one scan per serial / IMEI
    AGGREGATE_QUANTITY = "aggregate_quantity"  # manual tally per SKU


class SessionStatus(str, Enum):
    """Coarse status of a session as shown on dashboards and in history."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class LifecycleState(str, Enum):
    """Stage of the linear count lifecycle.

    Contract: PENDING -> IN_PROGRESS -> RECONCILING -> AWAITING_SIGNATURE
    -> COMPLETED.  RECONCILING and AWAITING_SIGNATURE may step back one stage.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RECONCILING = "reconciling"
    AWAITING_SIGNATURE = "awaiting_signature"
    COMPLETED = "completed"

    @property
    def status(self) -> SessionStatus:
        if self is LifecycleState.PENDING:
            return SessionStatus.PENDING
        if self is LifecycleState.COMPLETED:
            return SessionStatus.COMPLETED
        return SessionStatus.IN_PROGRESS

    @property
    def holds_discrepancies(self) -> bool:
        """Stages in which the discrepancy list is being worked on."""
        return self in (LifecycleState.RECONCILING, LifecycleState.AWAITING_SIGNATURE)


class DiscrepancyType(str, Enum):
    """Direction of a discrepancy."""

    SHORTAGE = "shortage"  # expected, never observed
    OVERAGE = "overage"  # observed, not expected


class DiscrepancyReason(str, Enum):
    """Closed set of causes an operator or the oracle may assign."""

    SOLD = "sold"
    TRANSFERRED_OUT = "transferred_out"
    RETURNED_TO_WAREHOUSE = "returned_to_warehouse"
    OTHER = "other"  # requires a free-text note


@dataclass(frozen=True)
class Product:
    """Catalog metadata returned by a catalog lookup."""

    identifier: str
    sku: str
    name: str
    price: Decimal = Decimal("0")
    image_url: str | None = None


@dataclass(frozen=True)
class Item:
    """
    One expected catalog entry in a session.

    Contract:
        Immutable once the session starts, except ``manual_count`` which is
        replaced via ``with_manual_count()``.  ``manual_count`` is only
        meaningful under ``CountMode.AGGREGATE_QUANTITY``.
    """

    identifier: str
    sku: str
    name: str
    price: Decimal
    count_mode: CountMode = CountMode.IDENTIFIER_SCAN
    manual_count: int | None = None
    image_url: str | None = None

    def __post_init__(self) -> None:
        if not self.identifier:
            raise ValueError("Item identifier cannot be empty")
        if self.price < 0:
            raise ValueError(f"Item price cannot be negative: {self.price}")

    @property
    def is_aggregate(self) -> bool:
        return self.count_mode is CountMode.AGGREGATE_QUANTITY

    def with_manual_count(self, count: int) -> Item:
        return replace(self, manual_count=count)


@dataclass(frozen=True)
class LastAction:
    """Operator feedback for the most recent ledger change."""

    name: str
    identifier: str
    at: datetime


@dataclass(frozen=True)
class Discrepancy:
    """
    One line of the reconciliation result.

    A discrepancy "needs a reason" until it is either auto-resolved by the
    reconciliation oracle or manually classified.  Auto-resolved lines stay
    visible for audit but are excluded from loss/gain totals.
    """

    identifier: str
    sku: str
    name: str
    price: Decimal
    type: DiscrepancyType
    auto_resolved: bool = False
    reason: DiscrepancyReason | None = None
    note: str | None = None

    @property
    def needs_reason(self) -> bool:
        return not self.auto_resolved and self.reason is None

    @property
    def is_settled(self) -> bool:
        return not self.needs_reason

    def auto_resolve(self, reason: DiscrepancyReason) -> Discrepancy:
        return replace(self, auto_resolved=True, reason=reason)

    def classify(self, reason: DiscrepancyReason, note: str | None = None) -> Discrepancy:
        return replace(self, reason=reason, note=note)

    @property
    def key(self) -> tuple[str, DiscrepancyType]:
        return (self.identifier, self.type)


@dataclass(frozen=True)
class CountSession:
    """
    Versioned aggregate for one cycle-count instance.

    Contract:
        Frozen; every mutation produces a new snapshot through ``evolve()``.
        ``status`` is derived from ``stage``.

    Guarantees:
        - ``observed`` is always a ``frozenset``.
        - ``items`` and ``discrepancies`` are always tuples.
        - ``version`` increases by exactly one per applied change.
    """

    session_id: str
    created_on: date
    items: tuple[Item, ...]
    observed: frozenset[str] = field(default_factory=frozenset)
    stage: LifecycleState = LifecycleState.PENDING
    discrepancies: tuple[Discrepancy, ...] = ()
    last_action: LastAction | None = None
    end_time: datetime | None = None
    version: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "items", tuple(self.items))
        object.__setattr__(self, "observed", frozenset(self.observed))
        object.__setattr__(self, "discrepancies", tuple(self.discrepancies))

        identifiers = [item.identifier for item in self.items]
        if len(identifiers) != len(set(identifiers)):
            raise ValueError(
                f"Session {self.session_id} has duplicate expectation identifiers"
            )
        discrepancy_ids = [d.identifier for d in self.discrepancies]
        if len(discrepancy_ids) != len(set(discrepancy_ids)):
            raise ValueError(
                f"Session {self.session_id} has duplicate discrepancy identifiers"
            )

    @property
    def status(self) -> SessionStatus:
        return self.stage.status

    @property
    def is_read_only(self) -> bool:
        return self.stage is LifecycleState.COMPLETED

    @cached_property
    def items_by_identifier(self) -> dict[str, Item]:
        return {item.identifier: item for item in self.items}

    @cached_property
    def expected_identifiers(self) -> frozenset[str]:
        return frozenset(self.items_by_identifier)

    def item_for(self, identifier: str) -> Item | None:
        return self.items_by_identifier.get(identifier)

    def items_for_sku(self, sku: str) -> tuple[Item, ...]:
        return tuple(item for item in self.items if item.sku == sku)

    def discrepancy_for(self, identifier: str) -> Discrepancy | None:
        for discrepancy in self.discrepancies:
            if discrepancy.identifier == identifier:
                return discrepancy
        return None

    def evolve(self, **changes: Any) -> CountSession:
        """Return the next snapshot with ``changes`` applied and version bumped."""
        return replace(self, version=self.version + 1, **changes)
