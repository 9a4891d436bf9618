"""
Collaborators -- interfaces to systems outside the count engine.

Responsibility:
    Declares the protocols the engine consumes (catalog lookup,
    reconciliation oracle, history provider) and ships small in-memory
    implementations for wiring, demos and tests.

Architecture position:
    Kernel > Domain.  The protocols are structural (``typing.Protocol``) so
    any adapter with the right methods plugs in without inheritance.

Invariants enforced:
    - A lookup miss is ``None``, never an exception.
    - The history provider is read-only; nothing in the engine writes to it.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from typing import Protocol, runtime_checkable

from count_kernel.domain.values import DiscrepancyReason, Product, SessionStatus


@runtime_checkable
class CatalogLookup(Protocol):
    """identifier -> product metadata, or None when not found."""

    def lookup(self, identifier: str) -> Product | None:
        ...


@runtime_checkable
class ReconciliationOracle(Protocol):
    """identifier -> explaining reason from sales/transfer/returns logs, or None."""

    async def explain(self, identifier: str) -> DiscrepancyReason | None:
        ...


@dataclass(frozen=True)
class PastSessionSummary:
    """Read-only history card for a previous count."""

    session_id: str
    date: date
    status: SessionStatus
    end_time: datetime | None = None
    summary: Mapping[str, str] | None = None


@runtime_checkable
class HistoryProvider(Protocol):
    """Supplies past sessions; owned by an external collaborator."""

    def list_past_sessions(self) -> Sequence[PastSessionSummary]:
        ...


class InMemoryCatalog:
    """Catalog backed by a dict keyed on identifier."""

    def __init__(self, products: Iterable[Product] = ()) -> None:
        self._products: dict[str, Product] = {p.identifier: p for p in products}

    def add(self, product: Product) -> None:
        self._products[product.identifier] = product

    def lookup(self, identifier: str) -> Product | None:
        return self._products.get(identifier)


class MappingReconciliationOracle:
    """Oracle answering from a fixed identifier -> reason mapping.

    ``calls`` records every identifier queried, in order.
    """

    def __init__(self, explanations: Mapping[str, DiscrepancyReason] | None = None) -> None:
        self._explanations = dict(explanations or {})
        self.calls: list[str] = []

    def set_explanation(self, identifier: str, reason: DiscrepancyReason) -> None:
        self._explanations[identifier] = reason

    async def explain(self, identifier: str) -> DiscrepancyReason | None:
        self.calls.append(identifier)
        return self._explanations.get(identifier)


class StaticHistoryProvider:
    """History provider returning a fixed list."""

    def __init__(self, sessions: Sequence[PastSessionSummary] = ()) -> None:
        self._sessions = tuple(sessions)

    def list_past_sessions(self) -> Sequence[PastSessionSummary]:
        return self._sessions
