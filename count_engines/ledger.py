"""
count_engines.ledger -- Count ledger: observed set, manual quantities, queries.

Responsibility:
    Applies scan and quantity commands to a ``CountSession`` snapshot and
    answers the scanner-screen queries: unscanned / scanned / overage
    partition, progress, and free-text search.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Timestamps come in as
    arguments; the lifecycle service supplies them from its Clock.

Invariants enforced:
    - A scan adds at most one identifier to the observed set.  Scanning an
      observed identifier changes nothing and is reported as a duplicate.
    - Each aggregate SKU is one ledger entry keyed by its representative
      identifier (the SKU's first item in expectation order).  A positive
      count observes it, a zero count un-observes it.
    - A zero count on a counted SKU is only applied with ``confirm_zero``.
    - Progress counts expectation coverage only; overage never counts.

Failure modes:
    - MalformedIdentifierError for blank / short / whitespace identifiers.
    - NegativeQuantityError, UnknownSkuError, CountModeMismatchError and
      ValidationError (non-integer count) from ``apply_set_quantity``.
    Rejected commands leave the snapshot untouched.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from count_kernel.domain.commands import (
    CommandResult,
    QuantityOutcome,
    QuantityStatus,
    ScanCommand,
    ScanOutcome,
    SetQuantityCommand,
)
from count_kernel.domain.values import CountMode, CountSession, Item, LastAction
from count_kernel.exceptions import (
    CountModeMismatchError,
    MalformedIdentifierError,
    NegativeQuantityError,
    UnknownSkuError,
    ValidationError,
)
from count_kernel.logging_config import get_logger

logger = get_logger("engines.ledger")

DEFAULT_MIN_IDENTIFIER_LENGTH = 5
DEFAULT_UNKNOWN_ITEM_NAME = "Unknown item"


@dataclass(frozen=True)
class LedgerPartition:
    """Expectation list split by observation, plus unexpected identifiers."""

    unscanned: tuple[Item, ...]
    scanned: tuple[Item, ...]
    overage: tuple[str, ...]


@dataclass(frozen=True)
class Progress:
    """Expectation coverage: scanned expected items over total expected items."""

    scanned: int
    total: int

    @property
    def fraction(self) -> Decimal:
        if self.total == 0:
            return Decimal("0")
        return Decimal(self.scanned) / Decimal(self.total)

    @property
    def percent(self) -> int:
        return int((self.fraction * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @property
    def is_complete(self) -> bool:
        return self.total > 0 and self.scanned == self.total


def normalize_identifier(identifier: str, min_length: int = DEFAULT_MIN_IDENTIFIER_LENGTH) -> str:
    """Strip surrounding whitespace and validate a scanned/typed identifier."""
    if not isinstance(identifier, str):
        raise MalformedIdentifierError(repr(identifier), min_length)
    cleaned = identifier.strip()
    if len(cleaned) < min_length or any(ch.isspace() for ch in cleaned):
        raise MalformedIdentifierError(identifier, min_length)
    return cleaned


def search_items(items: Iterable[Item], query: str) -> tuple[Item, ...]:
    """Case-insensitive substring match on SKU, name or identifier."""
    needle = query.strip().lower()
    items = tuple(items)
    if not needle:
        return items
    return tuple(
        item
        for item in items
        if needle in item.sku.lower()
        or needle in item.name.lower()
        or needle in item.identifier.lower()
    )


class CountLedger:
    """
    Pure command applier and query engine for the count ledger.

    Contract:
        ``apply_*`` methods take a snapshot and return a ``CommandResult``;
        the input snapshot is never mutated.  ``changed`` is False when the
        returned snapshot is the input one.

    Non-goals:
        - Does NOT check the lifecycle stage -- the lifecycle service gates
          which commands may be applied.
        - Does NOT persist anything.
    """

    def __init__(
        self,
        min_identifier_length: int = DEFAULT_MIN_IDENTIFIER_LENGTH,
        unknown_item_name: str = DEFAULT_UNKNOWN_ITEM_NAME,
    ) -> None:
        self.min_identifier_length = min_identifier_length
        self.unknown_item_name = unknown_item_name

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def apply_scan(
        self,
        session: CountSession,
        command: ScanCommand,
        at: datetime,
    ) -> CommandResult[ScanOutcome]:
        """Mark an identifier observed; report duplicates instead of dropping them.

        The length and whitespace rule applies only to identifiers outside
        the expectation list; an expected identifier is always accepted.
        """
        item = None
        if isinstance(command.identifier, str):
            item = session.item_for(command.identifier.strip())
        if item is not None:
            identifier = item.identifier
        else:
            identifier = normalize_identifier(command.identifier, self.min_identifier_length)
            item = session.item_for(identifier)
        name = item.name if item is not None else self.unknown_item_name

        if identifier in session.observed:
            logger.info(
                "duplicate_scan",
                extra={"identifier": identifier, "expected": item is not None},
            )
            return CommandResult(
                session=session,
                outcome=ScanOutcome(
                    identifier=identifier,
                    duplicate=True,
                    expected=item is not None,
                    item_name=name,
                ),
                changed=False,
            )

        updated = session.evolve(
            observed=session.observed | {identifier},
            last_action=LastAction(name=name, identifier=identifier, at=at),
        )
        logger.info(
            "scan_applied",
            extra={
                "identifier": identifier,
                "expected": item is not None,
                "observed_count": len(updated.observed),
            },
        )
        return CommandResult(
            session=updated,
            outcome=ScanOutcome(
                identifier=identifier,
                duplicate=False,
                expected=item is not None,
                item_name=name,
            ),
            changed=True,
        )

    def apply_set_quantity(
        self,
        session: CountSession,
        command: SetQuantityCommand,
        at: datetime,
    ) -> CommandResult[QuantityOutcome]:
        """Set the manual count of an aggregate SKU and sync its observed flag."""
        sku, count = command.sku, command.count
        if isinstance(count, bool) or not isinstance(count, int):
            raise ValidationError(f"Quantity for SKU {sku} must be an integer: {count!r}")
        if count < 0:
            raise NegativeQuantityError(sku, count)

        representative = self.representative_item(session, sku)
        key = representative.identifier
        currently_observed = key in session.observed

        if count == 0 and currently_observed and not command.confirm_zero:
            logger.info("zero_quantity_confirmation_required", extra={"sku": sku})
            return CommandResult(
                session=session,
                outcome=QuantityOutcome(
                    sku=sku,
                    count=count,
                    status=QuantityStatus.CONFIRMATION_REQUIRED,
                    representative_identifier=key,
                    observed=True,
                ),
                changed=False,
            )

        if (representative.manual_count or 0) == count and currently_observed == (count > 0):
            return CommandResult(
                session=session,
                outcome=QuantityOutcome(
                    sku=sku,
                    count=count,
                    status=QuantityStatus.UNCHANGED,
                    representative_identifier=key,
                    observed=currently_observed,
                ),
                changed=False,
            )

        items = tuple(
            item.with_manual_count(count) if item.sku == sku else item
            for item in session.items
        )
        if count > 0:
            observed = session.observed | {key}
            last_action = LastAction(name=representative.name, identifier=key, at=at)
        else:
            observed = session.observed - {key}
            last_action = session.last_action

        updated = session.evolve(items=items, observed=observed, last_action=last_action)
        logger.info(
            "quantity_set",
            extra={
                "sku": sku,
                "count": count,
                "previous_count": representative.manual_count,
                "observed": count > 0,
            },
        )
        return CommandResult(
            session=updated,
            outcome=QuantityOutcome(
                sku=sku,
                count=count,
                status=QuantityStatus.APPLIED,
                representative_identifier=key,
                observed=count > 0,
            ),
            changed=True,
        )

    def representative_item(self, session: CountSession, sku: str) -> Item:
        """First expectation item of an aggregate-counted SKU."""
        items = session.items_for_sku(sku)
        if not items:
            raise UnknownSkuError(sku)
        representative = items[0]
        if representative.count_mode is not CountMode.AGGREGATE_QUANTITY:
            raise CountModeMismatchError(sku, representative.count_mode.value)
        return representative

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def partition(self, session: CountSession) -> LedgerPartition:
        """Split the expectation list; unscanned scan-counted items come first."""
        observed = session.observed
        unscanned = [item for item in session.items if item.identifier not in observed]
        # sorted() is stable: expectation order is kept within each mode
        unscanned.sort(key=lambda item: 0 if item.count_mode is CountMode.IDENTIFIER_SCAN else 1)
        scanned = tuple(item for item in session.items if item.identifier in observed)
        return LedgerPartition(
            unscanned=tuple(unscanned),
            scanned=scanned,
            overage=self.overage(session),
        )

    def overage(self, session: CountSession) -> tuple[str, ...]:
        """Observed identifiers with no expectation entry, in sorted order."""
        return tuple(sorted(session.observed - session.expected_identifiers))

    def progress(self, session: CountSession) -> Progress:
        scanned = len(session.expected_identifiers & session.observed)
        return Progress(scanned=scanned, total=len(session.items))
