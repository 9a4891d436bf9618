"""
count_engines.discrepancy -- Shortage / overage calculation.

Responsibility:
    Derives the discrepancy list from the expectation list, the observed
    set and a catalog lookup.  Also reconciles a freshly calculated list
    with an existing, possibly annotated one, and tells whether an existing
    list still matches the ledger without querying the catalog.

Architecture position:
    Engines -- pure calculation layer.  The catalog lookup is the only
    collaborator and is read-only.

Invariants enforced:
    - Every expected identifier that was never observed yields exactly one
      SHORTAGE with the item's own sku / name / price.
    - Every observed identifier absent from the expectation list yields
      exactly one OVERAGE, described by the catalog or by the unknown-item
      sentinel with zero price on a lookup miss.
    - Expected-and-observed identifiers yield nothing.
    - Shortages precede overages.  Shortages keep expectation order;
      overages follow sorted identifier order (the observed set itself has
      no meaningful order).
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from decimal import Decimal

from count_engines.tracer import traced_engine
from count_kernel.domain.collaborators import CatalogLookup
from count_kernel.domain.values import Discrepancy, DiscrepancyType, Item
from count_kernel.logging_config import get_logger

logger = get_logger("engines.discrepancy")

UNKNOWN_ITEM_NAME = "Unknown item"
UNKNOWN_SKU = "UNKNOWN"


@traced_engine("discrepancy", "1.0", fingerprint_fields=("items", "observed"))
def calculate_discrepancies(
    *,
    items: Sequence[Item],
    observed: Iterable[str],
    catalog: CatalogLookup,
    unknown_item_name: str = UNKNOWN_ITEM_NAME,
    unknown_sku: str = UNKNOWN_SKU,
) -> tuple[Discrepancy, ...]:
    """Compute shortages then overages for one session."""
    observed_set = frozenset(observed)
    expected = {item.identifier for item in items}

    shortages = [
        Discrepancy(
            identifier=item.identifier,
            sku=item.sku,
            name=item.name,
            price=item.price,
            type=DiscrepancyType.SHORTAGE,
        )
        for item in items
        if item.identifier not in observed_set
    ]

    overages: list[Discrepancy] = []
    misses = 0
    for identifier in sorted(observed_set - expected):
        product = catalog.lookup(identifier)
        if product is None:
            misses += 1
            overages.append(
                Discrepancy(
                    identifier=identifier,
                    sku=unknown_sku,
                    name=unknown_item_name,
                    price=Decimal("0"),
                    type=DiscrepancyType.OVERAGE,
                )
            )
        else:
            overages.append(
                Discrepancy(
                    identifier=identifier,
                    sku=product.sku,
                    name=product.name,
                    price=product.price,
                    type=DiscrepancyType.OVERAGE,
                )
            )

    logger.info(
        "discrepancies_calculated",
        extra={
            "shortage_count": len(shortages),
            "overage_count": len(overages),
            "catalog_misses": misses,
        },
    )
    return tuple(shortages) + tuple(overages)


def merge_annotations(
    existing: Sequence[Discrepancy],
    fresh: Sequence[Discrepancy],
) -> tuple[Discrepancy, ...]:
    """
    Reconcile a fresh calculation with an existing discrepancy list.

    Returns ``existing`` unchanged when both lists cover the same
    (identifier, type) pairs.  Otherwise returns the fresh list in fresh
    order, with the existing entry (and its annotations) substituted for
    every pair present in both.
    """
    existing = tuple(existing)
    by_key = {d.key: d for d in existing}
    if set(by_key) == {d.key for d in fresh}:
        return existing
    merged = tuple(by_key.get(d.key, d) for d in fresh)
    logger.info(
        "discrepancies_refreshed",
        extra={
            "previous_count": len(existing),
            "current_count": len(merged),
            "carried_over": sum(1 for d in fresh if d.key in by_key),
        },
    )
    return merged


def discrepancy_keys(
    items: Sequence[Item],
    observed: Iterable[str],
) -> frozenset[tuple[str, DiscrepancyType]]:
    """The (identifier, type) pairs a calculation would yield, without a catalog lookup."""
    observed_set = frozenset(observed)
    expected = {item.identifier for item in items}
    return frozenset(
        [(i, DiscrepancyType.SHORTAGE) for i in expected - observed_set]
        + [(i, DiscrepancyType.OVERAGE) for i in observed_set - expected]
    )
