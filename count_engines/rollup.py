"""
count_engines.rollup -- Financial summary and tabular rows for a count.

Responsibility:
    Simple price summation over the discrepancy list: shortage, overage and
    difference amounts with their rates against the expected stock value,
    plus the flat rows handed to the report/export collaborator.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Auto-resolved discrepancies are excluded from loss/gain amounts and
      reported separately as ``explained_amount``.
    - Rates are percentages quantized to two decimals; an expectation list
      with zero total value is treated as value 1 so rates stay defined.
    - Decimal arithmetic only.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from count_engines.reconciliation import blocking_discrepancies
from count_engines.tracer import traced_engine
from count_kernel.domain.values import Discrepancy, DiscrepancyType, Item

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class CountSummary:
    """Loss/gain rollup of one count."""

    expected_value: Decimal
    shortage_amount: Decimal
    overage_amount: Decimal
    explained_amount: Decimal
    shortage_count: int
    overage_count: int
    pending_count: int

    @property
    def difference_amount(self) -> Decimal:
        return self.shortage_amount + self.overage_amount

    @property
    def net_amount(self) -> Decimal:
        """Gain minus loss; negative means the store is short."""
        return self.overage_amount - self.shortage_amount

    @property
    def shortage_rate(self) -> Decimal:
        return _rate(self.shortage_amount, self.expected_value)

    @property
    def overage_rate(self) -> Decimal:
        return _rate(self.overage_amount, self.expected_value)

    @property
    def difference_rate(self) -> Decimal:
        return _rate(self.difference_amount, self.expected_value)


def _rate(amount: Decimal, base: Decimal) -> Decimal:
    denominator = base if base > 0 else Decimal("1")
    return (amount / denominator * 100).quantize(_CENT, rounding=ROUND_HALF_UP)


@traced_engine("rollup", "1.0")
def summarize(
    *,
    items: Sequence[Item],
    discrepancies: Sequence[Discrepancy],
) -> CountSummary:
    """Roll up the discrepancy list against the expected stock value."""
    counted = [d for d in discrepancies if not d.auto_resolved]
    shortage = sum(
        (abs(d.price) for d in counted if d.type is DiscrepancyType.SHORTAGE), Decimal("0")
    )
    overage = sum(
        (abs(d.price) for d in counted if d.type is DiscrepancyType.OVERAGE), Decimal("0")
    )
    explained = sum((abs(d.price) for d in discrepancies if d.auto_resolved), Decimal("0"))
    return CountSummary(
        expected_value=sum((item.price for item in items), Decimal("0")),
        shortage_amount=shortage,
        overage_amount=overage,
        explained_amount=explained,
        shortage_count=sum(1 for d in discrepancies if d.type is DiscrepancyType.SHORTAGE),
        overage_count=sum(1 for d in discrepancies if d.type is DiscrepancyType.OVERAGE),
        pending_count=len(blocking_discrepancies(discrepancies)),
    )


def estimate_duration_minutes(item_count: int, items_per_minute: int = 3) -> int:
    """Whole minutes an operator needs for ``item_count`` items."""
    if item_count <= 0:
        return 0
    return math.ceil(item_count / items_per_minute)


def discrepancy_rows(discrepancies: Sequence[Discrepancy]) -> list[dict[str, Any]]:
    """One flat row per discrepancy, in list order, for report export."""
    return [
        {
            "identifier": d.identifier,
            "sku": d.sku,
            "name": d.name,
            "type": d.type.value,
            "price": str(d.price),
            "auto_resolved": d.auto_resolved,
            "reason": d.reason.value if d.reason else None,
            "note": d.note,
        }
        for d in discrepancies
    ]
