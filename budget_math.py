from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Sequence

from pnl_parser import CategoryAmount

WHOLE = Decimal("1")
CENTS = Decimal("0.01")


@dataclass(frozen=True)
class BudgetConfig:
    rate: Decimal
    reference_period_months: int


@dataclass(frozen=True)
class CategoryAllocation:
    category_id: str
    name: str
    amount: Decimal
    percent: Optional[float]


def compute_total_budget(
    income_total: Decimal, rate: Decimal, reference_months: int
) -> Decimal:
    """Average monthly income over the reference window times the rate."""
    if reference_months <= 0:
        return Decimal("0")
    average = Decimal(income_total) / Decimal(reference_months)
    return (average * Decimal(rate)).quantize(WHOLE, rounding=ROUND_HALF_UP)


def distribute_by_cos_percent(
    total_budget: Decimal, categories: Sequence[CategoryAmount]
) -> list[CategoryAllocation]:
    total_cos = sum((Decimal(c.amount) for c in categories), Decimal("0"))
    if total_cos <= 0:
        return [
            CategoryAllocation(c.category_id, c.name, Decimal("0"), None)
            for c in categories
        ]
    allocations = []
    for c in categories:
        share = Decimal(c.amount) / total_cos
        allocations.append(
            CategoryAllocation(
                category_id=c.category_id,
                name=c.name,
                amount=(Decimal(total_budget) * share).quantize(
                    CENTS, rounding=ROUND_HALF_UP
                ),
                percent=float(share * 100),
            )
        )
    return allocations
