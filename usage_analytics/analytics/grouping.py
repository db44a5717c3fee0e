"""
Group-and-reduce helpers shared by every report.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Hashable, Iterable, Optional, Set, TypeVar

from usage_analytics.storage.models import Transaction

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")
T = TypeVar("T")

CURRENCY_PLACES = 2
RATIO_PLACES = 4


def group_by(
    items: Iterable[T],
    key_fn: Callable[[T], Optional[K]],
    zero: Callable[[], V],
    reduce_fn: Callable[[V, T], V],
) -> Dict[K, V]:
    """Partition items by key and fold each partition.

    Groups keep the order in which their key was first seen. Items whose
    key is None belong to no group.

    Args:
        items: Records to group
        key_fn: Derives the group key from a record
        zero: Factory for a fresh accumulator
        reduce_fn: Folds one record into an accumulator and returns it

    Returns:
        Mapping of group key to accumulator
    """
    groups: Dict[K, V] = {}
    for item in items:
        key = key_fn(item)
        if key is None:
            continue
        acc = groups[key] if key in groups else zero()
        groups[key] = reduce_fn(acc, item)
    return groups


def to_decimal(value: float) -> Decimal:
    """Exact decimal for a stored float, using its shortest repr."""
    return Decimal(repr(float(value or 0)))


def round_amount(value: Decimal, places: int = CURRENCY_PLACES) -> float:
    """Round half-up once, at the output boundary."""
    quantum = Decimal(1).scaleb(-places)
    return float(value.quantize(quantum, rounding=ROUND_HALF_UP))


@dataclass
class UsageTotals:
    """Running totals for one group. cost stays unrounded."""
    cost: Decimal = Decimal(0)
    tokens: int = 0
    transactions: int = 0
    user_ids: Set[str] = field(default_factory=set)

    @property
    def users(self) -> int:
        return len(self.user_ids)


def accumulate(totals: UsageTotals, transaction: Transaction) -> UsageTotals:
    totals.cost += to_decimal(transaction.calculated_cost)
    totals.tokens += transaction.token_count or 0
    totals.transactions += 1
    if transaction.user_id:
        totals.user_ids.add(transaction.user_id)
    return totals


def by_cost_desc(groups: Dict[K, UsageTotals]):
    """Group items sorted by cost descending, then key ascending."""
    return sorted(groups.items(), key=lambda item: (-item[1].cost, str(item[0])))
