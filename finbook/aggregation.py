from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from finbook.errors import DivisionByZeroError

ZERO = Decimal("0")
HUNDRED = Decimal("100")
UNCATEGORIZED = "Uncategorized"
MONTHS_PER_YEAR = 12


@dataclass(frozen=True)
class Transaction:
    id: int
    owner_id: int
    kind: str
    amount: Decimal
    date: date
    budget_id: Optional[int] = None
    category: Optional[str] = None
    source: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class Budget:
    id: int
    owner_id: int
    name: str
    total_amount: Decimal
    start_date: date
    end_date: date


@dataclass(frozen=True)
class CategoryTotal:
    category: str
    total_amount: Decimal
    transaction_count: int


@dataclass(frozen=True)
class MonthTotal:
    month: int
    total: Decimal


def sum_amounts(transactions: Iterable[Transaction]) -> Decimal:
    total = ZERO
    for txn in transactions:
        total += _coerce_amount(txn.amount)
    return total


def filter_window(
    transactions: Iterable[Transaction],
    start_date: date,
    end_date: date,
) -> List[Transaction]:
    """Keep transactions dated in ``[start_date, end_date)``."""
    return [txn for txn in transactions if start_date <= txn.date < end_date]


def group_by_category(expenses: Iterable[Transaction]) -> List[CategoryTotal]:
    """Group expenses by exact category.

    Ordered by total descending; equal totals keep the order in which their
    category was first seen.
    """
    totals: dict[str, Decimal] = {}
    counts: dict[str, int] = {}
    for txn in expenses:
        category = txn.category if txn.category is not None else UNCATEGORIZED
        totals[category] = totals.get(category, ZERO) + _coerce_amount(txn.amount)
        counts[category] = counts.get(category, 0) + 1

    groups = [
        CategoryTotal(
            category=category,
            total_amount=total,
            transaction_count=counts[category],
        )
        for category, total in totals.items()
    ]
    # sorted() is stable, dict order is insertion order.
    return sorted(groups, key=lambda group: group.total_amount, reverse=True)


def group_by_month(transactions: Iterable[Transaction], year: int) -> List[MonthTotal]:
    buckets = [ZERO] * MONTHS_PER_YEAR
    for txn in transactions:
        if txn.date.year != year:
            continue
        buckets[txn.date.month - 1] += _coerce_amount(txn.amount)
    return [
        MonthTotal(month=index + 1, total=total)
        for index, total in enumerate(buckets)
    ]


def net_balance(income_total: Decimal, expense_total: Decimal) -> Decimal:
    return _coerce_amount(income_total) - _coerce_amount(expense_total)


def budget_utilization(total_expenses: Decimal, budget_total_amount: Decimal) -> Decimal:
    budget_total = _coerce_amount(budget_total_amount)
    if budget_total == ZERO:
        raise DivisionByZeroError("Budget total amount is zero; utilization is undefined.")
    return (_coerce_amount(total_expenses) / budget_total) * HUNDRED


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
