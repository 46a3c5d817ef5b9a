from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, List, Optional, TypeVar

import structlog

from finbook.aggregation import (
    ZERO,
    Budget,
    Transaction,
    budget_utilization,
    filter_window,
    group_by_category,
    group_by_month,
    net_balance,
    sum_amounts,
)
from finbook.config import ZERO_BUDGET_POLICIES
from finbook.errors import DivisionByZeroError, ReportError, StoreUnavailableError
from finbook.periods import DateRange, format_period, month_range, year_range
from finbook.schemas import (
    AnnualOverview,
    BudgetComparisonEntry,
    BudgetComparisonReport,
    CategoryExpense,
    ExpenseResponse,
    IncomeResponse,
    MonthlyAmount,
    MonthlyReport,
)
from finbook.store import EXPENSE, INCOME, TransactionStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

MONTHLY = "monthly"
CATEGORY_EXPENSES = "category_expenses"
ANNUAL_OVERVIEW = "annual_overview"
BUDGET_COMPARISON = "budget_comparison"

DEFAULT_MAX_WORKERS = 8


class ReportAssembler:
    """Builds reports: resolve the period, fetch from the store, aggregate, shape.

    The assembler keeps no per-request state. Store calls run on a worker pool
    so a slow store cannot hold a request past ``timeout`` seconds.
    """

    def __init__(
        self,
        store: TransactionStore,
        *,
        timeout: Optional[float] = None,
        zero_budget_policy: str = "zero",
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        if zero_budget_policy not in ZERO_BUDGET_POLICIES:
            raise ValueError(f"Unsupported zero budget policy: {zero_budget_policy}")
        self.store = store
        self.timeout = timeout
        self.zero_budget_policy = zero_budget_policy
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="finbook-store",
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def monthly_report(self, owner_id: int, month: int, year: int) -> MonthlyReport:
        context = _Context(owner_id, MONTHLY, month=month, year=year)
        window = _resolve(context, lambda: month_range(year, month))

        incomes = self._fetch_transactions(context, INCOME, window)
        expenses = self._fetch_transactions(context, EXPENSE, window)

        total_income = sum_amounts(incomes)
        total_expenses = sum_amounts(expenses)
        report = MonthlyReport(
            month=month,
            year=year,
            total_income=total_income,
            total_expenses=total_expenses,
            net_balance=net_balance(total_income, total_expenses),
            incomes=[IncomeResponse.from_transaction(txn) for txn in incomes],
            expenses=[ExpenseResponse.from_transaction(txn) for txn in expenses],
        )
        context.log_generated(incomes=len(incomes), expenses=len(expenses))
        return report

    def category_expense_report(self, owner_id: int, year: int) -> List[CategoryExpense]:
        context = _Context(owner_id, CATEGORY_EXPENSES, year=year)
        window = _resolve(context, lambda: year_range(year))

        expenses = self._fetch_transactions(context, EXPENSE, window)
        breakdown = [CategoryExpense.from_total(group) for group in group_by_category(expenses)]
        context.log_generated(expenses=len(expenses), categories=len(breakdown))
        return breakdown

    def annual_overview(self, owner_id: int, year: int) -> AnnualOverview:
        context = _Context(owner_id, ANNUAL_OVERVIEW, year=year)
        window = _resolve(context, lambda: year_range(year))

        incomes = self._fetch_transactions(context, INCOME, window)
        expenses = self._fetch_transactions(context, EXPENSE, window)

        # Annual totals come from the same records as the monthly series so the two always agree.
        annual_income = sum_amounts(incomes)
        annual_expenses = sum_amounts(expenses)
        overview = AnnualOverview(
            year=year,
            monthly_incomes=[MonthlyAmount.from_total(entry) for entry in group_by_month(incomes, year)],
            monthly_expenses=[MonthlyAmount.from_total(entry) for entry in group_by_month(expenses, year)],
            annual_income=annual_income,
            annual_expenses=annual_expenses,
            net_annual_balance=net_balance(annual_income, annual_expenses),
        )
        context.log_generated(incomes=len(incomes), expenses=len(expenses))
        return overview

    def budget_comparison_report(self, owner_id: int, year: int) -> BudgetComparisonReport:
        context = _Context(owner_id, BUDGET_COMPARISON, year=year)
        window = _resolve(context, lambda: year_range(year))

        budgets = [
            budget
            for budget in self._call_store(context, lambda: self.store.find_budgets(owner_id, window))
            if budget.owner_id == owner_id
        ]
        budget_ids = [budget.id for budget in budgets]
        linked_expenses: List[Transaction] = []
        linked_incomes: List[Transaction] = []
        if budget_ids:
            linked_expenses = self._fetch_transactions(context, EXPENSE, None, budget_ids=budget_ids)
            linked_incomes = self._fetch_transactions(context, INCOME, None, budget_ids=budget_ids)

        comparison = [
            self._compare_budget(
                context,
                budget,
                [txn for txn in linked_expenses if txn.budget_id == budget.id],
                [txn for txn in linked_incomes if txn.budget_id == budget.id],
            )
            for budget in budgets
        ]
        context.log_generated(
            budgets=len(budgets),
            expenses=len(linked_expenses),
            incomes=len(linked_incomes),
        )
        return BudgetComparisonReport(year=year, budget_comparison=comparison)

    def _compare_budget(
        self,
        context: "_Context",
        budget: Budget,
        expenses: List[Transaction],
        incomes: List[Transaction],
    ) -> BudgetComparisonEntry:
        total_expenses = sum_amounts(expenses)
        total_incomes = sum_amounts(incomes)
        try:
            utilization = budget_utilization(total_expenses, budget.total_amount)
        except DivisionByZeroError as exc:
            logger.warning(
                "report.zero_budget",
                owner_id=context.owner_id,
                report_type=context.report_type,
                period=context.period,
                budget_id=budget.id,
                policy=self.zero_budget_policy,
            )
            if self.zero_budget_policy == "error":
                raise DivisionByZeroError(
                    f"Budget {budget.id} has a zero total amount.",
                    **context.as_kwargs(),
                ) from exc
            utilization = ZERO

        return BudgetComparisonEntry(
            budget_id=budget.id,
            name=budget.name,
            start_date=budget.start_date,
            end_date=budget.end_date,
            total_budget_amount=budget.total_amount,
            total_expenses=total_expenses,
            total_incomes=total_incomes,
            remaining=budget.total_amount - total_expenses,
            budget_utilization=utilization,
        )

    def _fetch_transactions(
        self,
        context: "_Context",
        kind: str,
        window: Optional[DateRange],
        *,
        budget_ids: Optional[List[int]] = None,
    ) -> List[Transaction]:
        transactions = self._call_store(
            context,
            lambda: self.store.find_transactions(
                context.owner_id,
                kind,
                window,
                budget_ids=budget_ids,
            ),
        )
        # Owner and window are re-checked on whatever the store returned.
        owned = [txn for txn in transactions if txn.owner_id == context.owner_id]
        if window is None:
            return owned
        return filter_window(owned, window.start, window.end)

    def _call_store(self, context: "_Context", call: Callable[[], T]) -> T:
        try:
            future = self._executor.submit(call)
            return future.result(timeout=self.timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.error(
                "report.failed",
                reason="timeout",
                timeout=self.timeout,
                **context.as_kwargs(),
            )
            raise StoreUnavailableError(
                f"Transaction store did not respond within {self.timeout} seconds.",
                **context.as_kwargs(),
            ) from exc
        except Exception as exc:
            logger.error(
                "report.failed",
                reason="store_error",
                exc_info=True,
                **context.as_kwargs(),
            )
            raise StoreUnavailableError(
                f"Transaction store failed: {exc}",
                **context.as_kwargs(),
            ) from exc


class _Context:
    def __init__(
        self,
        owner_id: int,
        report_type: str,
        *,
        year: object,
        month: object = None,
    ) -> None:
        self.owner_id = owner_id
        self.report_type = report_type
        if isinstance(year, int) and (month is None or isinstance(month, int)):
            self.period = format_period(year, month)
        else:
            self.period = f"{year}" if month is None else f"{year}-{month}"

    def as_kwargs(self) -> dict:
        return {
            "owner_id": self.owner_id,
            "report_type": self.report_type,
            "period": self.period,
        }

    def log_generated(self, **counts: int) -> None:
        logger.info("report.generated", **self.as_kwargs(), **counts)


def _resolve(context: _Context, resolver: Callable[[], DateRange]) -> DateRange:
    try:
        return resolver()
    except ReportError as exc:
        exc.owner_id = context.owner_id
        exc.report_type = context.report_type
        exc.period = context.period
        logger.info("report.rejected", reason=exc.message, **context.as_kwargs())
        raise
