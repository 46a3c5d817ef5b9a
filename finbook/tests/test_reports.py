import threading
import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from finbook.aggregation import Budget
from finbook.errors import DivisionByZeroError, InvalidPeriodError, StoreUnavailableError
from finbook.reports import ReportAssembler
from finbook.store import EXPENSE, INCOME, SqlTransactionStore, TransactionStore


class BrokenStore(TransactionStore):
    def find_transactions(self, owner_id, kind, date_range=None, *, budget_ids=None):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    def find_budgets(self, owner_id, date_range=None):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    def close(self) -> None:
        pass


class StalledStore(TransactionStore):
    def __init__(self) -> None:
        self.release = threading.Event()

    def find_transactions(self, owner_id, kind, date_range=None, *, budget_ids=None):
        self.release.wait(5)
        return []

    def find_budgets(self, owner_id, date_range=None):
        self.release.wait(5)
        return []

    def close(self) -> None:
        self.release.set()


class ZeroBudgetStore(TransactionStore):
    def find_transactions(self, owner_id, kind, date_range=None, *, budget_ids=None):
        return []

    def find_budgets(self, owner_id, date_range=None):
        return [
            Budget(
                id=7,
                owner_id=owner_id,
                name="Empty",
                total_amount=Decimal("0"),
                start_date=date(2024, 1, 1),
                end_date=date(2024, 12, 31),
            )
        ]

    def close(self) -> None:
        pass


class ReportAssemblerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SqlTransactionStore("sqlite://")
        self.store.initialize()
        self.owner = self.store.create_user("Ada", "ada@example.com", "hash")["id"]
        self.other = self.store.create_user("Bob", "bob@example.com", "hash")["id"]
        self.assembler = ReportAssembler(self.store, timeout=5)

        self.add_expense(self.owner, "50", "food", date(2024, 3, 5))
        self.add_expense(self.owner, "30", "food", date(2024, 3, 20))
        self.add_expense(self.owner, "20", "transport", date(2024, 3, 10))
        self.add_income(self.owner, "200", date(2024, 3, 1))

    def tearDown(self) -> None:
        self.assembler.close()
        self.store.close()

    def add_expense(self, owner_id: int, amount: str, category: str, on: date, budget_id=None):
        return self.store.create_transaction(
            owner_id,
            EXPENSE,
            {"amount": Decimal(amount), "category": category, "date": on, "budget_id": budget_id},
        )

    def add_income(self, owner_id: int, amount: str, on: date, budget_id=None):
        return self.store.create_transaction(
            owner_id,
            INCOME,
            {"amount": Decimal(amount), "source": "Salary", "date": on, "budget_id": budget_id},
        )

    def add_budget(self, owner_id: int, total: str, start: date) -> Budget:
        return self.store.create_budget(
            owner_id,
            name=f"Budget {start.isoformat()}",
            total_amount=Decimal(total),
            start_date=start,
            end_date=date(start.year, 12, 31),
        )

    def test_monthly_report_totals(self) -> None:
        report = self.assembler.monthly_report(self.owner, 3, 2024)

        self.assertEqual(report.month, 3)
        self.assertEqual(report.year, 2024)
        self.assertEqual(report.total_income, Decimal("200"))
        self.assertEqual(report.total_expenses, Decimal("100"))
        self.assertEqual(report.net_balance, Decimal("100"))
        self.assertEqual(len(report.incomes), 1)
        self.assertEqual(len(report.expenses), 3)

    def test_monthly_report_excludes_boundaries_and_other_owners(self) -> None:
        self.add_expense(self.owner, "5", "food", date(2024, 4, 1))
        self.add_expense(self.owner, "5", "food", date(2024, 2, 29))
        self.add_expense(self.other, "1000", "food", date(2024, 3, 15))
        self.add_income(self.other, "1000", date(2024, 3, 15))

        report = self.assembler.monthly_report(self.owner, 3, 2024)

        self.assertEqual(report.total_income, Decimal("200"))
        self.assertEqual(report.total_expenses, Decimal("100"))
        self.assertTrue(all(item.user_id == self.owner for item in report.expenses))

    def test_monthly_report_for_empty_month(self) -> None:
        report = self.assembler.monthly_report(self.owner, 12, 2024)

        self.assertEqual(report.total_income, Decimal("0"))
        self.assertEqual(report.total_expenses, Decimal("0"))
        self.assertEqual(report.net_balance, Decimal("0"))
        self.assertEqual(report.incomes, [])
        self.assertEqual(report.expenses, [])

    def test_december_report_includes_new_years_eve_only(self) -> None:
        self.add_expense(self.owner, "12", "party", date(2024, 12, 31))
        self.add_expense(self.owner, "99", "party", date(2025, 1, 1))

        report = self.assembler.monthly_report(self.owner, 12, 2024)

        self.assertEqual(report.total_expenses, Decimal("12"))

    def test_invalid_month_carries_context(self) -> None:
        with self.assertRaises(InvalidPeriodError) as ctx:
            self.assembler.monthly_report(self.owner, 13, 2024)

        self.assertEqual(ctx.exception.owner_id, self.owner)
        self.assertEqual(ctx.exception.report_type, "monthly")
        self.assertEqual(ctx.exception.period, "2024-13")

    def test_invalid_year_is_rejected_for_every_report(self) -> None:
        reports = (
            lambda: self.assembler.category_expense_report(self.owner, 0),
            lambda: self.assembler.annual_overview(self.owner, -1),
            lambda: self.assembler.budget_comparison_report(self.owner, 0),
            lambda: self.assembler.monthly_report(self.owner, 1, 0),
        )
        for build in reports:
            with self.assertRaises(InvalidPeriodError):
                build()

    def test_category_expense_report(self) -> None:
        self.add_expense(self.other, "500", "food", date(2024, 3, 1))
        self.add_expense(self.owner, "500", "food", date(2023, 3, 1))

        report = self.assembler.category_expense_report(self.owner, 2024)

        self.assertEqual(
            [(row.category, row.total_amount, row.transaction_count) for row in report],
            [("food", Decimal("80"), 2), ("transport", Decimal("20"), 1)],
        )

    def test_annual_overview_monthly_series_matches_annual_totals(self) -> None:
        self.add_income(self.owner, "1500", date(2024, 1, 15))
        self.add_income(self.owner, "1500", date(2024, 12, 31))
        self.add_expense(self.owner, "45.55", "rent", date(2024, 7, 4))
        self.add_income(self.owner, "9999", date(2025, 1, 1))
        self.add_income(self.other, "9999", date(2024, 5, 1))

        overview = self.assembler.annual_overview(self.owner, 2024)

        self.assertEqual(len(overview.monthly_incomes), 12)
        self.assertEqual(len(overview.monthly_expenses), 12)
        self.assertEqual(
            sum((entry.total for entry in overview.monthly_incomes), Decimal("0")),
            overview.annual_income,
        )
        self.assertEqual(
            sum((entry.total for entry in overview.monthly_expenses), Decimal("0")),
            overview.annual_expenses,
        )
        self.assertEqual(overview.annual_income, Decimal("3200"))
        self.assertEqual(overview.annual_expenses, Decimal("145.55"))
        self.assertEqual(overview.net_annual_balance, Decimal("3054.45"))
        self.assertEqual(overview.monthly_incomes[2].total, Decimal("200"))
        self.assertEqual(overview.monthly_incomes[1].total, Decimal("0"))

    def test_annual_overview_for_empty_year(self) -> None:
        overview = self.assembler.annual_overview(self.owner, 2019)

        self.assertEqual([entry.month for entry in overview.monthly_expenses], list(range(1, 13)))
        self.assertEqual(overview.annual_income, Decimal("0"))
        self.assertEqual(overview.net_annual_balance, Decimal("0"))

    def test_budget_comparison_utilization(self) -> None:
        budget = self.add_budget(self.owner, "500", date(2024, 1, 1))
        self.add_expense(self.owner, "100", "rent", date(2024, 2, 1), budget_id=budget.id)
        self.add_expense(self.owner, "25", "rent", date(2023, 12, 30), budget_id=budget.id)
        self.add_income(self.owner, "60", date(2024, 2, 2), budget_id=budget.id)

        report = self.assembler.budget_comparison_report(self.owner, 2024)

        self.assertEqual(report.year, 2024)
        self.assertEqual(len(report.budget_comparison), 1)
        entry = report.budget_comparison[0]
        self.assertEqual(entry.budget_id, budget.id)
        self.assertEqual(entry.total_budget_amount, Decimal("500"))
        self.assertEqual(entry.total_expenses, Decimal("125"))
        self.assertEqual(entry.total_incomes, Decimal("60"))
        self.assertEqual(entry.remaining, Decimal("375"))
        self.assertEqual(entry.budget_utilization, Decimal("25"))

    def test_budget_without_linked_expenses_reports_zero(self) -> None:
        self.add_budget(self.owner, "300", date(2024, 6, 1))

        report = self.assembler.budget_comparison_report(self.owner, 2024)

        entry = report.budget_comparison[0]
        self.assertEqual(entry.total_expenses, Decimal("0"))
        self.assertEqual(entry.total_incomes, Decimal("0"))
        self.assertEqual(entry.budget_utilization, Decimal("0"))

    def test_budget_comparison_only_includes_owner_budgets_started_in_year(self) -> None:
        mine = self.add_budget(self.owner, "100", date(2024, 3, 1))
        self.add_budget(self.owner, "100", date(2023, 3, 1))
        theirs = self.add_budget(self.other, "100", date(2024, 3, 1))
        self.add_expense(self.other, "90", "food", date(2024, 3, 2), budget_id=theirs.id)

        report = self.assembler.budget_comparison_report(self.owner, 2024)

        self.assertEqual([entry.budget_id for entry in report.budget_comparison], [mine.id])
        self.assertEqual(report.budget_comparison[0].total_expenses, Decimal("0"))

    def test_zero_budget_is_reported_as_zero_by_default(self) -> None:
        assembler = ReportAssembler(ZeroBudgetStore(), timeout=1)
        try:
            report = assembler.budget_comparison_report(self.owner, 2024)
        finally:
            assembler.close()

        self.assertEqual(report.budget_comparison[0].budget_utilization, Decimal("0"))

    def test_zero_budget_raises_under_error_policy(self) -> None:
        assembler = ReportAssembler(ZeroBudgetStore(), timeout=1, zero_budget_policy="error")
        try:
            with self.assertRaises(DivisionByZeroError) as ctx:
                assembler.budget_comparison_report(self.owner, 2024)
        finally:
            assembler.close()

        self.assertEqual(ctx.exception.report_type, "budget_comparison")

    def test_unknown_zero_budget_policy_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            ReportAssembler(ZeroBudgetStore(), zero_budget_policy="ignore")

    def test_store_failure_surfaces_as_store_unavailable(self) -> None:
        assembler = ReportAssembler(BrokenStore(), timeout=1)
        try:
            with self.assertRaises(StoreUnavailableError) as ctx:
                assembler.category_expense_report(self.owner, 2024)
        finally:
            assembler.close()

        self.assertEqual(ctx.exception.owner_id, self.owner)
        self.assertEqual(ctx.exception.report_type, "category_expenses")
        self.assertEqual(ctx.exception.period, "2024")
        self.assertIsInstance(ctx.exception.__cause__, OperationalError)

    def test_store_timeout_surfaces_as_store_unavailable(self) -> None:
        store = StalledStore()
        assembler = ReportAssembler(store, timeout=0.05)
        try:
            with self.assertRaises(StoreUnavailableError) as ctx:
                assembler.monthly_report(self.owner, 3, 2024)
        finally:
            store.close()
            assembler.close()

        self.assertIn("did not respond", ctx.exception.message)
        self.assertEqual(ctx.exception.to_dict()["period"], "2024-03")

    def test_closed_assembler_surfaces_as_store_unavailable(self) -> None:
        assembler = ReportAssembler(self.store, timeout=1)
        assembler.close()

        with self.assertRaises(StoreUnavailableError) as ctx:
            assembler.annual_overview(self.owner, 2024)

        self.assertEqual(ctx.exception.report_type, "annual_overview")
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)


if __name__ == "__main__":
    unittest.main()
