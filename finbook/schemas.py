import re
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel

from finbook.aggregation import Budget, CategoryTotal, MonthTotal, Transaction

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6


def normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    if not EMAIL_PATTERN.match(normalized):
        raise ValueError("Invalid email.")
    return normalized


def normalize_name(value: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError("Name is required.")
    return normalized


class SignupPayload(BaseModel):
    name: str
    email: str
    password: str

    @classmethod
    def validate_payload(cls, payload: "SignupPayload") -> "SignupPayload":
        payload.name = normalize_name(payload.name)
        payload.email = normalize_email(payload.email)
        if len(payload.password) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
        return payload


class CredentialsPayload(BaseModel):
    email: str
    password: str

    @classmethod
    def validate_payload(cls, payload: "CredentialsPayload") -> "CredentialsPayload":
        payload.email = normalize_email(payload.email)
        if not payload.password:
            raise ValueError("Password is required.")
        return payload


class ProfilePayload(BaseModel):
    name: str
    email: str

    @classmethod
    def validate_payload(cls, payload: "ProfilePayload") -> "ProfilePayload":
        payload.name = normalize_name(payload.name)
        payload.email = normalize_email(payload.email)
        return payload


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    created_at: datetime | None = None


class BudgetPayload(BaseModel):
    name: str
    total_amount: Decimal
    start_date: date
    end_date: date

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Budget name is required.")
        if payload.total_amount <= 0:
            raise ValueError("Total amount must be greater than zero.")
        if payload.start_date > payload.end_date:
            raise ValueError("Start date must be on or before end date.")
        return payload


class BudgetResponse(BudgetPayload):
    id: int
    user_id: int

    @classmethod
    def from_budget(cls, budget: Budget) -> "BudgetResponse":
        return cls(
            id=budget.id,
            user_id=budget.owner_id,
            name=budget.name,
            total_amount=budget.total_amount,
            start_date=budget.start_date,
            end_date=budget.end_date,
        )


class ExpensePayload(BaseModel):
    amount: Decimal
    category: str
    date: date
    budget_id: int | None = None
    description: str | None = None

    @classmethod
    def validate_payload(cls, payload: "ExpensePayload") -> "ExpensePayload":
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.category = payload.category.strip()
        if not payload.category:
            raise ValueError("Category is required.")
        payload.description = payload.description.strip() if payload.description else None
        return payload


class ExpenseResponse(ExpensePayload):
    id: int
    user_id: int

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "ExpenseResponse":
        return cls(
            id=txn.id,
            user_id=txn.owner_id,
            amount=txn.amount,
            category=txn.category or "",
            date=txn.date,
            budget_id=txn.budget_id,
            description=txn.description,
        )


class IncomePayload(BaseModel):
    amount: Decimal
    source: str
    date: date
    budget_id: int | None = None
    description: str | None = None

    @classmethod
    def validate_payload(cls, payload: "IncomePayload") -> "IncomePayload":
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.source = payload.source.strip()
        if not payload.source:
            raise ValueError("Source is required.")
        payload.description = payload.description.strip() if payload.description else None
        return payload


class IncomeResponse(IncomePayload):
    id: int
    user_id: int

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "IncomeResponse":
        return cls(
            id=txn.id,
            user_id=txn.owner_id,
            amount=txn.amount,
            source=txn.source or "",
            date=txn.date,
            budget_id=txn.budget_id,
            description=txn.description,
        )


class MonthlyReport(BaseModel):
    month: int
    year: int
    total_income: Decimal
    total_expenses: Decimal
    net_balance: Decimal
    incomes: list[IncomeResponse]
    expenses: list[ExpenseResponse]


class CategoryExpense(BaseModel):
    category: str
    total_amount: Decimal
    transaction_count: int

    @classmethod
    def from_total(cls, group: CategoryTotal) -> "CategoryExpense":
        return cls(
            category=group.category,
            total_amount=group.total_amount,
            transaction_count=group.transaction_count,
        )


class MonthlyAmount(BaseModel):
    month: int
    total: Decimal

    @classmethod
    def from_total(cls, entry: MonthTotal) -> "MonthlyAmount":
        return cls(month=entry.month, total=entry.total)


class AnnualOverview(BaseModel):
    year: int
    monthly_incomes: list[MonthlyAmount]
    monthly_expenses: list[MonthlyAmount]
    annual_income: Decimal
    annual_expenses: Decimal
    net_annual_balance: Decimal


class BudgetComparisonEntry(BaseModel):
    budget_id: int
    name: str
    start_date: date
    end_date: date
    total_budget_amount: Decimal
    total_expenses: Decimal
    total_incomes: Decimal
    remaining: Decimal
    budget_utilization: Decimal


class BudgetComparisonReport(BaseModel):
    year: int
    budget_comparison: list[BudgetComparisonEntry]
