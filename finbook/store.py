from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Any, Collection, Iterable, List, Mapping, Optional

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from finbook.aggregation import Budget, Transaction
from finbook.periods import DateRange

EXPENSE = "expense"
INCOME = "income"
TRANSACTION_KINDS = {EXPENSE, INCOME}

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

expenses = Table(
    "expenses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("category", String(255), nullable=False),
    Column("date", Date, nullable=False),
    Column("budget_id", Integer, ForeignKey("budgets.id")),
    Column("description", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

incomes = Table(
    "incomes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("source", String(255), nullable=False),
    Column("date", Date, nullable=False),
    Column("budget_id", Integer, ForeignKey("budgets.id")),
    Column("description", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

TRANSACTION_TABLES = {EXPENSE: expenses, INCOME: incomes}
LABEL_COLUMNS = {EXPENSE: "category", INCOME: "source"}


class TransactionStore(ABC):
    """Read contract the report assembler depends on.

    Implementations must filter strictly by owner and treat date ranges as
    half-open (inclusive start, exclusive end).
    """

    @abstractmethod
    def find_transactions(
        self,
        owner_id: int,
        kind: str,
        date_range: Optional[DateRange] = None,
        *,
        budget_ids: Optional[Collection[int]] = None,
    ) -> List[Transaction]:
        """Return the owner's expenses or incomes.

        Args:
            owner_id: Owner whose records are returned
            kind: "expense" or "income"
            date_range: Half-open window on the transaction date, or None for all time
            budget_ids: Only transactions linked to one of these budgets

        Returns:
            Transactions ordered by date, then id
        """

    @abstractmethod
    def find_budgets(
        self,
        owner_id: int,
        date_range: Optional[DateRange] = None,
    ) -> List[Budget]:
        """Return the owner's budgets whose start date falls in ``date_range``."""

    @abstractmethod
    def close(self) -> None:
        """Release the store's resources."""


def normalize_kind(kind: str) -> str:
    normalized = kind.strip().lower()
    if normalized not in TRANSACTION_KINDS:
        raise ValueError(f"Unsupported transaction kind: {kind}")
    return normalized


def create_store_engine(database_url: str) -> Engine:
    connect_args: dict[str, Any] = {}
    engine_kwargs: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            # One shared connection, otherwise every pooled connection gets its own empty database.
            engine_kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **engine_kwargs)


class SqlTransactionStore(TransactionStore):
    """SQLAlchemy-backed store for users, budgets, expenses and incomes."""

    def __init__(self, database_url: Optional[str] = None, *, engine: Optional[Engine] = None) -> None:
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required.")
            engine = create_store_engine(database_url)
        self.engine = engine

    def initialize(self) -> None:
        metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    # Report queries

    def find_transactions(
        self,
        owner_id: int,
        kind: str,
        date_range: Optional[DateRange] = None,
        *,
        budget_ids: Optional[Collection[int]] = None,
    ) -> List[Transaction]:
        normalized_kind = normalize_kind(kind)
        table = TRANSACTION_TABLES[normalized_kind]
        if budget_ids is not None and not budget_ids:
            return []

        stmt = select(table).where(table.c.user_id == owner_id)
        if date_range is not None:
            stmt = stmt.where(
                table.c.date >= date_range.start,
                table.c.date < date_range.end,
            )
        if budget_ids is not None:
            stmt = stmt.where(table.c.budget_id.in_(list(budget_ids)))
        stmt = stmt.order_by(table.c.date.asc(), table.c.id.asc())

        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_transaction(normalized_kind, row) for row in rows]

    def find_budgets(
        self,
        owner_id: int,
        date_range: Optional[DateRange] = None,
    ) -> List[Budget]:
        stmt = select(budgets).where(budgets.c.user_id == owner_id)
        if date_range is not None:
            stmt = stmt.where(
                budgets.c.start_date >= date_range.start,
                budgets.c.start_date < date_range.end,
            )
        stmt = stmt.order_by(budgets.c.start_date.asc(), budgets.c.id.asc())

        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_budget(row) for row in rows]

    # Users

    def create_user(self, name: str, email: str, hashed_password: str) -> Optional[dict]:
        stmt = (
            insert(users)
            .values(name=name, email=email, hashed_password=hashed_password)
            .returning(users.c.id, users.c.name, users.c.email, users.c.created_at)
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        return dict(row) if row else None

    def get_user(self, user_id: int) -> Optional[dict]:
        stmt = select(users.c.id, users.c.name, users.c.email, users.c.created_at).where(users.c.id == user_id)
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        return dict(row) if row else None

    def update_user(self, user_id: int, *, name: str, email: str) -> Optional[dict]:
        stmt = (
            update(users)
            .where(users.c.id == user_id)
            .values(name=name, email=email)
            .returning(users.c.id, users.c.name, users.c.email, users.c.created_at)
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        return dict(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[dict]:
        with self.engine.begin() as conn:
            row = conn.execute(select(users).where(users.c.email == email)).mappings().first()
        return dict(row) if row else None

    def user_exists(self, user_id: int) -> bool:
        with self.engine.begin() as conn:
            row = conn.execute(select(users.c.id).where(users.c.id == user_id)).first()
        return row is not None

    # Budgets

    def list_budgets(self, owner_id: int) -> List[Budget]:
        return self.find_budgets(owner_id)

    def get_budget(self, owner_id: int, budget_id: int) -> Optional[Budget]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(budgets).where(budgets.c.id == budget_id, budgets.c.user_id == owner_id)
            ).mappings().first()
        return _row_to_budget(row) if row else None

    def create_budget(
        self,
        owner_id: int,
        *,
        name: str,
        total_amount: Decimal,
        start_date: date,
        end_date: date,
    ) -> Budget:
        stmt = (
            insert(budgets)
            .values(
                user_id=owner_id,
                name=name,
                total_amount=total_amount,
                start_date=start_date,
                end_date=end_date,
            )
            .returning(*_budget_columns())
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().one()
        return _row_to_budget(row)

    def update_budget(
        self,
        owner_id: int,
        budget_id: int,
        *,
        name: str,
        total_amount: Decimal,
        start_date: date,
        end_date: date,
    ) -> Optional[Budget]:
        stmt = (
            update(budgets)
            .where(budgets.c.id == budget_id, budgets.c.user_id == owner_id)
            .values(
                name=name,
                total_amount=total_amount,
                start_date=start_date,
                end_date=end_date,
            )
            .returning(*_budget_columns())
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        return _row_to_budget(row) if row else None

    def delete_budget(self, owner_id: int, budget_id: int) -> bool:
        """Delete a budget and detach the transactions linked to it."""
        with self.engine.begin() as conn:
            owned = conn.execute(
                select(budgets.c.id).where(budgets.c.id == budget_id, budgets.c.user_id == owner_id)
            ).first()
            if not owned:
                return False
            for table in TRANSACTION_TABLES.values():
                conn.execute(
                    update(table)
                    .where(table.c.user_id == owner_id, table.c.budget_id == budget_id)
                    .values(budget_id=None)
                )
            conn.execute(delete(budgets).where(budgets.c.id == budget_id))
        return True

    # Expenses and incomes

    def list_transactions(self, owner_id: int, kind: str) -> List[Transaction]:
        return self.find_transactions(owner_id, kind)

    def get_transaction(self, owner_id: int, kind: str, transaction_id: int) -> Optional[Transaction]:
        normalized_kind = normalize_kind(kind)
        table = TRANSACTION_TABLES[normalized_kind]
        with self.engine.begin() as conn:
            row = conn.execute(
                select(table).where(table.c.id == transaction_id, table.c.user_id == owner_id)
            ).mappings().first()
        return _row_to_transaction(normalized_kind, row) if row else None

    def create_transaction(self, owner_id: int, kind: str, values: Mapping[str, Any]) -> Transaction:
        normalized_kind = normalize_kind(kind)
        table = TRANSACTION_TABLES[normalized_kind]
        stmt = (
            insert(table)
            .values(user_id=owner_id, **_transaction_values(normalized_kind, values))
            .returning(*_transaction_columns(table))
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().one()
        return _row_to_transaction(normalized_kind, row)

    def update_transaction(
        self,
        owner_id: int,
        kind: str,
        transaction_id: int,
        values: Mapping[str, Any],
    ) -> Optional[Transaction]:
        normalized_kind = normalize_kind(kind)
        table = TRANSACTION_TABLES[normalized_kind]
        stmt = (
            update(table)
            .where(table.c.id == transaction_id, table.c.user_id == owner_id)
            .values(**_transaction_values(normalized_kind, values))
            .returning(*_transaction_columns(table))
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        return _row_to_transaction(normalized_kind, row) if row else None

    def delete_transaction(self, owner_id: int, kind: str, transaction_id: int) -> bool:
        normalized_kind = normalize_kind(kind)
        table = TRANSACTION_TABLES[normalized_kind]
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(table).where(table.c.id == transaction_id, table.c.user_id == owner_id)
            )
            deleted = result.rowcount
        return deleted > 0


def _budget_columns() -> Iterable[Column]:
    return (
        budgets.c.id,
        budgets.c.user_id,
        budgets.c.name,
        budgets.c.total_amount,
        budgets.c.start_date,
        budgets.c.end_date,
    )


def _transaction_columns(table: Table) -> List[Column]:
    return [column for column in table.c if column.name != "created_at"]


def _transaction_values(kind: str, values: Mapping[str, Any]) -> dict[str, Any]:
    label_column = LABEL_COLUMNS[kind]
    return {
        "amount": values["amount"],
        label_column: values[label_column],
        "date": values["date"],
        "budget_id": values.get("budget_id"),
        "description": values.get("description"),
    }


def _coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _row_to_transaction(kind: str, row: Mapping[str, Any]) -> Transaction:
    return Transaction(
        id=row["id"],
        owner_id=row["user_id"],
        kind=kind,
        amount=_coerce_decimal(row["amount"]),
        date=row["date"],
        budget_id=row["budget_id"],
        category=row["category"] if kind == EXPENSE else None,
        source=row["source"] if kind == INCOME else None,
        description=row["description"],
    )


def _row_to_budget(row: Mapping[str, Any]) -> Budget:
    return Budget(
        id=row["id"],
        owner_id=row["user_id"],
        name=row["name"],
        total_amount=_coerce_decimal(row["total_amount"]),
        start_date=row["start_date"],
        end_date=row["end_date"],
    )
