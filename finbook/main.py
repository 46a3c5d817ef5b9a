from contextlib import asynccontextmanager

import bcrypt
import structlog
from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from finbook.config import Settings
from finbook.errors import (
    DivisionByZeroError,
    InvalidPeriodError,
    ReportError,
    StoreUnavailableError,
)
from finbook.logging_config import configure_logging
from finbook.reports import ReportAssembler
from finbook.schemas import (
    AnnualOverview,
    BudgetComparisonReport,
    BudgetPayload,
    BudgetResponse,
    CategoryExpense,
    CredentialsPayload,
    ExpensePayload,
    ExpenseResponse,
    IncomePayload,
    IncomeResponse,
    MonthlyReport,
    ProfilePayload,
    SignupPayload,
    UserResponse,
)
from finbook.store import EXPENSE, INCOME, SqlTransactionStore

logger = structlog.get_logger(__name__)

REPORT_ERROR_STATUS = {
    InvalidPeriodError: 400,
    DivisionByZeroError: 422,
    StoreUnavailableError: 503,
}

router = APIRouter()


def create_app(
    settings: Settings | None = None,
    store: SqlTransactionStore | None = None,
) -> FastAPI:
    """ASGI factory: ``uvicorn finbook.main:create_app --factory``.

    The store is opened and the report assembler built on every startup, and
    both are released on shutdown, so the same app can be started again.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)
    if store is None:
        store = SqlTransactionStore(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.initialize()
        app.state.assembler = ReportAssembler(
            store,
            timeout=settings.store_timeout_seconds,
            zero_budget_policy=settings.zero_budget_policy,
        )
        logger.info("store.initialized", database_url=store.engine.url.render_as_string())
        try:
            yield
        finally:
            app.state.assembler.close()
            store.close()
            logger.info("store.closed")

    app = FastAPI(lifespan=lifespan)
    app.state.store = store
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ReportError, report_error_handler)
    app.add_exception_handler(SQLAlchemyError, store_error_handler)
    app.include_router(router)
    return app


async def report_error_handler(request: Request, exc: ReportError) -> JSONResponse:
    status_code = 500
    for error_type, code in REPORT_ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("store.failed", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": "Store unavailable."})


def get_store(request: Request) -> SqlTransactionStore:
    return request.app.state.store


def get_assembler(request: Request) -> ReportAssembler:
    return request.app.state.assembler


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(store: SqlTransactionStore, x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    if not store.user_exists(user_id):
        raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def ensure_budget_owned(store: SqlTransactionStore, user_id: int, budget_id: int | None) -> None:
    if budget_id is None:
        return
    if store.get_budget(user_id, budget_id) is None:
        raise HTTPException(status_code=404, detail="Budget not found.")


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.post("/auth/signup", response_model=UserResponse, status_code=201)
def signup(payload: SignupPayload, request: Request) -> UserResponse:
    store = get_store(request)
    try:
        payload = SignupPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    hashed_password = hash_password(payload.password)

    try:
        row = store.create_user(payload.name, payload.email, hashed_password)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("user.created", user_id=row["id"])
    return UserResponse(id=row["id"], name=row["name"], email=row["email"], created_at=row["created_at"])


@router.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload, request: Request) -> UserResponse:
    try:
        payload = CredentialsPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    row = get_store(request).get_user_by_email(payload.email)

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], name=row["name"], email=row["email"], created_at=row["created_at"])


@router.get("/auth/profile", response_model=UserResponse)
def get_profile(
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserResponse:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    row = store.get_user(user_id)
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return UserResponse(id=row["id"], name=row["name"], email=row["email"], created_at=row["created_at"])


@router.put("/auth/profile", response_model=UserResponse)
def update_profile(
    payload: ProfilePayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserResponse:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    try:
        payload = ProfilePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        row = store.update_user(user_id, name=payload.name, email=payload.email)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return UserResponse(id=row["id"], name=row["name"], email=row["email"], created_at=row["created_at"])


@router.get("/budgets", response_model=list[BudgetResponse])
def list_budgets(
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BudgetResponse]:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    return [BudgetResponse.from_budget(budget) for budget in store.list_budgets(user_id)]


@router.get("/budgets/{budget_id}", response_model=BudgetResponse)
def get_budget(
    budget_id: int,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    budget = store.get_budget(user_id, budget_id)
    if budget is None:
        raise HTTPException(status_code=404, detail="Budget not found.")
    return BudgetResponse.from_budget(budget)


@router.post("/budgets", response_model=BudgetResponse, status_code=201)
def create_budget(
    payload: BudgetPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    try:
        payload = BudgetPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    budget = store.create_budget(
        user_id,
        name=payload.name,
        total_amount=payload.total_amount,
        start_date=payload.start_date,
        end_date=payload.end_date,
    )
    return BudgetResponse.from_budget(budget)


@router.put("/budgets/{budget_id}", response_model=BudgetResponse)
def update_budget(
    budget_id: int,
    payload: BudgetPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    try:
        payload = BudgetPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    budget = store.update_budget(
        user_id,
        budget_id,
        name=payload.name,
        total_amount=payload.total_amount,
        start_date=payload.start_date,
        end_date=payload.end_date,
    )
    if budget is None:
        raise HTTPException(status_code=404, detail="Budget not found.")
    return BudgetResponse.from_budget(budget)


@router.delete("/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> None:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    if not store.delete_budget(user_id, budget_id):
        raise HTTPException(status_code=404, detail="Budget not found.")


@router.get("/expenses", response_model=list[ExpenseResponse])
def list_expenses(
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ExpenseResponse]:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    return [ExpenseResponse.from_transaction(txn) for txn in store.list_transactions(user_id, EXPENSE)]


@router.get("/expenses/{expense_id}", response_model=ExpenseResponse)
def get_expense(
    expense_id: int,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExpenseResponse:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    txn = store.get_transaction(user_id, EXPENSE, expense_id)
    if txn is None:
        raise HTTPException(status_code=404, detail="Expense not found.")
    return ExpenseResponse.from_transaction(txn)


@router.post("/expenses", response_model=ExpenseResponse, status_code=201)
def create_expense(
    payload: ExpensePayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExpenseResponse:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    try:
        payload = ExpensePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    ensure_budget_owned(store, user_id, payload.budget_id)

    txn = store.create_transaction(user_id, EXPENSE, payload.model_dump())
    return ExpenseResponse.from_transaction(txn)


@router.put("/expenses/{expense_id}", response_model=ExpenseResponse)
def update_expense(
    expense_id: int,
    payload: ExpensePayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExpenseResponse:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    try:
        payload = ExpensePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    ensure_budget_owned(store, user_id, payload.budget_id)

    txn = store.update_transaction(user_id, EXPENSE, expense_id, payload.model_dump())
    if txn is None:
        raise HTTPException(status_code=404, detail="Expense not found.")
    return ExpenseResponse.from_transaction(txn)


@router.delete("/expenses/{expense_id}", status_code=204)
def delete_expense(
    expense_id: int,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> None:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    if not store.delete_transaction(user_id, EXPENSE, expense_id):
        raise HTTPException(status_code=404, detail="Expense not found.")


@router.get("/incomes", response_model=list[IncomeResponse])
def list_incomes(
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[IncomeResponse]:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    return [IncomeResponse.from_transaction(txn) for txn in store.list_transactions(user_id, INCOME)]


@router.get("/incomes/{income_id}", response_model=IncomeResponse)
def get_income(
    income_id: int,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> IncomeResponse:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    txn = store.get_transaction(user_id, INCOME, income_id)
    if txn is None:
        raise HTTPException(status_code=404, detail="Income not found.")
    return IncomeResponse.from_transaction(txn)


@router.post("/incomes", response_model=IncomeResponse, status_code=201)
def create_income(
    payload: IncomePayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> IncomeResponse:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    try:
        payload = IncomePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    ensure_budget_owned(store, user_id, payload.budget_id)

    txn = store.create_transaction(user_id, INCOME, payload.model_dump())
    return IncomeResponse.from_transaction(txn)


@router.put("/incomes/{income_id}", response_model=IncomeResponse)
def update_income(
    income_id: int,
    payload: IncomePayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> IncomeResponse:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    try:
        payload = IncomePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    ensure_budget_owned(store, user_id, payload.budget_id)

    txn = store.update_transaction(user_id, INCOME, income_id, payload.model_dump())
    if txn is None:
        raise HTTPException(status_code=404, detail="Income not found.")
    return IncomeResponse.from_transaction(txn)


@router.delete("/incomes/{income_id}", status_code=204)
def delete_income(
    income_id: int,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> None:
    store = get_store(request)
    user_id = get_user_id(store, x_user_id)
    if not store.delete_transaction(user_id, INCOME, income_id):
        raise HTTPException(status_code=404, detail="Income not found.")


@router.get("/reports/monthly", response_model=MonthlyReport)
def monthly_report(
    request: Request,
    month: int = Query(...),
    year: int = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MonthlyReport:
    user_id = get_user_id(get_store(request), x_user_id)
    return get_assembler(request).monthly_report(user_id, month, year)


@router.get("/reports/category-expenses", response_model=list[CategoryExpense])
def category_expense_report(
    request: Request,
    year: int = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryExpense]:
    user_id = get_user_id(get_store(request), x_user_id)
    return get_assembler(request).category_expense_report(user_id, year)


@router.get("/reports/annual-overview", response_model=AnnualOverview)
def annual_overview(
    request: Request,
    year: int = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AnnualOverview:
    user_id = get_user_id(get_store(request), x_user_id)
    return get_assembler(request).annual_overview(user_id, year)


@router.get("/reports/budget-comparison", response_model=BudgetComparisonReport)
def budget_comparison_report(
    request: Request,
    year: int = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetComparisonReport:
    user_id = get_user_id(get_store(request), x_user_id)
    return get_assembler(request).budget_comparison_report(user_id, year)
