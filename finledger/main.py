import os
from datetime import date, datetime
from datetime import date as date_type
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from finledger import account_service, budget_service, store, transaction_service
from finledger.account_service import NewAccount
from finledger.accounts import Account, AccountKind
from finledger.budget_service import BudgetRecord, NewBudget
from finledger.currency_conversion import normalize_currency
from finledger.db import make_engine, metadata, users
from finledger.errors import InvalidInput, LedgerError
from finledger.log import configure_logging
from finledger.opening_balances import initialize_principal
from finledger.transaction_service import NewTransaction, TransactionView

configure_logging(os.getenv("LOG_LEVEL", "INFO"))

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./finledger.db")
engine = make_engine(database_url)


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "EGP")
    try:
        return normalize_currency(raw)
    except InvalidInput:
        return "EGP"


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


class UserPayload(BaseModel):
    email: str
    base_currency: str | None = None


class UserResponse(BaseModel):
    id: int
    email: str
    base_currency: str
    created_at: datetime | None = None


class AccountPayload(BaseModel):
    name: str
    kind: str
    currency: str
    description: str | None = None
    target: Decimal | None = None
    due_date: date | None = None
    opening_balance: Decimal | None = None
    opening_balance_exchange_rate: Decimal | None = None


class AccountPatchPayload(BaseModel):
    name: str | None = None
    description: str | None = None
    currency: str | None = None
    target: Decimal | None = None
    due_date: date | None = None


class AccountResponse(BaseModel):
    id: int
    kind: str
    type: str
    name: str
    description: str | None = None
    currency: str
    balance: Decimal
    target: Decimal | None = None
    due_date: date | None = None
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    from_account_id: int
    to_account_id: int
    amount: Decimal
    date: date
    description: str | None = None
    currency: str | None = None
    exchange_rate: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.currency = payload.currency.strip() if payload.currency else None
        payload.description = payload.description.strip() if payload.description else None
        if payload.amount <= 0:
            raise InvalidInput("Amount must be greater than zero.", field="amount")
        if payload.exchange_rate is not None and payload.exchange_rate <= 0:
            raise InvalidInput("Exchange rate must be positive.", field="exchange_rate")
        return payload


class TransactionPatchPayload(BaseModel):
    from_account_id: int | None = None
    to_account_id: int | None = None
    amount: Decimal | None = None
    # the field name shadows the type within the class body
    date: date_type | None = None
    description: str | None = None
    currency: str | None = None
    exchange_rate: Decimal | None = None


class TransactionResponse(BaseModel):
    id: int
    from_account_id: int
    to_account_id: int
    from_account_name: str
    to_account_name: str
    amount: Decimal
    currency: str
    exchange_rate: Decimal | None = None
    date: date
    description: str | None = None
    kind: str


class TransactionSummaryResponse(BaseModel):
    date_from: date
    date_to: date
    base_currency: str
    total_income: Decimal
    total_expenses: Decimal
    total_transfers: Decimal
    transaction_count: int
    income_count: int
    expense_count: int
    transfer_count: int
    skipped_count: int


class DashboardSummaryResponse(BaseModel):
    base_currency: str
    total_balance: Decimal
    net_worth: Decimal
    this_month_income: Decimal
    this_month_expenses: Decimal
    skipped_count: int


class BudgetPayload(BaseModel):
    name: str
    amount: Decimal
    currency: str
    start_date: date
    end_date: date
    account_ids: list[int]


class BudgetPatchPayload(BaseModel):
    name: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    account_ids: list[int] | None = None


class BudgetResponse(BaseModel):
    id: int
    name: str
    amount: Decimal
    currency: str
    start_date: date
    end_date: date
    account_ids: list[int]


class BudgetProgressResponse(BaseModel):
    budget_id: int
    budget_amount: Decimal
    budget_currency: str
    spent: Decimal
    remaining: Decimal
    percentage: Decimal
    is_over_budget: bool
    skipped_count: int


class ExchangeRatePayload(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal


class ExchangeRateResponse(BaseModel):
    id: int
    from_currency: str
    to_currency: str
    rate: Decimal
    updated_at: datetime | None = None


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def account_response(account: Account) -> AccountResponse:
    extra = {}
    if account.kind == AccountKind.GOAL:
        extra = {"target": account.target, "due_date": account.due_date}
    elif account.kind == AccountKind.LOAN:
        extra = {"due_date": account.due_date}
    return AccountResponse(
        id=account.id,
        kind=account.kind,
        type=account.type,
        name=account.name,
        description=account.description,
        currency=account.currency,
        balance=account.balance,
        created_at=account.created_at,
        **extra,
    )


def transaction_response(view: TransactionView) -> TransactionResponse:
    txn = view.transaction
    return TransactionResponse(
        id=txn.id,
        from_account_id=txn.from_account_id,
        to_account_id=txn.to_account_id,
        from_account_name=view.from_account.name,
        to_account_name=view.to_account.name,
        amount=txn.amount,
        currency=txn.currency,
        exchange_rate=txn.exchange_rate,
        date=txn.date,
        description=txn.description,
        kind=view.kind,
    )


def budget_response(record: BudgetRecord) -> BudgetResponse:
    return BudgetResponse(
        id=record.id,
        name=record.name,
        amount=record.amount,
        currency=record.currency,
        start_date=record.start_date,
        end_date=record.end_date,
        account_ids=list(record.account_ids),
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/users", response_model=UserResponse, status_code=201)
def register_user(payload: UserPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email:
        raise HTTPException(status_code=400, detail="Email required.")
    base_currency = (
        normalize_currency(payload.base_currency) if payload.base_currency else SYSTEM_DEFAULT_CURRENCY
    )

    stmt = (
        insert(users)
        .values(email=email, base_currency=base_currency)
        .returning(users.c.id, users.c.email, users.c.base_currency, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
            initialize_principal(conn, row["id"])
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    return UserResponse(
        id=row["id"],
        email=row["email"],
        base_currency=row["base_currency"],
        created_at=row["created_at"],
    )


@app.get("/users/me/settings", response_model=UserResponse)
def get_user_settings(x_user_id: str | None = Header(None, alias="x-user-id")) -> UserResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().one()
    return UserResponse(
        id=row["id"],
        email=row["email"],
        base_currency=row["base_currency"],
        created_at=row["created_at"],
    )


@app.get(
    "/accounts",
    response_model=list[AccountResponse],
    response_model_exclude_unset=True,
)
def list_accounts(
    kind: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[AccountResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        found = account_service.list_accounts(conn, user_id, kind=kind)
    return [account_response(account) for account in found]


@app.get("/accounts/{account_id}", response_model=AccountResponse, response_model_exclude_unset=True)
def get_account(account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        account = account_service.get_account(conn, user_id, account_id)
    return account_response(account)


@app.post(
    "/accounts",
    response_model=AccountResponse,
    response_model_exclude_unset=True,
    status_code=201,
)
def create_account(
    payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        account = account_service.create_account(conn, user_id, NewAccount(**payload.model_dump()))
    return account_response(account)


@app.patch("/accounts/{account_id}", response_model=AccountResponse, response_model_exclude_unset=True)
def update_account(
    account_id: int,
    payload: AccountPatchPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        account = account_service.update_account(
            conn, user_id, account_id, payload.model_dump(exclude_unset=True)
        )
    return account_response(account)


@app.delete("/accounts/{account_id}")
def delete_account(account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        account_service.delete_account(conn, user_id, account_id)
    return {"status": "deleted"}


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    date_from: date | None = None,
    date_to: date | None = None,
    account_id: int | None = None,
    kind: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        views = transaction_service.list_transactions(
            conn,
            user_id,
            date_from=date_from,
            date_to=date_to,
            account_id=account_id,
            kind=kind,
            limit=limit,
            offset=(page - 1) * limit,
        )
    return [transaction_response(view) for view in views]


@app.get("/transactions/summary", response_model=TransactionSummaryResponse)
def transactions_summary(
    date_from: date,
    date_to: date,
    account_ids: list[int] | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionSummaryResponse:
    user_id = get_user_id(x_user_id)
    if date_to < date_from:
        raise HTTPException(status_code=400, detail="date_to must be on or after date_from.")
    with engine.begin() as conn:
        base_currency, summary = budget_service.get_transactions_summary(
            conn, user_id, date_from, date_to, account_ids
        )
    return TransactionSummaryResponse(
        date_from=date_from,
        date_to=date_to,
        base_currency=base_currency,
        total_income=summary.total_income,
        total_expenses=summary.total_expenses,
        total_transfers=summary.total_transfers,
        transaction_count=summary.transaction_count,
        income_count=summary.income_count,
        expense_count=summary.expense_count,
        transfer_count=summary.transfer_count,
        skipped_count=summary.skipped_count,
    )


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        view = transaction_service.get_transaction(conn, user_id, transaction_id)
    return transaction_response(view)


@app.post("/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    payload = TransactionPayload.validate_payload(payload)
    with engine.begin() as conn:
        created = transaction_service.create_transaction(conn, user_id, NewTransaction(**payload.model_dump()))
        view = transaction_service.get_transaction(conn, user_id, created.id)
    return transaction_response(view)


@app.patch("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionPatchPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        transaction_service.update_transaction(
            conn, user_id, transaction_id, payload.model_dump(exclude_unset=True)
        )
        view = transaction_service.get_transaction(conn, user_id, transaction_id)
    return transaction_response(view)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        transaction_service.delete_transaction(conn, user_id, transaction_id)
    return {"status": "deleted"}


@app.get("/dashboard/summary", response_model=DashboardSummaryResponse)
def dashboard_summary(x_user_id: str | None = Header(None, alias="x-user-id")) -> DashboardSummaryResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        summary = budget_service.get_dashboard_summary(conn, user_id)
    return DashboardSummaryResponse(
        base_currency=summary.base_currency,
        total_balance=summary.total_balance,
        net_worth=summary.net_worth,
        this_month_income=summary.month_income,
        this_month_expenses=summary.month_expenses,
        skipped_count=summary.skipped_count,
    )


@app.get("/budgets", response_model=list[BudgetResponse])
def list_budgets(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[BudgetResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        records = budget_service.list_budgets(conn, user_id)
    return [budget_response(record) for record in records]


@app.post("/budgets", response_model=BudgetResponse, status_code=201)
def create_budget(
    payload: BudgetPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    values = payload.model_dump()
    values["account_ids"] = tuple(values["account_ids"])
    with engine.begin() as conn:
        record = budget_service.create_budget(conn, user_id, NewBudget(**values))
    return budget_response(record)


@app.get("/budgets/{budget_id}", response_model=BudgetResponse)
def get_budget(budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        record = budget_service.get_budget(conn, user_id, budget_id)
    return budget_response(record)


@app.patch("/budgets/{budget_id}", response_model=BudgetResponse)
def update_budget(
    budget_id: int,
    payload: BudgetPatchPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        record = budget_service.update_budget(conn, user_id, budget_id, payload.model_dump(exclude_unset=True))
    return budget_response(record)


@app.delete("/budgets/{budget_id}")
def delete_budget(budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        budget_service.delete_budget(conn, user_id, budget_id)
    return {"status": "deleted"}


@app.get("/budgets/{budget_id}/progress", response_model=BudgetProgressResponse)
def budget_progress(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetProgressResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        record, progress = budget_service.get_budget_progress(conn, user_id, budget_id)
    return BudgetProgressResponse(
        budget_id=record.id,
        budget_amount=record.amount,
        budget_currency=record.currency,
        spent=progress.spent,
        remaining=progress.remaining,
        percentage=progress.percentage,
        is_over_budget=progress.is_over_budget,
        skipped_count=progress.skipped_count,
    )


@app.get("/exchange-rates", response_model=list[ExchangeRateResponse])
def list_exchange_rates(
    from_currency: str | None = None,
    to_currency: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ExchangeRateResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = store.list_exchange_rates(conn, user_id, from_currency, to_currency)
    return [
        ExchangeRateResponse(
            id=row["id"],
            from_currency=row["from_currency"],
            to_currency=row["to_currency"],
            rate=row["rate"],
            updated_at=row["updated_at"],
        )
        for row in rows
    ]


@app.put("/exchange-rates", response_model=ExchangeRateResponse)
def set_exchange_rate(
    payload: ExchangeRatePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ExchangeRateResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = store.set_exchange_rate(conn, user_id, payload.from_currency, payload.to_currency, payload.rate)
    return ExchangeRateResponse(
        id=row["id"],
        from_currency=row["from_currency"],
        to_currency=row["to_currency"],
        rate=row["rate"],
        updated_at=row["updated_at"],
    )
