from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

import structlog
from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection

from finledger.accounts import Account, classify_transaction
from finledger.budget_engine import (
    AccountBalance,
    Budget,
    BudgetProgress,
    BudgetTransaction,
    SummaryRow,
    TransactionSummary,
    evaluate_budget_progress,
    summarize_net_worth,
    summarize_transactions,
)
from finledger.currency_conversion import ZERO, check_amount_range, normalize_currency, quantize_amount
from finledger.db import accounts, budget_accounts, budgets, transactions
from finledger.errors import BudgetNotFound, InvalidInput
from finledger.store import (
    get_base_currency,
    load_accounts_any_state,
    load_rate_table,
    utcnow,
    validate_accounts_ownership,
)

logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = ("name", "amount", "currency", "start_date", "end_date", "account_ids")


@dataclass(frozen=True)
class BudgetRecord:
    id: int
    user_id: int
    name: str
    amount: Decimal
    currency: str
    start_date: date
    end_date: date
    account_ids: tuple[int, ...]


@dataclass(frozen=True)
class NewBudget:
    name: str
    amount: Decimal
    currency: str
    start_date: date
    end_date: date
    account_ids: tuple[int, ...]


@dataclass(frozen=True)
class DashboardSummary:
    base_currency: str
    total_balance: Decimal
    net_worth: Decimal
    month_income: Decimal
    month_expenses: Decimal
    skipped_count: int = 0


def create_budget(conn: Connection, user_id: int, payload: NewBudget) -> BudgetRecord:
    name = _validate_name(payload.name)
    amount = _validate_amount(payload.amount)
    currency = normalize_currency(payload.currency)
    _validate_period(payload.start_date, payload.end_date)
    account_ids = _validate_expense_accounts(conn, user_id, payload.account_ids)

    budget_id = conn.execute(
        insert(budgets)
        .values(
            user_id=user_id,
            name=name,
            amount=amount,
            currency=currency,
            start_date=payload.start_date,
            end_date=payload.end_date,
        )
        .returning(budgets.c.id)
    ).scalar_one()
    _replace_links(conn, budget_id, account_ids)
    logger.info("budget_created", user_id=user_id, budget_id=budget_id, currency=currency)
    return get_budget(conn, user_id, budget_id)


def get_budget(conn: Connection, user_id: int, budget_id: int) -> BudgetRecord:
    row = conn.execute(
        select(budgets).where(
            budgets.c.id == budget_id,
            budgets.c.user_id == user_id,
            budgets.c.deleted_at.is_(None),
        )
    ).mappings().first()
    if not row:
        raise BudgetNotFound("Budget not found.")
    linked = conn.execute(
        select(budget_accounts.c.account_id)
        .where(budget_accounts.c.budget_id == budget_id)
        .order_by(budget_accounts.c.account_id.asc())
    ).scalars().all()
    return BudgetRecord(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        amount=row["amount"],
        currency=row["currency"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        account_ids=tuple(linked),
    )


def list_budgets(conn: Connection, user_id: int) -> list[BudgetRecord]:
    budget_ids = conn.execute(
        select(budgets.c.id)
        .where(budgets.c.user_id == user_id, budgets.c.deleted_at.is_(None))
        .order_by(budgets.c.start_date.desc(), budgets.c.id.desc())
    ).scalars().all()
    return [get_budget(conn, user_id, budget_id) for budget_id in budget_ids]


def update_budget(conn: Connection, user_id: int, budget_id: int, patch: dict) -> BudgetRecord:
    unknown = sorted(set(patch) - set(UPDATABLE_FIELDS))
    if unknown:
        raise InvalidInput(f"Fields not updatable: {', '.join(unknown)}.", field=unknown[0])

    existing = get_budget(conn, user_id, budget_id)
    values = {}
    if patch.get("name") is not None:
        values["name"] = _validate_name(patch["name"])
    if patch.get("amount") is not None:
        values["amount"] = _validate_amount(patch["amount"])
    if patch.get("currency") is not None:
        values["currency"] = normalize_currency(patch["currency"])
    start_date = patch.get("start_date") or existing.start_date
    end_date = patch.get("end_date") or existing.end_date
    _validate_period(start_date, end_date)
    values["start_date"] = start_date
    values["end_date"] = end_date

    if patch.get("account_ids") is not None:
        account_ids = _validate_expense_accounts(conn, user_id, patch["account_ids"])
        _replace_links(conn, budget_id, account_ids)

    conn.execute(update(budgets).where(budgets.c.id == budget_id).values(**values))
    return get_budget(conn, user_id, budget_id)


def delete_budget(conn: Connection, user_id: int, budget_id: int) -> None:
    get_budget(conn, user_id, budget_id)
    conn.execute(update(budgets).where(budgets.c.id == budget_id).values(deleted_at=utcnow()))
    logger.info("budget_deleted", user_id=user_id, budget_id=budget_id)


def get_budget_progress(conn: Connection, user_id: int, budget_id: int) -> tuple[BudgetRecord, BudgetProgress]:
    record = get_budget(conn, user_id, budget_id)
    budget = Budget(
        amount=record.amount,
        currency=record.currency,
        start_date=record.start_date,
        end_date=record.end_date,
    )
    if not record.account_ids:
        return record, evaluate_budget_progress([], budget, load_rate_table(conn, user_id))

    rows = conn.execute(
        select(
            transactions.c.id,
            transactions.c.amount,
            transactions.c.currency,
            transactions.c.exchange_rate,
            transactions.c.date,
            accounts.c.currency.label("to_account_currency"),
        )
        .select_from(transactions.join(accounts, transactions.c.to_account_id == accounts.c.id))
        .where(
            transactions.c.user_id == user_id,
            transactions.c.to_account_id.in_(record.account_ids),
            transactions.c.deleted_at.is_(None),
            transactions.c.date >= record.start_date,
            transactions.c.date <= record.end_date,
        )
    ).mappings().all()

    progress = evaluate_budget_progress(
        (
            BudgetTransaction(
                id=row["id"],
                amount=row["amount"],
                currency=row["currency"],
                exchange_rate=row["exchange_rate"],
                to_account_currency=row["to_account_currency"],
                date=row["date"],
            )
            for row in rows
        ),
        budget,
        load_rate_table(conn, user_id),
    )
    return record, progress


def get_transactions_summary(
    conn: Connection,
    user_id: int,
    date_from: date,
    date_to: date,
    account_ids: Optional[Iterable[int]] = None,
) -> tuple[str, TransactionSummary]:
    """Income, expense and transfer totals for a period in the principal's base currency."""
    base_currency = get_base_currency(conn, user_id)
    stmt = select(transactions).where(
        transactions.c.user_id == user_id,
        transactions.c.deleted_at.is_(None),
        transactions.c.date >= date_from,
        transactions.c.date <= date_to,
    )
    wanted = set(account_ids or [])
    rows = conn.execute(stmt).mappings().all()
    if wanted:
        rows = [row for row in rows if row["from_account_id"] in wanted or row["to_account_id"] in wanted]

    referenced = {row["from_account_id"] for row in rows} | {row["to_account_id"] for row in rows}
    found: dict[int, Account] = load_accounts_any_state(conn, user_id, referenced) if referenced else {}
    summary_rows = [
        SummaryRow(
            id=row["id"],
            amount=row["amount"],
            currency=row["currency"],
            kind=classify_transaction(
                found[row["from_account_id"]].type, found[row["to_account_id"]].type
            ),
        )
        for row in rows
        if found[row["from_account_id"]].deleted_at is None
        and found[row["to_account_id"]].deleted_at is None
    ]
    return base_currency, summarize_transactions(summary_rows, base_currency, load_rate_table(conn, user_id))


def get_dashboard_summary(
    conn: Connection, user_id: int, today: Optional[date] = None
) -> DashboardSummary:
    """Balances and net worth now, plus income and expenses for the current month."""
    today = today or date.today()
    base_currency = get_base_currency(conn, user_id)
    rows = conn.execute(
        select(accounts.c.id, accounts.c.type, accounts.c.balance, accounts.c.currency).where(
            accounts.c.user_id == user_id,
            accounts.c.deleted_at.is_(None),
        )
    ).mappings().all()
    net_worth = summarize_net_worth(
        (
            AccountBalance(
                id=row["id"],
                balance=row["balance"],
                currency=row["currency"],
                type=row["type"],
            )
            for row in rows
        ),
        base_currency,
        load_rate_table(conn, user_id),
    )

    month_start = today.replace(day=1)
    month_end = today.replace(day=monthrange(today.year, today.month)[1])
    _, month = get_transactions_summary(conn, user_id, month_start, month_end)
    return DashboardSummary(
        base_currency=base_currency,
        total_balance=net_worth.total_balance,
        net_worth=net_worth.net_worth,
        month_income=month.total_income,
        month_expenses=month.total_expenses,
        skipped_count=net_worth.skipped_count + month.skipped_count,
    )


def _replace_links(conn: Connection, budget_id: int, account_ids: list[int]) -> None:
    conn.execute(delete(budget_accounts).where(budget_accounts.c.budget_id == budget_id))
    conn.execute(
        insert(budget_accounts),
        [{"budget_id": budget_id, "account_id": account_id} for account_id in account_ids],
    )


def _validate_expense_accounts(conn: Connection, user_id: int, account_ids: Iterable[int]) -> list[int]:
    unique_ids = list(dict.fromkeys(account_ids))
    if not unique_ids:
        raise InvalidInput("At least one expense account is required.", field="account_ids")
    found = validate_accounts_ownership(conn, user_id, unique_ids)
    not_expense = [account_id for account_id, account in found.items() if account.type != "expense"]
    if not_expense:
        raise InvalidInput("Budgets can only track expense accounts.", field="account_ids")
    return unique_ids


def _validate_name(value: str) -> str:
    name = value.strip()
    if not name or len(name) > 100:
        raise InvalidInput("Budget name must be 1-100 characters.", field="name")
    return name


def _validate_amount(value: Decimal) -> Decimal:
    if value <= ZERO:
        raise InvalidInput("Budget amount must be greater than zero.", field="amount")
    return quantize_amount(check_amount_range(value))


def _validate_period(start_date: date, end_date: date) -> None:
    if end_date < start_date:
        raise InvalidInput("End date must not be before start date.", field="end_date")
