from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable

import structlog
from sqlalchemy import func, insert, literal, or_, select, update
from sqlalchemy.engine import Connection

from finledger.accounts import Account, LedgerTransaction
from finledger.currency_conversion import (
    AMOUNT_PLACES,
    MAX_AMOUNT,
    ExchangeRateTable,
    check_rate_range,
    normalize_currency,
    quantize_rate,
)
from finledger.db import ScaledDecimal, accounts, exchange_rates, transactions, users
from finledger.errors import AccountNotFound, InvalidInput, TransactionNotFound, UserNotFound

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_base_currency(conn: Connection, user_id: int) -> str:
    base_currency = conn.execute(
        select(users.c.base_currency).where(users.c.id == user_id)
    ).scalar_one_or_none()
    if base_currency is None:
        raise UserNotFound("User not found.")
    return base_currency


def validate_accounts_ownership(
    conn: Connection, user_id: int, account_ids: Iterable[int]
) -> dict[int, Account]:
    """Return the live accounts keyed by id, or fail if any is missing.

    Accounts owned by someone else are reported exactly like missing ones.
    """
    unique_ids = list(dict.fromkeys(account_ids))
    rows = conn.execute(
        select(accounts).where(
            accounts.c.id.in_(unique_ids),
            accounts.c.user_id == user_id,
            accounts.c.deleted_at.is_(None),
        )
    ).mappings().all()

    found = {row["id"]: Account.from_row(row) for row in rows}
    missing = [account_id for account_id in unique_ids if account_id not in found]
    if missing:
        logger.warning("accounts_not_found_or_unauthorized", user_id=user_id, missing_ids=missing)
        raise AccountNotFound(
            "One or more accounts not found or you don't have permission to use them."
        )
    return found


def get_account_row(conn: Connection, user_id: int, account_id: int) -> Account:
    return validate_accounts_ownership(conn, user_id, [account_id])[account_id]


def load_accounts_any_state(
    conn: Connection, user_id: int, account_ids: Iterable[int]
) -> dict[int, Account]:
    """Load accounts for historical references, soft-deleted ones included."""
    rows = conn.execute(
        select(accounts).where(accounts.c.id.in_(list(account_ids)), accounts.c.user_id == user_id)
    ).mappings().all()
    return {row["id"]: Account.from_row(row) for row in rows}


def get_transaction_row(conn: Connection, user_id: int, transaction_id: int) -> LedgerTransaction:
    row = conn.execute(
        select(transactions).where(
            transactions.c.id == transaction_id,
            transactions.c.user_id == user_id,
            transactions.c.deleted_at.is_(None),
        )
    ).mappings().first()
    if not row:
        raise TransactionNotFound("Transaction not found.")
    return LedgerTransaction.from_row(row)


def apply_balance_delta(conn: Connection, account_id: int, delta: Decimal) -> None:
    new_balance = accounts.c.balance + delta
    result = conn.execute(
        update(accounts)
        .where(
            accounts.c.id == account_id,
            new_balance.between(
                literal(-MAX_AMOUNT, ScaledDecimal(AMOUNT_PLACES)),
                literal(MAX_AMOUNT, ScaledDecimal(AMOUNT_PLACES)),
            ),
        )
        .values(balance=new_balance)
    )
    if result.rowcount != 1:
        logger.warning("balance_out_of_range", account_id=account_id, delta=str(delta))
        raise InvalidInput(
            f"Resulting balance would exceed the supported maximum of {MAX_AMOUNT}.",
            field="amount",
        )


def count_live_transactions(conn: Connection, account_id: int) -> int:
    return conn.execute(
        select(func.count(transactions.c.id)).where(
            or_(
                transactions.c.from_account_id == account_id,
                transactions.c.to_account_id == account_id,
            ),
            transactions.c.deleted_at.is_(None),
        )
    ).scalar_one()


def load_rate_table(conn: Connection, user_id: int) -> ExchangeRateTable:
    rows = conn.execute(
        select(exchange_rates.c.from_currency, exchange_rates.c.to_currency, exchange_rates.c.rate).where(
            exchange_rates.c.user_id == user_id,
            exchange_rates.c.deleted_at.is_(None),
        )
    ).all()
    return ExchangeRateTable.from_rows((row[0], row[1], row[2]) for row in rows)


def find_default_rate(
    conn: Connection, user_id: int, from_currency: str, to_currency: str
) -> Decimal | None:
    rate = load_rate_table(conn, user_id).find_rate(from_currency, to_currency)
    return quantize_rate(rate) if rate is not None else None


def set_exchange_rate(
    conn: Connection, user_id: int, from_currency: str, to_currency: str, rate: Decimal
) -> dict:
    from_currency = normalize_currency(from_currency)
    to_currency = normalize_currency(to_currency)
    if from_currency == to_currency:
        raise InvalidInput("from_currency and to_currency must be different.", field="to_currency")
    if rate <= 0:
        raise InvalidInput("Exchange rate must be positive.", field="rate")
    rate = quantize_rate(check_rate_range(rate, field="rate"))

    existing_id = conn.execute(
        select(exchange_rates.c.id).where(
            exchange_rates.c.user_id == user_id,
            exchange_rates.c.from_currency == from_currency,
            exchange_rates.c.to_currency == to_currency,
        )
    ).scalar_one_or_none()
    if existing_id is None:
        conn.execute(
            insert(exchange_rates).values(
                user_id=user_id,
                from_currency=from_currency,
                to_currency=to_currency,
                rate=rate,
            )
        )
    else:
        conn.execute(
            update(exchange_rates)
            .where(exchange_rates.c.id == existing_id)
            .values(rate=rate, deleted_at=None, updated_at=utcnow())
        )
    logger.info(
        "exchange_rate_set",
        user_id=user_id,
        from_currency=from_currency,
        to_currency=to_currency,
        rate=str(rate),
        is_new=existing_id is None,
    )
    return conn.execute(
        select(exchange_rates).where(
            exchange_rates.c.user_id == user_id,
            exchange_rates.c.from_currency == from_currency,
            exchange_rates.c.to_currency == to_currency,
        )
    ).mappings().one()


def list_exchange_rates(
    conn: Connection,
    user_id: int,
    from_currency: str | None = None,
    to_currency: str | None = None,
) -> list[dict]:
    stmt = select(exchange_rates).where(
        exchange_rates.c.user_id == user_id,
        exchange_rates.c.deleted_at.is_(None),
    )
    if from_currency:
        stmt = stmt.where(exchange_rates.c.from_currency == normalize_currency(from_currency))
    if to_currency:
        stmt = stmt.where(exchange_rates.c.to_currency == normalize_currency(to_currency))
    stmt = stmt.order_by(exchange_rates.c.from_currency.asc(), exchange_rates.c.to_currency.asc())
    return list(conn.execute(stmt).mappings().all())
