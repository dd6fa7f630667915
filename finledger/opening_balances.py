from __future__ import annotations

from datetime import date
from decimal import Decimal

import structlog
from sqlalchemy import insert, select
from sqlalchemy.engine import Connection

from finledger.accounts import (
    OPENING_BALANCES_DESCRIPTION,
    OPENING_BALANCES_KEY,
    OPENING_BALANCES_NAME,
    Account,
)
from finledger.currency_conversion import (
    ZERO,
    calculate_conversion,
    quantize_amount,
    quantize_rate,
)
from finledger.db import accounts, transactions
from finledger.errors import MissingOpeningRate
from finledger.store import apply_balance_delta, get_base_currency

logger = structlog.get_logger(__name__)


def initialize_principal(conn: Connection, user_id: int) -> Account:
    """Make sure the principal's "Opening Balances" equity account exists.

    Safe to call any number of times; the (user_id, system_key) unique
    constraint keeps it to one row per principal.
    """
    row = conn.execute(
        select(accounts).where(
            accounts.c.user_id == user_id,
            accounts.c.system_key == OPENING_BALANCES_KEY,
        )
    ).mappings().first()
    if row:
        return Account.from_row(row)

    base_currency = get_base_currency(conn, user_id)
    conn.execute(
        insert(accounts).values(
            user_id=user_id,
            name=OPENING_BALANCES_NAME,
            description=OPENING_BALANCES_DESCRIPTION,
            type="equity",
            currency=base_currency,
            balance=ZERO,
            system_key=OPENING_BALANCES_KEY,
        )
    )
    logger.info("opening_balances_account_created", user_id=user_id, currency=base_currency)
    row = conn.execute(
        select(accounts).where(
            accounts.c.user_id == user_id,
            accounts.c.system_key == OPENING_BALANCES_KEY,
        )
    ).mappings().one()
    return Account.from_row(row)


def seed_opening_balance(
    conn: Connection,
    user_id: int,
    account: Account,
    opening_balance: Decimal,
    opening_balance_exchange_rate: Decimal | None = None,
    on_date: date | None = None,
) -> int | None:
    """Fund a freshly created account from the Opening Balances equity account.

    Returns the id of the seeding transaction, or None when there is nothing to seed.
    """
    amount = quantize_amount(opening_balance)
    if amount == ZERO:
        return None

    equity = initialize_principal(conn, user_id)
    is_cross_currency = equity.currency != account.currency
    if is_cross_currency and opening_balance_exchange_rate is None:
        raise MissingOpeningRate(
            f"Exchange rate required for opening balance in {account.currency} "
            f"(user base currency is {equity.currency}).",
            field="opening_balance_exchange_rate",
        )

    conversion = calculate_conversion(
        amount,
        equity.currency,
        account.currency,
        provided_currency=account.currency,
        provided_exchange_rate=(
            quantize_rate(opening_balance_exchange_rate) if is_cross_currency else None
        ),
    )

    logger.info(
        "opening_balance_seeded",
        user_id=user_id,
        account_id=account.id,
        account_kind=account.kind,
        account_currency=account.currency,
        base_currency=equity.currency,
        amount=str(amount),
        cross_currency=is_cross_currency,
        exchange_rate=str(conversion.exchange_rate) if conversion.exchange_rate is not None else None,
    )

    transaction_id = conn.execute(
        insert(transactions)
        .values(
            user_id=user_id,
            from_account_id=equity.id,
            to_account_id=account.id,
            amount=amount,
            currency=conversion.currency,
            exchange_rate=conversion.exchange_rate,
            description=f"Opening balance for {account.name}",
            date=on_date or date.today(),
        )
        .returning(transactions.c.id)
    ).scalar_one()

    apply_balance_delta(conn, equity.id, -quantize_amount(conversion.amount_to_deduct))
    apply_balance_delta(conn, account.id, quantize_amount(conversion.amount_to_increment))
    return transaction_id
