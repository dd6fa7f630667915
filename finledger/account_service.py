from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection

from finledger.accounts import (
    Account,
    AccountKind,
    kind_account_type,
    validate_kind_fields,
)
from finledger.currency_conversion import (
    ZERO,
    check_amount_range,
    check_rate_range,
    normalize_currency,
    quantize_amount,
)
from finledger.db import accounts
from finledger.errors import InvalidInput, ReferentialConflict
from finledger.opening_balances import seed_opening_balance
from finledger.store import count_live_transactions, get_account_row, utcnow

logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = ("name", "description", "currency", "target", "due_date")


@dataclass(frozen=True)
class NewAccount:
    name: str
    kind: str
    currency: str
    description: Optional[str] = None
    target: Optional[Decimal] = None
    due_date: Optional[date] = None
    opening_balance: Optional[Decimal] = None
    opening_balance_exchange_rate: Optional[Decimal] = None


def create_account(conn: Connection, user_id: int, payload: NewAccount) -> Account:
    kind = AccountKind.validate(payload.kind)
    if kind == AccountKind.EQUITY:
        raise InvalidInput("Equity accounts are managed by the ledger.", field="kind")
    name = payload.name.strip()
    if not name:
        raise InvalidInput("Account name required.", field="name")
    currency = normalize_currency(payload.currency)
    validate_kind_fields(kind, payload.target, payload.due_date)

    opening_balance = payload.opening_balance or ZERO
    if opening_balance < ZERO:
        raise InvalidInput("Opening balance cannot be negative.", field="opening_balance")
    if payload.opening_balance_exchange_rate is not None and payload.opening_balance_exchange_rate <= ZERO:
        raise InvalidInput(
            "Opening balance exchange rate must be positive.",
            field="opening_balance_exchange_rate",
        )
    check_amount_range(opening_balance, field="opening_balance")
    if payload.opening_balance_exchange_rate is not None:
        check_rate_range(payload.opening_balance_exchange_rate, field="opening_balance_exchange_rate")
    if payload.target is not None:
        check_amount_range(payload.target, field="target")

    row = conn.execute(
        insert(accounts)
        .values(
            user_id=user_id,
            name=name,
            description=payload.description.strip() if payload.description else None,
            type=kind_account_type(kind),
            currency=currency,
            balance=ZERO,
            target=quantize_amount(payload.target) if payload.target is not None else None,
            due_date=payload.due_date,
        )
        .returning(*accounts.c)
    ).mappings().one()
    account = Account.from_row(row)

    if opening_balance != ZERO:
        seed_opening_balance(
            conn,
            user_id,
            account,
            opening_balance,
            payload.opening_balance_exchange_rate,
        )
        account = get_account_row(conn, user_id, account.id)

    logger.info("account_created", user_id=user_id, account_id=account.id, kind=kind, currency=currency)
    return account


def get_account(conn: Connection, user_id: int, account_id: int) -> Account:
    return get_account_row(conn, user_id, account_id)


def list_accounts(conn: Connection, user_id: int, kind: str | None = None) -> list[Account]:
    rows = conn.execute(
        select(accounts)
        .where(accounts.c.user_id == user_id, accounts.c.deleted_at.is_(None))
        .order_by(accounts.c.created_at.desc(), accounts.c.id.desc())
    ).mappings().all()
    result = [Account.from_row(row) for row in rows]
    if kind:
        wanted = AccountKind.validate(kind)
        result = [account for account in result if account.kind == wanted]
    return result


def update_account(conn: Connection, user_id: int, account_id: int, patch: dict) -> Account:
    """Apply a whitelisted patch; balance and type are never writable here."""
    account = get_account_row(conn, user_id, account_id)
    if account.system_key:
        raise InvalidInput("System accounts cannot be modified.")

    unknown = sorted(set(patch) - set(UPDATABLE_FIELDS))
    if unknown:
        raise InvalidInput(f"Fields not updatable: {', '.join(unknown)}.", field=unknown[0])

    values = {}
    if "name" in patch:
        name = (patch["name"] or "").strip()
        if not name:
            raise InvalidInput("Account name required.", field="name")
        values["name"] = name
    if "description" in patch:
        values["description"] = patch["description"].strip() if patch["description"] else None
    if "currency" in patch and patch["currency"] is not None:
        currency = normalize_currency(patch["currency"])
        if currency != account.currency:
            live = count_live_transactions(conn, account_id)
            if live:
                raise ReferentialConflict(
                    f"Cannot change currency of an account with {live} active transaction"
                    f"{'' if live == 1 else 's'}.",
                    count=live,
                )
            values["currency"] = currency

    target = patch["target"] if "target" in patch else account.target
    due_date = patch["due_date"] if "due_date" in patch else account.due_date
    if "target" in patch or "due_date" in patch:
        validate_kind_fields(account.kind, target, due_date)
        values["target"] = (
            quantize_amount(check_amount_range(target, field="target")) if target is not None else None
        )
        values["due_date"] = due_date

    if values:
        values["updated_at"] = utcnow()
        conn.execute(update(accounts).where(accounts.c.id == account_id).values(**values))
    return get_account_row(conn, user_id, account_id)


def delete_account(conn: Connection, user_id: int, account_id: int) -> None:
    account = get_account_row(conn, user_id, account_id)
    if account.system_key:
        raise InvalidInput("System accounts cannot be deleted.")

    live = count_live_transactions(conn, account_id)
    if live:
        raise ReferentialConflict(
            f"Cannot delete account with {live} active transaction{'' if live == 1 else 's'}. "
            "Please delete transactions first or keep account for history.",
            count=live,
        )
    conn.execute(
        update(accounts).where(accounts.c.id == account_id).values(deleted_at=utcnow())
    )
    logger.info("account_deleted", user_id=user_id, account_id=account_id)
