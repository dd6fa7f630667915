from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import and_, insert, not_, or_, select, update
from sqlalchemy.engine import Connection

from finledger.accounts import (
    CLASSIFIED_PAIRS,
    TRANSACTION_KINDS,
    Account,
    LedgerTransaction,
    classify_transaction,
)
from finledger.currency_conversion import (
    ZERO,
    ConversionResult,
    ReversalResult,
    calculate_conversion,
    check_amount_range,
    check_rate_range,
    coerce_decimal,
    normalize_currency,
    quantize_amount,
    quantize_rate,
    reverse_conversion,
)
from finledger.db import accounts, transactions
from finledger.errors import (
    CurrencyMismatch,
    InvalidInput,
    NoExchangeRateAvailable,
    SameAccount,
)
from finledger.store import (
    apply_balance_delta,
    find_default_rate,
    get_transaction_row,
    load_accounts_any_state,
    utcnow,
    validate_accounts_ownership,
)

logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = (
    "from_account_id",
    "to_account_id",
    "amount",
    "currency",
    "exchange_rate",
    "date",
    "description",
)


@dataclass(frozen=True)
class NewTransaction:
    from_account_id: int
    to_account_id: int
    amount: Decimal
    date: date
    description: Optional[str] = None
    currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None


@dataclass(frozen=True)
class TransactionView:
    transaction: LedgerTransaction
    kind: str
    from_account: Account
    to_account: Account


def create_transaction(conn: Connection, user_id: int, payload: NewTransaction) -> LedgerTransaction:
    amount = _validate_amount(payload.amount)
    if payload.from_account_id == payload.to_account_id:
        raise SameAccount("From and to accounts must be different.", field="to_account_id")

    found = validate_accounts_ownership(conn, user_id, [payload.from_account_id, payload.to_account_id])
    from_account = found[payload.from_account_id]
    to_account = found[payload.to_account_id]

    conversion = _resolve_conversion(
        conn,
        user_id,
        amount,
        from_account,
        to_account,
        provided_currency=payload.currency,
        provided_rate=payload.exchange_rate,
    )

    transaction_id = conn.execute(
        insert(transactions)
        .values(
            user_id=user_id,
            from_account_id=from_account.id,
            to_account_id=to_account.id,
            amount=amount,
            currency=conversion.currency,
            exchange_rate=conversion.exchange_rate,
            description=payload.description.strip() if payload.description else None,
            date=payload.date,
        )
        .returning(transactions.c.id)
    ).scalar_one()
    _apply_conversion(conn, from_account.id, to_account.id, conversion)

    logger.info(
        "transaction_created",
        user_id=user_id,
        transaction_id=transaction_id,
        from_account_id=from_account.id,
        to_account_id=to_account.id,
        amount=str(amount),
        currency=conversion.currency,
        exchange_rate=str(conversion.exchange_rate) if conversion.exchange_rate is not None else None,
    )
    return get_transaction_row(conn, user_id, transaction_id)


def update_transaction(
    conn: Connection, user_id: int, transaction_id: int, patch: dict
) -> LedgerTransaction:
    """Replace a transaction's effect: reverse the stored one, apply the merged one.

    Everything is computed before the first balance moves, so a rejected patch
    leaves the ledger untouched.
    """
    unknown = sorted(set(patch) - set(UPDATABLE_FIELDS))
    if unknown:
        raise InvalidInput(f"Fields not updatable: {', '.join(unknown)}.", field=unknown[0])

    existing = get_transaction_row(conn, user_id, transaction_id)
    old_accounts = load_accounts_any_state(
        conn, user_id, [existing.from_account_id, existing.to_account_id]
    )
    old_from = old_accounts[existing.from_account_id]
    old_to = old_accounts[existing.to_account_id]
    reversal = reverse_conversion(
        existing.amount,
        existing.currency,
        old_from.currency,
        old_to.currency,
        existing.exchange_rate,
    )

    from_account_id = _patched(patch, "from_account_id", existing.from_account_id)
    to_account_id = _patched(patch, "to_account_id", existing.to_account_id)
    amount = _validate_amount(_patched(patch, "amount", existing.amount))
    if from_account_id == to_account_id:
        raise SameAccount("From and to accounts must be different.", field="to_account_id")

    found = validate_accounts_ownership(conn, user_id, [from_account_id, to_account_id])
    new_from = found[from_account_id]
    new_to = found[to_account_id]

    provided_currency = patch.get("currency")
    if provided_currency is None and existing.currency in (new_from.currency, new_to.currency):
        if new_from.currency != new_to.currency:
            provided_currency = existing.currency

    provided_rate = patch.get("exchange_rate")
    same_pair = (new_from.currency, new_to.currency) == (old_from.currency, old_to.currency)
    if provided_rate is None and same_pair:
        provided_rate = existing.exchange_rate

    conversion = _resolve_conversion(
        conn,
        user_id,
        amount,
        new_from,
        new_to,
        provided_currency=provided_currency,
        provided_rate=provided_rate,
    )

    _apply_reversal(conn, old_from.id, old_to.id, reversal)
    _apply_conversion(conn, new_from.id, new_to.id, conversion)

    description = patch["description"] if "description" in patch else existing.description
    conn.execute(
        update(transactions)
        .where(transactions.c.id == transaction_id)
        .values(
            from_account_id=new_from.id,
            to_account_id=new_to.id,
            amount=amount,
            currency=conversion.currency,
            exchange_rate=conversion.exchange_rate,
            date=_patched(patch, "date", existing.date),
            description=description.strip() if description else None,
            updated_at=utcnow(),
        )
    )
    logger.info(
        "transaction_updated",
        user_id=user_id,
        transaction_id=transaction_id,
        amount=str(amount),
        currency=conversion.currency,
    )
    return get_transaction_row(conn, user_id, transaction_id)


def delete_transaction(conn: Connection, user_id: int, transaction_id: int) -> None:
    existing = get_transaction_row(conn, user_id, transaction_id)
    found = load_accounts_any_state(conn, user_id, [existing.from_account_id, existing.to_account_id])
    from_account = found[existing.from_account_id]
    to_account = found[existing.to_account_id]
    reversal = reverse_conversion(
        existing.amount,
        existing.currency,
        from_account.currency,
        to_account.currency,
        existing.exchange_rate,
    )

    _apply_reversal(conn, from_account.id, to_account.id, reversal)
    conn.execute(
        update(transactions)
        .where(transactions.c.id == transaction_id)
        .values(deleted_at=utcnow())
    )
    logger.info("transaction_deleted", user_id=user_id, transaction_id=transaction_id)


def get_transaction(conn: Connection, user_id: int, transaction_id: int) -> TransactionView:
    existing = get_transaction_row(conn, user_id, transaction_id)
    return _build_views(conn, user_id, [existing])[0]


def list_transactions(
    conn: Connection,
    user_id: int,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
    account_id: int | None = None,
    kind: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[TransactionView]:
    from_account = accounts.alias("from_account")
    to_account = accounts.alias("to_account")
    stmt = (
        select(transactions)
        .select_from(
            transactions.join(from_account, transactions.c.from_account_id == from_account.c.id).join(
                to_account, transactions.c.to_account_id == to_account.c.id
            )
        )
        .where(
            transactions.c.user_id == user_id,
            transactions.c.deleted_at.is_(None),
        )
    )
    if date_from is not None:
        stmt = stmt.where(transactions.c.date >= date_from)
    if date_to is not None:
        stmt = stmt.where(transactions.c.date <= date_to)
    if account_id is not None:
        stmt = stmt.where(
            or_(
                transactions.c.from_account_id == account_id,
                transactions.c.to_account_id == account_id,
            )
        )
    if kind:
        stmt = stmt.where(_kind_clause(kind, from_account.c.type, to_account.c.type))
    stmt = (
        stmt.order_by(transactions.c.date.desc(), transactions.c.id.desc())
        .limit(limit)
        .offset(offset)
    )
    rows = conn.execute(stmt).mappings().all()
    return _build_views(conn, user_id, [LedgerTransaction.from_row(row) for row in rows])


def _kind_clause(kind: str, from_type, to_type):
    """SQL form of classify_transaction for filtering by kind."""
    kind = kind.strip().lower()
    if kind not in TRANSACTION_KINDS:
        raise InvalidInput(f"Unknown transaction kind: {kind!r}.", field="kind")
    matches = {
        name: and_(from_type == pair[0], to_type == pair[1])
        for name, pair in CLASSIFIED_PAIRS.items()
    }
    if kind in matches:
        return matches[kind]
    return not_(or_(*matches.values()))


def _build_views(
    conn: Connection, user_id: int, items: list[LedgerTransaction]
) -> list[TransactionView]:
    account_ids = {item.from_account_id for item in items} | {item.to_account_id for item in items}
    found = load_accounts_any_state(conn, user_id, account_ids) if account_ids else {}
    return [
        TransactionView(
            transaction=item,
            kind=classify_transaction(found[item.from_account_id].type, found[item.to_account_id].type),
            from_account=found[item.from_account_id],
            to_account=found[item.to_account_id],
        )
        for item in items
    ]


def _resolve_conversion(
    conn: Connection,
    user_id: int,
    amount: Decimal,
    from_account: Account,
    to_account: Account,
    *,
    provided_currency: str | None,
    provided_rate: Decimal | None,
) -> ConversionResult:
    currency = normalize_currency(provided_currency) if provided_currency else None

    if from_account.currency == to_account.currency:
        if currency is not None and currency != from_account.currency:
            raise CurrencyMismatch(
                f"Transaction currency {currency} must match account currency {from_account.currency}.",
                field="currency",
            )
        return calculate_conversion(amount, from_account.currency, to_account.currency)

    if provided_rate is None:
        provided_rate = find_default_rate(conn, user_id, from_account.currency, to_account.currency)
        if provided_rate is None:
            raise NoExchangeRateAvailable(
                f"No exchange rate set for {from_account.currency} to {to_account.currency}. "
                "Please set a default rate in settings or provide one manually.",
                pair=(from_account.currency, to_account.currency),
                field="exchange_rate",
            )
        check_rate_range(provided_rate)
    else:
        provided_rate = coerce_decimal(provided_rate)
        if provided_rate > ZERO:
            provided_rate = quantize_rate(check_rate_range(provided_rate))

    return calculate_conversion(
        amount,
        from_account.currency,
        to_account.currency,
        provided_currency=currency,
        provided_exchange_rate=provided_rate,
    )


def _apply_conversion(
    conn: Connection, from_account_id: int, to_account_id: int, conversion: ConversionResult
) -> None:
    apply_balance_delta(conn, from_account_id, -quantize_amount(conversion.amount_to_deduct))
    apply_balance_delta(conn, to_account_id, quantize_amount(conversion.amount_to_increment))


def _apply_reversal(
    conn: Connection, from_account_id: int, to_account_id: int, reversal: ReversalResult
) -> None:
    apply_balance_delta(conn, from_account_id, quantize_amount(reversal.amount_to_restore))
    apply_balance_delta(conn, to_account_id, -quantize_amount(reversal.amount_to_remove))


def _validate_amount(value: Decimal | int | str) -> Decimal:
    amount = coerce_decimal(value)
    if amount <= ZERO:
        raise InvalidInput("Amount must be greater than zero.", field="amount")
    quantized = quantize_amount(check_amount_range(amount))
    if quantized == ZERO:
        raise InvalidInput("Amount is below the smallest supported unit.", field="amount")
    return quantized


def _patched(patch: dict, key: str, default):
    value = patch.get(key)
    return default if value is None else value
