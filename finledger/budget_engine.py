from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

import structlog

from finledger.currency_conversion import ExchangeRateTable, convert_amount
from finledger.errors import CurrencyConversionError

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
PERCENT_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class BudgetTransaction:
    amount: Decimal
    currency: str
    exchange_rate: Optional[Decimal]
    to_account_currency: str
    date: date
    id: Optional[int] = None


@dataclass(frozen=True)
class Budget:
    amount: Decimal
    currency: str
    start_date: date
    end_date: date


@dataclass(frozen=True)
class BudgetProgress:
    spent: Decimal
    remaining: Decimal
    percentage: Decimal
    is_over_budget: bool
    skipped_count: int = 0


@dataclass(frozen=True)
class SummaryRow:
    amount: Decimal
    currency: str
    kind: str
    id: Optional[int] = None


@dataclass(frozen=True)
class TransactionSummary:
    total_income: Decimal
    total_expenses: Decimal
    total_transfers: Decimal
    transaction_count: int
    income_count: int
    expense_count: int
    transfer_count: int
    skipped_count: int = 0


def evaluate_budget_progress(
    transactions: Iterable[BudgetTransaction],
    budget: Budget,
    rate_table: ExchangeRateTable,
) -> BudgetProgress:
    if budget.start_date > budget.end_date:
        raise ValueError("start_date must be on or before end_date.")

    spent = ZERO
    skipped = 0
    for txn in transactions:
        if not budget.start_date <= txn.date <= budget.end_date:
            continue
        try:
            received = amount_received(txn)
            spent += convert_amount(received, txn.to_account_currency, budget.currency, rate_table)
        except CurrencyConversionError as exc:
            skipped += 1
            logger.warning(
                "budget_transaction_skipped",
                transaction_id=txn.id,
                currency=txn.currency,
                to_account_currency=txn.to_account_currency,
                budget_currency=budget.currency,
                reason=str(exc),
            )

    if budget.amount > ZERO:
        percentage = (spent * HUNDRED / budget.amount).quantize(PERCENT_QUANTUM)
    else:
        percentage = ZERO
    return BudgetProgress(
        spent=spent,
        remaining=budget.amount - spent,
        percentage=percentage,
        is_over_budget=spent > budget.amount,
        skipped_count=skipped,
    )


def amount_received(txn: BudgetTransaction) -> Decimal:
    """The part of a transaction that landed in its destination account, in that account's currency."""
    if txn.currency == txn.to_account_currency:
        return txn.amount
    if txn.exchange_rate is None:
        raise CurrencyConversionError(
            f"Transaction in {txn.currency} into a {txn.to_account_currency} account has no exchange rate."
        )
    return txn.amount * txn.exchange_rate


def summarize_transactions(
    rows: Iterable[SummaryRow],
    base_currency: str,
    rate_table: ExchangeRateTable,
) -> TransactionSummary:
    totals = {"income": ZERO, "expense": ZERO, "transfer": ZERO}
    counts = {"income": 0, "expense": 0, "transfer": 0}
    skipped = 0
    for row in rows:
        counts[row.kind] += 1
        try:
            totals[row.kind] += convert_amount(row.amount, row.currency, base_currency, rate_table)
        except CurrencyConversionError as exc:
            skipped += 1
            logger.warning(
                "summary_transaction_skipped",
                transaction_id=row.id,
                kind=row.kind,
                currency=row.currency,
                base_currency=base_currency,
                reason=str(exc),
            )

    return TransactionSummary(
        total_income=totals["income"],
        total_expenses=totals["expense"],
        total_transfers=totals["transfer"],
        transaction_count=sum(counts.values()),
        income_count=counts["income"],
        expense_count=counts["expense"],
        transfer_count=counts["transfer"],
        skipped_count=skipped,
    )


@dataclass(frozen=True)
class AccountBalance:
    balance: Decimal
    currency: str
    type: str
    id: Optional[int] = None


@dataclass(frozen=True)
class NetWorthSummary:
    total_balance: Decimal
    total_liabilities: Decimal
    net_worth: Decimal
    skipped_count: int = 0


def summarize_net_worth(
    accounts: Iterable[AccountBalance],
    base_currency: str,
    rate_table: ExchangeRateTable,
) -> NetWorthSummary:
    """Asset total and assets minus liabilities, in the base currency.

    Accounts of other types are ignored. Accounts whose currency has no rate
    to the base currency are left out and counted.
    """
    assets = ZERO
    liabilities = ZERO
    skipped = 0
    for account in accounts:
        if account.type not in ("asset", "liability"):
            continue
        try:
            converted = convert_amount(account.balance, account.currency, base_currency, rate_table)
        except CurrencyConversionError as exc:
            skipped += 1
            logger.warning(
                "net_worth_account_skipped",
                account_id=account.id,
                currency=account.currency,
                base_currency=base_currency,
                reason=str(exc),
            )
            continue
        if account.type == "asset":
            assets += converted
        else:
            liabilities += converted

    return NetWorthSummary(
        total_balance=assets,
        total_liabilities=liabilities,
        net_worth=assets - liabilities,
        skipped_count=skipped,
    )
