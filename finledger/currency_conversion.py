from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping

import structlog

from finledger.errors import (
    CurrencyMismatch,
    InconsistentReversalData,
    InvalidInput,
    MissingCurrency,
    MissingOrInvalidRate,
    NoExchangeRateAvailable,
)

logger = structlog.get_logger(__name__)

SUPPORTED_CURRENCIES = ("EGP", "USD", "GOLD_G")

ZERO = Decimal("0")
ONE = Decimal("1")
AMOUNT_PLACES = 8
RATE_PLACES = 10
AMOUNT_QUANTUM = Decimal(1).scaleb(-AMOUNT_PLACES)
RATE_QUANTUM = Decimal(1).scaleb(-RATE_PLACES)
# Both scales are stored as 64-bit integer units, which caps their magnitude.
MAX_AMOUNT = Decimal("90000000000")
MAX_RATE = Decimal("900000000")


@dataclass(frozen=True)
class ConversionResult:
    amount_to_deduct: Decimal
    amount_to_increment: Decimal
    currency: str
    exchange_rate: Decimal | None


@dataclass(frozen=True)
class ReversalResult:
    amount_to_restore: Decimal
    amount_to_remove: Decimal


def calculate_conversion(
    amount: Decimal | int | str,
    from_currency: str,
    to_currency: str,
    provided_currency: str | None = None,
    provided_exchange_rate: Decimal | int | str | None = None,
) -> ConversionResult:
    """Work out what leaves the source account and what lands in the destination.

    The rate always reads "1 unit of from_currency = rate units of to_currency";
    provided_currency only decides which side the face amount is expressed in.
    """
    base_amount = coerce_decimal(amount)

    if from_currency == to_currency:
        return ConversionResult(
            amount_to_deduct=base_amount,
            amount_to_increment=base_amount,
            currency=from_currency,
            exchange_rate=None,
        )

    if not provided_currency:
        raise MissingCurrency(
            "Currency is required for cross-currency transactions.",
            field="currency",
        )
    if provided_exchange_rate is None or coerce_decimal(provided_exchange_rate) <= ZERO:
        raise MissingOrInvalidRate(
            f"A positive exchange rate from {from_currency} to {to_currency} is required. "
            "Set a default rate or provide one manually.",
            field="exchange_rate",
        )
    if provided_currency not in (from_currency, to_currency):
        raise CurrencyMismatch(
            f"Transaction currency {provided_currency} must match {from_currency} or {to_currency}.",
            field="currency",
        )

    rate = coerce_decimal(provided_exchange_rate)
    if provided_currency == from_currency:
        amount_to_deduct = base_amount
        amount_to_increment = base_amount * rate
    else:
        amount_to_deduct = base_amount / rate
        amount_to_increment = base_amount

    return ConversionResult(
        amount_to_deduct=amount_to_deduct,
        amount_to_increment=amount_to_increment,
        currency=provided_currency,
        exchange_rate=rate,
    )


def reverse_conversion(
    amount: Decimal,
    currency: str,
    from_currency: str,
    to_currency: str,
    exchange_rate: Decimal | None,
) -> ReversalResult:
    """Undo a stored transaction using only its stored amount, currency and rate."""
    if from_currency == to_currency:
        return ReversalResult(amount_to_restore=amount, amount_to_remove=amount)

    if exchange_rate is None:
        logger.error(
            "reversal_missing_exchange_rate",
            currency=currency,
            from_currency=from_currency,
            to_currency=to_currency,
        )
        raise InconsistentReversalData(
            f"Cannot reverse {from_currency} to {to_currency} transaction: missing exchange rate data."
        )

    if currency == from_currency:
        return ReversalResult(
            amount_to_restore=amount,
            amount_to_remove=amount * exchange_rate,
        )
    return ReversalResult(
        amount_to_restore=amount / exchange_rate,
        amount_to_remove=amount,
    )


@dataclass(frozen=True)
class ExchangeRateTable:
    """Latest known rate per ordered currency pair for one principal."""

    rates: Mapping[tuple[str, str], Decimal] = field(default_factory=dict)

    @classmethod
    def from_rows(cls, rows: Iterable[tuple[str, str, Decimal]]) -> "ExchangeRateTable":
        return cls(rates={(source, target): coerce_decimal(rate) for source, target, rate in rows})

    def find_rate(self, from_currency: str, to_currency: str) -> Decimal | None:
        if from_currency == to_currency:
            return ONE
        direct = self.rates.get((from_currency, to_currency))
        if direct is not None:
            return direct
        inverse = self.rates.get((to_currency, from_currency))
        if inverse is not None and inverse > ZERO:
            return ONE / inverse
        return None


def convert_amount(
    amount: Decimal | int | str,
    source_currency: str,
    target_currency: str,
    rate_table: ExchangeRateTable,
) -> Decimal:
    """Convert a reporting amount with the principal's current rates."""
    coerced_amount = coerce_decimal(amount)
    if source_currency == target_currency:
        return coerced_amount

    rate = rate_table.find_rate(source_currency, target_currency)
    if rate is None:
        raise NoExchangeRateAvailable(
            f"Exchange rate not found for {source_currency} to {target_currency}. Please set it in settings.",
            pair=(source_currency, target_currency),
        )
    return coerced_amount * rate


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if normalized not in SUPPORTED_CURRENCIES:
        raise InvalidInput(
            f"Unsupported currency: {normalized or value!r}. Expected one of {', '.join(SUPPORTED_CURRENCIES)}.",
            field="currency",
        )
    return normalized


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(AMOUNT_QUANTUM)


def quantize_rate(value: Decimal) -> Decimal:
    return value.quantize(RATE_QUANTUM)


def check_amount_range(value: Decimal, field: str = "amount") -> Decimal:
    if abs(value) > MAX_AMOUNT:
        raise InvalidInput(f"Amount exceeds the supported maximum of {MAX_AMOUNT}.", field=field)
    return value


def check_rate_range(value: Decimal, field: str = "exchange_rate") -> Decimal:
    if value > MAX_RATE:
        raise InvalidInput(f"Exchange rate exceeds the supported maximum of {MAX_RATE}.", field=field)
    return value


def coerce_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise InvalidInput(f"Invalid decimal value: {value!r}") from exc
