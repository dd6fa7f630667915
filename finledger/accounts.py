from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Mapping, Optional

from finledger.errors import InvalidInput

OPENING_BALANCES_KEY = "opening_balances"
OPENING_BALANCES_NAME = "Opening Balances"
OPENING_BALANCES_DESCRIPTION = "Opening balance for all accounts"


class AccountType:
    values = {"asset", "liability", "income", "expense", "equity"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise InvalidInput("Invalid account type.", field="type")
        return normalized


class AccountKind:
    """Sub-kinds of the five storage types.

    Goals and loans are told apart from plain assets and credit cards by their
    optional target and due date. That decision is made here, once, when a row
    becomes an Account.
    """

    ASSET = "asset"
    GOAL = "goal"
    LOAN = "loan"
    CREDIT_CARD = "credit_card"
    INCOME_SOURCE = "income_source"
    EXPENSE_CATEGORY = "expense_category"
    EQUITY = "equity"

    values = {ASSET, GOAL, LOAN, CREDIT_CARD, INCOME_SOURCE, EXPENSE_CATEGORY, EQUITY}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower().replace("-", "_")
        if normalized not in cls.values:
            raise InvalidInput("Invalid account kind.", field="kind")
        return normalized


KIND_TO_TYPE: Mapping[str, str] = {
    AccountKind.ASSET: "asset",
    AccountKind.GOAL: "asset",
    AccountKind.LOAN: "liability",
    AccountKind.CREDIT_CARD: "liability",
    AccountKind.INCOME_SOURCE: "income",
    AccountKind.EXPENSE_CATEGORY: "expense",
    AccountKind.EQUITY: "equity",
}

# (target allowed, due_date allowed) per kind; goals require both, loans require a due date.
KIND_FIELDS: Mapping[str, tuple[bool, bool]] = {
    AccountKind.ASSET: (False, False),
    AccountKind.GOAL: (True, True),
    AccountKind.LOAN: (False, True),
    AccountKind.CREDIT_CARD: (False, False),
    AccountKind.INCOME_SOURCE: (False, False),
    AccountKind.EXPENSE_CATEGORY: (False, False),
    AccountKind.EQUITY: (False, False),
}


@dataclass(frozen=True)
class Account:
    id: int
    user_id: int
    name: str
    type: str
    kind: str
    currency: str
    balance: Decimal
    description: Optional[str] = None
    target: Optional[Decimal] = None
    due_date: Optional[date] = None
    system_key: Optional[str] = None
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping) -> "Account":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            type=row["type"],
            kind=resolve_account_kind(row["type"], row["target"], row["due_date"]),
            currency=row["currency"],
            balance=row["balance"],
            description=row["description"],
            target=row["target"],
            due_date=row["due_date"],
            system_key=row["system_key"],
            created_at=row["created_at"],
            deleted_at=row["deleted_at"],
        )


@dataclass(frozen=True)
class LedgerTransaction:
    id: int
    user_id: int
    from_account_id: int
    to_account_id: int
    amount: Decimal
    currency: str
    exchange_rate: Optional[Decimal]
    date: date
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping) -> "LedgerTransaction":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            from_account_id=row["from_account_id"],
            to_account_id=row["to_account_id"],
            amount=row["amount"],
            currency=row["currency"],
            exchange_rate=row["exchange_rate"],
            date=row["date"],
            description=row["description"],
            created_at=row["created_at"],
            deleted_at=row["deleted_at"],
        )


def resolve_account_kind(
    account_type: str,
    target: Optional[Decimal],
    due_date: Optional[date],
) -> str:
    if account_type == "asset":
        return AccountKind.GOAL if target is not None else AccountKind.ASSET
    if account_type == "liability":
        return AccountKind.LOAN if due_date is not None else AccountKind.CREDIT_CARD
    if account_type == "income":
        return AccountKind.INCOME_SOURCE
    if account_type == "expense":
        return AccountKind.EXPENSE_CATEGORY
    if account_type == "equity":
        return AccountKind.EQUITY
    raise InvalidInput(f"Unknown account type: {account_type}", field="type")


def kind_account_type(kind: str) -> str:
    return KIND_TO_TYPE[AccountKind.validate(kind)]


def validate_kind_fields(
    kind: str,
    target: Optional[Decimal],
    due_date: Optional[date],
) -> None:
    target_allowed, due_date_allowed = KIND_FIELDS[kind]
    if target is not None and not target_allowed:
        raise InvalidInput(f"{kind} accounts do not carry a target.", field="target")
    if due_date is not None and not due_date_allowed:
        raise InvalidInput(f"{kind} accounts do not carry a due date.", field="due_date")
    if kind == AccountKind.GOAL:
        if target is None or target <= 0:
            raise InvalidInput("Goals require a positive target.", field="target")
        if due_date is None:
            raise InvalidInput("Goals require a due date.", field="due_date")
    if kind == AccountKind.LOAN and due_date is None:
        raise InvalidInput("Loans require a due date.", field="due_date")


TRANSACTION_KINDS = ("income", "expense", "transfer")
# (from type, to type) pairs with their own kind; every other pair is a transfer.
CLASSIFIED_PAIRS = {
    "income": ("income", "asset"),
    "expense": ("asset", "expense"),
}


def classify_transaction(from_type: str, to_type: str) -> str:
    for kind, pair in CLASSIFIED_PAIRS.items():
        if (from_type, to_type) == pair:
            return kind
    return "transfer"
