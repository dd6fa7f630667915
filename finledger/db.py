from __future__ import annotations

from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from finledger.currency_conversion import AMOUNT_PLACES, RATE_PLACES


class ScaledDecimal(TypeDecorator):
    """Decimal stored as a signed 64-bit count of 10**-places units.

    SQLite keeps NUMERIC columns as REAL, so money never goes through them;
    integer columns keep `balance + delta` exact on every backend.
    """

    impl = BigInteger
    cache_ok = True

    def __init__(self, places: int) -> None:
        super().__init__()
        self.places = places

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return int(Decimal(value).scaleb(self.places).to_integral_value())

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(int(value)).scaleb(-self.places)


metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("base_currency", String(10), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("description", String(500)),
    Column("type", String(20), nullable=False),
    Column("currency", String(10), nullable=False),
    Column("balance", ScaledDecimal(AMOUNT_PLACES), nullable=False, default=0),
    Column("target", ScaledDecimal(AMOUNT_PLACES)),
    Column("due_date", Date),
    Column("system_key", String(50)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    Column("deleted_at", DateTime),
    UniqueConstraint("user_id", "system_key", name="uq_accounts_user_system_key"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("from_account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("to_account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("amount", ScaledDecimal(AMOUNT_PLACES), nullable=False),
    Column("currency", String(10), nullable=False),
    Column("exchange_rate", ScaledDecimal(RATE_PLACES)),
    Column("description", String(500)),
    Column("date", Date, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    Column("deleted_at", DateTime),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("amount", ScaledDecimal(AMOUNT_PLACES), nullable=False),
    Column("currency", String(10), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime),
)

budget_accounts = Table(
    "budget_accounts",
    metadata,
    Column("budget_id", Integer, ForeignKey("budgets.id"), primary_key=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), primary_key=True),
)

exchange_rates = Table(
    "exchange_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("from_currency", String(10), nullable=False),
    Column("to_currency", String(10), nullable=False),
    Column("rate", ScaledDecimal(RATE_PLACES), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    Column("deleted_at", DateTime),
    UniqueConstraint("user_id", "from_currency", "to_currency", name="uq_exchange_rates_user_pair"),
)


def make_engine(database_url: str) -> Engine:
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **kwargs)
