import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import func, insert, select

from finledger.account_service import (
    NewAccount,
    create_account,
    delete_account,
    list_accounts,
    update_account,
)
from finledger.accounts import OPENING_BALANCES_KEY
from finledger.db import accounts, make_engine, metadata, transactions, users
from finledger.errors import (
    AccountNotFound,
    CurrencyMismatch,
    InconsistentReversalData,
    InvalidInput,
    MissingOpeningRate,
    NoExchangeRateAvailable,
    ReferentialConflict,
    SameAccount,
    TransactionNotFound,
)
from finledger.opening_balances import initialize_principal
from finledger.store import set_exchange_rate
from finledger.transaction_service import (
    NewTransaction,
    create_transaction,
    delete_transaction,
    list_transactions,
    update_transaction,
)


class LedgerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine("sqlite://")
        metadata.create_all(self.engine)
        self.user_id = self.add_user("owner@example.com", "EGP")
        self.other_user_id = self.add_user("other@example.com", "EGP")

    def tearDown(self) -> None:
        self.engine.dispose()

    def add_user(self, email: str, base_currency: str) -> int:
        with self.engine.begin() as conn:
            user_id = conn.execute(
                insert(users).values(email=email, base_currency=base_currency).returning(users.c.id)
            ).scalar_one()
            initialize_principal(conn, user_id)
        return user_id

    def add_account(self, name: str, kind: str, currency: str, user_id: int | None = None, **fields) -> int:
        with self.engine.begin() as conn:
            account = create_account(
                conn,
                user_id or self.user_id,
                NewAccount(name=name, kind=kind, currency=currency, **fields),
            )
        return account.id

    def balance(self, account_id: int) -> Decimal:
        with self.engine.begin() as conn:
            return conn.execute(
                select(accounts.c.balance).where(accounts.c.id == account_id)
            ).scalar_one()

    def equity_id(self, user_id: int | None = None) -> int:
        with self.engine.begin() as conn:
            return conn.execute(
                select(accounts.c.id).where(
                    accounts.c.user_id == (user_id or self.user_id),
                    accounts.c.system_key == OPENING_BALANCES_KEY,
                )
            ).scalar_one()

    def transfer(self, from_id: int, to_id: int, amount: str, **fields):
        with self.engine.begin() as conn:
            return create_transaction(
                conn,
                self.user_id,
                NewTransaction(
                    from_account_id=from_id,
                    to_account_id=to_id,
                    amount=Decimal(amount),
                    date=fields.pop("date", date(2024, 5, 10)),
                    **fields,
                ),
            )


class OpeningBalanceTests(LedgerTestCase):
    def test_opening_balance_is_funded_from_equity(self) -> None:
        account_id = self.add_account("Wallet", "asset", "EGP", opening_balance=Decimal("500"))

        self.assertEqual(self.balance(account_id), Decimal("500"))
        self.assertEqual(self.balance(self.equity_id()), Decimal("-500"))
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(transactions).where(transactions.c.to_account_id == account_id)
            ).mappings().all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["from_account_id"], self.equity_id())
        self.assertEqual(rows[0]["amount"], Decimal("500"))
        self.assertIsNone(rows[0]["exchange_rate"])
        self.assertEqual(rows[0]["description"], "Opening balance for Wallet")

    def test_zero_opening_balance_creates_no_transaction(self) -> None:
        self.add_account("Wallet", "asset", "EGP", opening_balance=Decimal("0"))

        with self.engine.begin() as conn:
            count = conn.execute(select(func.count(transactions.c.id))).scalar_one()
        self.assertEqual(count, 0)

    def test_cross_currency_opening_balance_requires_rate(self) -> None:
        with self.assertRaises(MissingOpeningRate):
            self.add_account("Dollars", "asset", "USD", opening_balance=Decimal("100"))

        with self.engine.begin() as conn:
            names = [account.name for account in list_accounts(conn, self.user_id)]
        self.assertNotIn("Dollars", names)

    def test_cross_currency_opening_balance_converts_from_base(self) -> None:
        account_id = self.add_account(
            "Dollars",
            "asset",
            "USD",
            opening_balance=Decimal("100"),
            opening_balance_exchange_rate=Decimal("0.02"),
        )

        self.assertEqual(self.balance(account_id), Decimal("100"))
        self.assertEqual(self.balance(self.equity_id()), Decimal("-5000"))

    def test_large_balances_keep_every_digit(self) -> None:
        savings_id = self.add_account(
            "Savings", "asset", "EGP", opening_balance=Decimal("12345678901.23456789")
        )
        wallet_id = self.add_account("Wallet", "asset", "EGP")

        self.transfer(savings_id, wallet_id, "0.00000001")

        self.assertEqual(self.balance(savings_id), Decimal("12345678901.23456788"))
        self.assertEqual(self.balance(wallet_id), Decimal("0.00000001"))
        self.assertEqual(self.balance(self.equity_id()), Decimal("-12345678901.23456789"))

    def test_amount_beyond_storable_range_is_rejected(self) -> None:
        with self.assertRaises(InvalidInput):
            self.add_account("Vault", "asset", "EGP", opening_balance=Decimal("123456789012.34567891"))

        with self.engine.begin() as conn:
            names = [account.name for account in list_accounts(conn, self.user_id)]
        self.assertNotIn("Vault", names)

    def test_balance_overflow_rolls_back(self) -> None:
        self.add_account("First", "asset", "EGP", opening_balance=Decimal("60000000000"))

        with self.assertRaises(InvalidInput):
            self.add_account("Second", "asset", "EGP", opening_balance=Decimal("60000000000"))

        self.assertEqual(self.balance(self.equity_id()), Decimal("-60000000000"))
        with self.engine.begin() as conn:
            names = [account.name for account in list_accounts(conn, self.user_id)]
        self.assertNotIn("Second", names)

    def test_initialize_principal_is_idempotent(self) -> None:
        with self.engine.begin() as conn:
            first = initialize_principal(conn, self.user_id)
            second = initialize_principal(conn, self.user_id)
            count = conn.execute(
                select(func.count(accounts.c.id)).where(
                    accounts.c.user_id == self.user_id,
                    accounts.c.system_key == OPENING_BALANCES_KEY,
                )
            ).scalar_one()

        self.assertEqual(first.id, second.id)
        self.assertEqual(first.currency, "EGP")
        self.assertEqual(first.type, "equity")
        self.assertEqual(count, 1)


class CreateDeleteTransactionTests(LedgerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.egp_id = self.add_account("Cash", "asset", "EGP", opening_balance=Decimal("1000"))
        self.usd_id = self.add_account("Dollars", "asset", "USD")
        self.food_id = self.add_account("Food", "expense_category", "EGP")

    def test_cross_currency_transfer_in_destination_currency(self) -> None:
        created = self.transfer(
            self.egp_id, self.usd_id, "100", currency="USD", exchange_rate=Decimal("50")
        )

        self.assertEqual(self.balance(self.egp_id), Decimal("998"))
        self.assertEqual(self.balance(self.usd_id), Decimal("100"))
        self.assertEqual(created.currency, "USD")
        self.assertEqual(created.exchange_rate, Decimal("50"))

    def test_deleting_cross_currency_transfer_restores_both_accounts(self) -> None:
        created = self.transfer(
            self.egp_id, self.usd_id, "100", currency="USD", exchange_rate=Decimal("50")
        )

        with self.engine.begin() as conn:
            delete_transaction(conn, self.user_id, created.id)

        self.assertEqual(self.balance(self.egp_id), Decimal("1000"))
        self.assertEqual(self.balance(self.usd_id), Decimal("0"))

    def test_create_then_delete_is_exact_with_repeating_quotient(self) -> None:
        created = self.transfer(
            self.egp_id, self.usd_id, "100", currency="USD", exchange_rate=Decimal("3")
        )
        self.assertEqual(self.balance(self.egp_id), Decimal("966.66666667"))

        with self.engine.begin() as conn:
            delete_transaction(conn, self.user_id, created.id)

        self.assertEqual(self.balance(self.egp_id), Decimal("1000"))
        self.assertEqual(self.balance(self.usd_id), Decimal("0"))

    def test_same_currency_expense_keeps_null_rate(self) -> None:
        created = self.transfer(self.egp_id, self.food_id, "42.50")

        self.assertIsNone(created.exchange_rate)
        self.assertEqual(created.currency, "EGP")
        self.assertEqual(self.balance(self.egp_id), Decimal("957.50"))
        self.assertEqual(self.balance(self.food_id), Decimal("42.50"))

    def test_same_account_is_rejected(self) -> None:
        with self.assertRaises(SameAccount):
            self.transfer(self.egp_id, self.egp_id, "10")

    def test_non_positive_amount_is_rejected(self) -> None:
        with self.assertRaises(InvalidInput):
            self.transfer(self.egp_id, self.food_id, "0")

    def test_foreign_account_is_not_found_and_nothing_moves(self) -> None:
        foreign_id = self.add_account("Theirs", "asset", "EGP", user_id=self.other_user_id)

        with self.assertRaises(AccountNotFound):
            self.transfer(self.egp_id, foreign_id, "10")

        self.assertEqual(self.balance(self.egp_id), Decimal("1000"))
        self.assertEqual(self.balance(foreign_id), Decimal("0"))

    def test_cross_currency_without_any_rate_fails(self) -> None:
        with self.assertRaises(NoExchangeRateAvailable) as ctx:
            self.transfer(self.egp_id, self.usd_id, "100", currency="USD")

        self.assertEqual(ctx.exception.pair, ("EGP", "USD"))
        self.assertEqual(self.balance(self.egp_id), Decimal("1000"))

    def test_default_rate_is_used_when_none_supplied(self) -> None:
        with self.engine.begin() as conn:
            set_exchange_rate(conn, self.user_id, "USD", "EGP", Decimal("50"))

        created = self.transfer(self.egp_id, self.usd_id, "500", currency="EGP")

        self.assertEqual(created.exchange_rate, Decimal("0.02"))
        self.assertEqual(self.balance(self.egp_id), Decimal("500"))
        self.assertEqual(self.balance(self.usd_id), Decimal("10"))

    def test_currency_outside_both_accounts_is_rejected(self) -> None:
        with self.assertRaises(CurrencyMismatch):
            self.transfer(self.egp_id, self.food_id, "10", currency="USD")
        with self.assertRaises(CurrencyMismatch):
            self.transfer(
                self.egp_id, self.usd_id, "10", currency="GOLD_G", exchange_rate=Decimal("50")
            )

    def test_deleted_transaction_cannot_be_deleted_twice(self) -> None:
        created = self.transfer(self.egp_id, self.food_id, "10")
        with self.engine.begin() as conn:
            delete_transaction(conn, self.user_id, created.id)

        with self.assertRaises(TransactionNotFound):
            with self.engine.begin() as conn:
                delete_transaction(conn, self.user_id, created.id)
        self.assertEqual(self.balance(self.egp_id), Decimal("1000"))

    def test_other_principal_cannot_delete(self) -> None:
        created = self.transfer(self.egp_id, self.food_id, "10")

        with self.assertRaises(TransactionNotFound):
            with self.engine.begin() as conn:
                delete_transaction(conn, self.other_user_id, created.id)
        self.assertEqual(self.balance(self.food_id), Decimal("10"))

    def test_reversal_without_stored_rate_is_inconsistent(self) -> None:
        with self.engine.begin() as conn:
            broken_id = conn.execute(
                insert(transactions)
                .values(
                    user_id=self.user_id,
                    from_account_id=self.egp_id,
                    to_account_id=self.usd_id,
                    amount=Decimal("10"),
                    currency="USD",
                    exchange_rate=None,
                    date=date(2024, 5, 1),
                )
                .returning(transactions.c.id)
            ).scalar_one()

        with self.assertRaises(InconsistentReversalData):
            with self.engine.begin() as conn:
                delete_transaction(conn, self.user_id, broken_id)
        self.assertEqual(self.balance(self.egp_id), Decimal("1000"))

    def test_listing_classifies_transactions(self) -> None:
        salary_id = self.add_account("Salary", "income_source", "EGP")
        self.transfer(salary_id, self.egp_id, "300", date=date(2024, 5, 1))
        self.transfer(self.egp_id, self.food_id, "20", date=date(2024, 5, 2))

        with self.engine.begin() as conn:
            views = list_transactions(
                conn, self.user_id, date_from=date(2024, 5, 1), date_to=date(2024, 5, 31)
            )

        self.assertEqual([view.kind for view in views], ["expense", "income"])
        self.assertEqual(views[1].from_account.name, "Salary")

    def test_listing_filters_kind_before_paging(self) -> None:
        salary_id = self.add_account("Salary", "income_source", "EGP")
        self.transfer(salary_id, self.egp_id, "300", date=date(2024, 5, 1))
        self.transfer(self.egp_id, self.food_id, "20", date=date(2024, 5, 2))
        self.transfer(self.egp_id, self.food_id, "30", date=date(2024, 5, 3))
        self.transfer(
            self.egp_id, self.usd_id, "1", currency="USD", exchange_rate=Decimal("50"), date=date(2024, 5, 4)
        )
        may = {"date_from": date(2024, 5, 1), "date_to": date(2024, 5, 31)}

        with self.engine.begin() as conn:
            first_page = list_transactions(conn, self.user_id, kind="expense", limit=1, **may)
            second_page = list_transactions(conn, self.user_id, kind="expense", limit=1, offset=1, **may)
            transfers = list_transactions(conn, self.user_id, kind="Transfer", **may)

        self.assertEqual([view.transaction.amount for view in first_page], [Decimal("30")])
        self.assertEqual([view.transaction.amount for view in second_page], [Decimal("20")])
        self.assertEqual([view.to_account.name for view in transfers], ["Dollars"])

    def test_listing_rejects_unknown_kind(self) -> None:
        with self.assertRaises(InvalidInput):
            with self.engine.begin() as conn:
                list_transactions(conn, self.user_id, kind="refund")


class UpdateTransactionTests(LedgerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.egp_id = self.add_account("Cash", "asset", "EGP", opening_balance=Decimal("1000"))
        self.usd_id = self.add_account("Dollars", "asset", "USD")
        self.food_id = self.add_account("Food", "expense_category", "EGP")
        self.rent_id = self.add_account("Rent", "expense_category", "EGP")

    def update(self, transaction_id: int, **patch):
        with self.engine.begin() as conn:
            return update_transaction(conn, self.user_id, transaction_id, patch)

    def test_amount_change_replaces_effect(self) -> None:
        created = self.transfer(self.egp_id, self.food_id, "100")

        updated = self.update(created.id, amount=Decimal("30"))

        self.assertEqual(updated.amount, Decimal("30"))
        self.assertEqual(self.balance(self.egp_id), Decimal("970"))
        self.assertEqual(self.balance(self.food_id), Decimal("30"))

    def test_moving_destination_restores_old_account(self) -> None:
        created = self.transfer(self.egp_id, self.food_id, "100")

        self.update(created.id, to_account_id=self.rent_id)

        self.assertEqual(self.balance(self.food_id), Decimal("0"))
        self.assertEqual(self.balance(self.rent_id), Decimal("100"))
        self.assertEqual(self.balance(self.egp_id), Decimal("900"))

    def test_switching_to_cross_currency_uses_new_rate(self) -> None:
        created = self.transfer(self.egp_id, self.food_id, "100")

        updated = self.update(
            created.id, to_account_id=self.usd_id, currency="USD", exchange_rate=Decimal("0.02")
        )

        self.assertEqual(updated.exchange_rate, Decimal("0.02"))
        self.assertEqual(self.balance(self.food_id), Decimal("0"))
        self.assertEqual(self.balance(self.usd_id), Decimal("100"))
        self.assertEqual(self.balance(self.egp_id), Decimal("-4000"))

    def test_cross_currency_update_keeps_stored_rate(self) -> None:
        created = self.transfer(
            self.egp_id, self.usd_id, "100", currency="USD", exchange_rate=Decimal("50")
        )

        self.update(created.id, amount=Decimal("200"))

        self.assertEqual(self.balance(self.egp_id), Decimal("996"))
        self.assertEqual(self.balance(self.usd_id), Decimal("200"))

    def test_rejected_update_leaves_balances_alone(self) -> None:
        created = self.transfer(self.egp_id, self.food_id, "100")

        with self.assertRaises(SameAccount):
            self.update(created.id, to_account_id=self.egp_id)

        self.assertEqual(self.balance(self.egp_id), Decimal("900"))
        self.assertEqual(self.balance(self.food_id), Decimal("100"))

    def test_update_then_delete_returns_to_start(self) -> None:
        created = self.transfer(self.egp_id, self.food_id, "100")
        self.update(created.id, to_account_id=self.usd_id, currency="EGP", exchange_rate=Decimal("0.03"))

        with self.engine.begin() as conn:
            delete_transaction(conn, self.user_id, created.id)

        self.assertEqual(self.balance(self.egp_id), Decimal("1000"))
        self.assertEqual(self.balance(self.usd_id), Decimal("0"))
        self.assertEqual(self.balance(self.food_id), Decimal("0"))

    def test_unknown_field_is_rejected(self) -> None:
        created = self.transfer(self.egp_id, self.food_id, "100")

        with self.assertRaises(InvalidInput):
            self.update(created.id, balance=Decimal("5"))

    def test_cannot_move_to_another_principals_account(self) -> None:
        created = self.transfer(self.egp_id, self.food_id, "100")
        foreign_id = self.add_account("Their food", "expense_category", "EGP", user_id=self.other_user_id)

        with self.assertRaises(AccountNotFound):
            self.update(created.id, to_account_id=foreign_id)

        self.assertEqual(self.balance(self.egp_id), Decimal("900"))
        self.assertEqual(self.balance(self.food_id), Decimal("100"))
        self.assertEqual(self.balance(foreign_id), Decimal("0"))

    def test_other_principal_cannot_update(self) -> None:
        created = self.transfer(self.egp_id, self.food_id, "100")

        with self.assertRaises(TransactionNotFound):
            with self.engine.begin() as conn:
                update_transaction(conn, self.other_user_id, created.id, {"amount": Decimal("1")})

        self.assertEqual(self.balance(self.food_id), Decimal("100"))

    def test_description_can_be_cleared(self) -> None:
        created = self.transfer(self.egp_id, self.food_id, "100", description="Groceries")

        kept = self.update(created.id, amount=Decimal("90"))
        cleared = self.update(created.id, description=None)

        self.assertEqual(kept.description, "Groceries")
        self.assertIsNone(cleared.description)
        self.assertEqual(cleared.amount, Decimal("90"))


class AccountLifecycleTests(LedgerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.cash_id = self.add_account("Cash", "asset", "EGP", opening_balance=Decimal("100"))
        self.food_id = self.add_account("Food", "expense_category", "EGP")

    def test_account_with_live_transactions_cannot_be_deleted(self) -> None:
        created = self.transfer(self.cash_id, self.food_id, "10")

        with self.assertRaises(ReferentialConflict) as ctx:
            with self.engine.begin() as conn:
                delete_account(conn, self.user_id, self.food_id)
        self.assertEqual(ctx.exception.count, 1)

        with self.engine.begin() as conn:
            delete_transaction(conn, self.user_id, created.id)
            delete_account(conn, self.user_id, self.food_id)
            remaining = [account.id for account in list_accounts(conn, self.user_id)]
        self.assertNotIn(self.food_id, remaining)

    def test_deleted_account_cannot_receive_transactions(self) -> None:
        with self.engine.begin() as conn:
            delete_account(conn, self.user_id, self.food_id)

        with self.assertRaises(AccountNotFound):
            self.transfer(self.cash_id, self.food_id, "10")

    def test_balance_is_not_patchable(self) -> None:
        with self.assertRaises(InvalidInput):
            with self.engine.begin() as conn:
                update_account(conn, self.user_id, self.cash_id, {"balance": Decimal("1")})

    def test_currency_change_blocked_by_live_transactions(self) -> None:
        with self.assertRaises(ReferentialConflict):
            with self.engine.begin() as conn:
                update_account(conn, self.user_id, self.cash_id, {"currency": "USD"})

    def test_patch_renames_and_retargets_goal(self) -> None:
        goal_id = self.add_account(
            "Trip", "goal", "EGP", target=Decimal("5000"), due_date=date(2025, 6, 1)
        )

        with self.engine.begin() as conn:
            account = update_account(
                conn, self.user_id, goal_id, {"name": "Big trip", "target": Decimal("8000")}
            )

        self.assertEqual(account.name, "Big trip")
        self.assertEqual(account.target, Decimal("8000"))
        self.assertEqual(account.kind, "goal")

    def test_system_account_is_protected(self) -> None:
        with self.assertRaises(InvalidInput):
            with self.engine.begin() as conn:
                delete_account(conn, self.user_id, self.equity_id())

    def test_list_filters_by_kind(self) -> None:
        self.add_account("Visa", "credit_card", "EGP")
        self.add_account("Mortgage", "loan", "EGP", due_date=date(2040, 1, 1))

        with self.engine.begin() as conn:
            cards = list_accounts(conn, self.user_id, kind="credit_card")
            loans = list_accounts(conn, self.user_id, kind="loan")

        self.assertEqual([account.name for account in cards], ["Visa"])
        self.assertEqual([account.name for account in loans], ["Mortgage"])


if __name__ == "__main__":
    unittest.main()
