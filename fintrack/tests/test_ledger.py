import unittest
from datetime import date, timedelta
from decimal import Decimal

from fintrack.ledger import (
    LIQUIDITY,
    WEALTH,
    Account,
    LedgerSnapshot,
    Transaction,
    account_group,
    accounts_in_group,
    balances_by_account,
    is_opening_balance_marker,
    running_balance,
    signed_amount,
)

KINDS = [
    "expense_personal",
    "expense_essential",
    "expense_work",
    "income_personal",
    "income_essential",
    "income_work",
    "income_pension",
    "transfer",
    "transfer_invest",
    "adjustment",
]


def make_txn(txn_id, account_id, occurred_on, kind, amount, amount_base=None, **kwargs):
    return Transaction(
        id=txn_id,
        account_id=account_id,
        occurred_on=occurred_on,
        kind=kind,
        amount_original=Decimal(amount),
        amount_base=Decimal(amount if amount_base is None else amount_base),
        **kwargs,
    )


class SignedAmountTests(unittest.TestCase):
    def test_sign_law_holds_for_both_amount_fields(self) -> None:
        for kind in KINDS:
            for raw in ("125.50", "-125.50"):
                txn = make_txn("t", "a", date(2024, 1, 1), kind, raw, raw)
                for field_name in ("amount_original", "amount_base"):
                    value = signed_amount(txn, field_name)
                    if kind.startswith("expense"):
                        self.assertLessEqual(value, 0, (kind, raw, field_name))
                    elif kind.startswith("income"):
                        self.assertGreaterEqual(value, 0, (kind, raw, field_name))
                    else:
                        self.assertEqual(value, Decimal(raw))

    def test_kind_matching_ignores_case_and_whitespace(self) -> None:
        txn = make_txn("t", "a", date(2024, 1, 1), " Expense_Personal ", "40")

        self.assertEqual(signed_amount(txn), Decimal("-40"))


class RunningBalanceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transactions = [
            make_txn("t1", "A", date(2024, 1, 5), "income_personal", "1000"),
            make_txn("t2", "A", date(2024, 1, 20), "expense_personal", "-300"),
            make_txn("t3", "A", date(2024, 2, 3), "transfer", "-150", "0"),
            make_txn("t4", "A", date(2024, 2, 28), "adjustment", "25.25"),
            make_txn("t5", "B", date(2024, 1, 10), "income_personal", "999"),
        ]

    def test_balance_at_month_end(self) -> None:
        balance = running_balance(self.transactions, date(2024, 1, 31), account_ids=["A"])

        self.assertEqual(balance, Decimal("700"))

    def test_cutoff_is_inclusive(self) -> None:
        balance = running_balance(self.transactions, date(2024, 1, 20), account_ids=["A"])

        self.assertEqual(balance, Decimal("700"))

    def test_difference_between_cutoffs_equals_postings_in_between(self) -> None:
        start = date(2024, 1, 1)
        cutoffs = [start + timedelta(days=offset) for offset in range(0, 70, 7)]
        for first in cutoffs:
            for second in cutoffs:
                if second < first:
                    continue
                expected = sum(
                    (
                        signed_amount(txn)
                        for txn in self.transactions
                        if txn.account_id == "A" and first < txn.occurred_on <= second
                    ),
                    Decimal("0"),
                )
                delta = running_balance(
                    self.transactions, second, account_ids=["A"]
                ) - running_balance(self.transactions, first, account_ids=["A"])
                self.assertEqual(delta, expected)

    def test_without_account_filter_sums_everything(self) -> None:
        balance = running_balance(self.transactions, date(2024, 12, 31))

        self.assertEqual(balance, Decimal("1574.25"))

    def test_malformed_records_are_skipped(self) -> None:
        transactions = self.transactions + [
            make_txn("bad-date", "A", "2024-13-45", "income_personal", "50"),
            make_txn("nan", "A", date(2024, 1, 6), "income_personal", "NaN"),
            make_txn("inf", "A", date(2024, 1, 6), "income_personal", "Infinity"),
        ]

        balance = running_balance(transactions, date(2024, 1, 31), account_ids=["A"])

        self.assertEqual(balance, Decimal("700"))

    def test_iso_string_dates_are_accepted(self) -> None:
        transactions = [make_txn("t", "A", "2024-03-01", "income_personal", "10")]

        self.assertEqual(running_balance(transactions, date(2024, 3, 1)), Decimal("10"))
        self.assertEqual(running_balance(transactions, date(2024, 2, 29)), Decimal("0"))

    def test_none_collection_raises(self) -> None:
        with self.assertRaises(ValueError):
            running_balance(None, date(2024, 1, 1))

    def test_transfer_pair_is_neutral_across_both_accounts(self) -> None:
        transfers = [
            make_txn("out", "A", date(2024, 3, 1), "transfer", "-400", "0"),
            make_txn("in", "B", date(2024, 3, 1), "transfer", "400", "0"),
        ]
        before = running_balance(self.transactions, date(2024, 3, 31), account_ids=["A", "B"])
        after = running_balance(
            self.transactions + transfers, date(2024, 3, 31), account_ids=["A", "B"]
        )

        self.assertEqual(before, after)
        self.assertEqual(
            running_balance(transfers, date(2024, 3, 31), field_name="amount_base"), Decimal("0")
        )

    def test_balances_by_account(self) -> None:
        balances = balances_by_account(self.transactions, date(2024, 1, 31))

        self.assertEqual(balances, {"A": Decimal("700"), "B": Decimal("999")})


class OpeningBalanceMarkerTests(unittest.TestCase):
    def test_matches_known_phrases_case_insensitively(self) -> None:
        self.assertTrue(is_opening_balance_marker("Saldo Iniziale conto"))
        self.assertTrue(is_opening_balance_marker("APERTURA"))
        self.assertTrue(is_opening_balance_marker("conto - apertura 2022"))

    def test_rejects_other_descriptions(self) -> None:
        self.assertFalse(is_opening_balance_marker("Rent March"))
        self.assertFalse(is_opening_balance_marker(""))
        self.assertFalse(is_opening_balance_marker(None))


class AccountGroupTests(unittest.TestCase):
    def setUp(self) -> None:
        self.accounts = [
            Account(id="1", name="Wallet", currency="CHF", kind="cash"),
            Account(id="2", name="Revolut", currency="EUR", kind="pocket"),
            Account(id="3", name="Broker", currency="USD", kind="invest"),
            Account(id="4", name="Pillar 3a", currency="CHF", kind="pension"),
            Account(id="5", name="Legacy", currency="CHF", kind="unknown"),
        ]

    def test_groups_follow_account_kind(self) -> None:
        self.assertEqual([account_group(a) for a in self.accounts], [
            LIQUIDITY,
            LIQUIDITY,
            WEALTH,
            WEALTH,
            None,
        ])
        self.assertIsNone(account_group(None))

    def test_accounts_in_group(self) -> None:
        self.assertEqual([a.id for a in accounts_in_group(self.accounts, WEALTH)], ["3", "4"])

    def test_unknown_group_raises(self) -> None:
        with self.assertRaises(ValueError):
            accounts_in_group(self.accounts, "other")

    def test_snapshot_indexes_accounts(self) -> None:
        snapshot = LedgerSnapshot(accounts=tuple(self.accounts))

        self.assertEqual(snapshot.accounts_by_id["3"].name, "Broker")
        self.assertEqual(snapshot.transactions, ())


if __name__ == "__main__":
    unittest.main()
