import unittest
from datetime import date
from decimal import Decimal

from fintrack.currency_conversion import StaticRateProvider, Valuator
from fintrack.investment_analysis import (
    account_portfolio,
    analyze_trends,
    group_rollup,
    investment_stats,
    portfolio_sections,
    reconcile_adjustment,
    summarize_investments,
)
from fintrack.ledger import Account, Investment, InvestmentTrend, Transaction


def make_trend(trend_id, investment_id, value_on, value, cash_flow="0"):
    return InvestmentTrend(
        id=trend_id,
        investment_id=investment_id,
        value_on=value_on,
        value_original=Decimal(value),
        cash_flow=Decimal(cash_flow),
    )


def make_txn(txn_id, account_id, occurred_on, kind, amount):
    return Transaction(
        id=txn_id,
        account_id=account_id,
        occurred_on=occurred_on,
        kind=kind,
        amount_original=Decimal(amount),
    )


class AnalyzeTrendsTests(unittest.TestCase):
    def test_two_point_series(self) -> None:
        points = analyze_trends(
            [
                make_trend("t1", "x", date(2024, 1, 31), "1000", "1000"),
                make_trend("t2", "x", date(2024, 2, 29), "1050", "0"),
            ]
        )

        first, second = points
        self.assertEqual(first.period_gain, Decimal("0"))
        self.assertEqual(first.total_roi, Decimal("0"))
        self.assertEqual(second.total_invested, Decimal("1000"))
        self.assertEqual(second.net_gain, Decimal("50"))
        self.assertEqual(second.total_roi, Decimal("5"))
        self.assertEqual(second.period_gain, Decimal("50"))
        self.assertEqual(second.period_gain_percent, Decimal("5"))

    def test_input_order_does_not_matter(self) -> None:
        points = analyze_trends(
            [
                make_trend("t3", "x", date(2024, 3, 31), "1600", "500"),
                make_trend("t1", "x", date(2024, 1, 31), "1000", "1000"),
                make_trend("t2", "x", date(2024, 2, 29), "1050", "0"),
            ]
        )

        self.assertEqual([point.trend_id for point in points], ["t1", "t2", "t3"])
        self.assertEqual(points[-1].total_invested, Decimal("1500"))
        self.assertEqual(points[-1].period_gain, Decimal("50"))
        self.assertEqual(points[-1].net_gain, Decimal("100"))

    def test_zero_invested_has_zero_roi(self) -> None:
        points = analyze_trends([make_trend("t1", "x", date(2024, 1, 31), "20", "0")])

        self.assertEqual(points[0].net_gain, Decimal("20"))
        self.assertEqual(points[0].total_roi, Decimal("0"))
        self.assertEqual(points[0].period_gain_percent, Decimal("0"))

    def test_malformed_records_are_skipped(self) -> None:
        points = analyze_trends(
            [
                make_trend("t1", "x", date(2024, 1, 31), "1000", "1000"),
                make_trend("bad-date", "x", "not-a-date", "5", "5"),
                make_trend("bad-value", "x", date(2024, 2, 1), "NaN", "0"),
            ]
        )

        self.assertEqual([point.trend_id for point in points], ["t1"])

    def test_none_raises(self) -> None:
        with self.assertRaises(ValueError):
            analyze_trends(None)


class InvestmentRollupTests(unittest.TestCase):
    def setUp(self) -> None:
        self.investments = [
            Investment(id="a", name="World ETF", currency="CHF", is_for_retirement=True),
            Investment(id="b", name="Euro Bonds", currency="EUR", is_for_retirement=True),
            Investment(id="c", name="Stocks", currency="CHF"),
            Investment(id="d", name="Fresh", currency="CHF"),
        ]
        self.trends = [
            make_trend("a1", "a", date(2024, 1, 31), "1000", "1000"),
            make_trend("a2", "a", date(2024, 6, 30), "1100", "0"),
            make_trend("b1", "b", date(2024, 1, 31), "250", "250"),
            make_trend("b2", "b", date(2024, 6, 30), "375", "0"),
            make_trend("c1", "c", date(2024, 2, 1), "400", "500"),
        ]
        self.valuator = Valuator(StaticRateProvider(rates={("EUR", "CHF"): Decimal("2")}), "CHF")

    def test_stats_of_investment_without_trends(self) -> None:
        self.assertIsNone(investment_stats(self.investments[3], self.trends))

    def test_stats_use_latest_point(self) -> None:
        stats = investment_stats(self.investments[0], self.trends)

        self.assertEqual(stats.latest_value, Decimal("1100"))
        self.assertEqual(stats.last_date, date(2024, 6, 30))
        self.assertEqual(stats.total_invested, Decimal("1000"))
        self.assertEqual(stats.net_gain, Decimal("100"))
        self.assertEqual(stats.roi, Decimal("10"))

    def test_group_converts_before_summing(self) -> None:
        group = group_rollup(
            "retirement", self.investments[:2], self.trends, self.valuator, date(2024, 6, 30)
        )

        self.assertEqual(group.total_value, Decimal("1850"))
        self.assertEqual(group.total_invested, Decimal("1500"))
        self.assertEqual(group.net_gain, Decimal("350"))
        self.assertEqual(group.roi.quantize(Decimal("0.01")), Decimal("23.33"))
        self.assertEqual(group.investment_ids, ("a", "b"))

    def test_summary_splits_retirement_and_personal(self) -> None:
        summary = summarize_investments(
            self.investments, self.trends, self.valuator, date(2024, 6, 30)
        )

        self.assertEqual(summary.retirement.total_value, Decimal("1850"))
        self.assertEqual(summary.personal.total_value, Decimal("400"))
        self.assertEqual(summary.personal.net_gain, Decimal("-100"))
        self.assertEqual(summary.personal.investment_ids, ("c", "d"))
        self.assertEqual(len(summary.investments), 4)
        self.assertIsNone(summary.investments[3][1])
        self.assertEqual(summary.currency, "CHF")


class AccountPortfolioTests(unittest.TestCase):
    def setUp(self) -> None:
        self.broker = Account(id="broker", name="Broker", currency="EUR", kind="invest")
        self.pillar = Account(id="pillar", name="Pillar 3a", currency="CHF", kind="pension")
        self.closed = Account(id="old", name="Old", currency="CHF", kind="invest", status="closed")
        self.transactions = [
            make_txn("t1", "broker", date(2024, 1, 10), "transfer_invest", "1000"),
            make_txn("t3", "broker", date(2024, 3, 10), "adjustment", "50"),
            make_txn("t2", "broker", date(2024, 2, 10), "income_personal", "100"),
            make_txn("t4", "pillar", date(2024, 1, 10), "transfer_pension", "300"),
            make_txn("t5", "old", date(2024, 1, 10), "transfer_invest", "999"),
        ]

    def test_adjustments_change_balance_only(self) -> None:
        portfolio = account_portfolio(self.broker, self.transactions)

        self.assertEqual(portfolio.balance, Decimal("1150"))
        self.assertEqual(portfolio.invested, Decimal("1100"))
        self.assertEqual(portfolio.pnl, Decimal("50"))
        self.assertEqual([point.transaction_id for point in portfolio.history], ["t1", "t2", "t3"])
        self.assertEqual(portfolio.history[1].balance, Decimal("1100"))

    def test_sections_hold_active_accounts_in_base_currency(self) -> None:
        valuator = Valuator(StaticRateProvider(rates={("EUR", "CHF"): Decimal("2")}), "CHF")

        sections = portfolio_sections(
            [self.broker, self.pillar, self.closed], self.transactions, valuator, date(2024, 12, 31)
        )

        self.assertEqual(set(sections), {"pension", "invest"})
        self.assertEqual([item.account.id for item in sections["invest"].accounts], ["broker"])
        self.assertEqual(sections["invest"].total_value, Decimal("2300"))
        self.assertEqual(sections["invest"].total_invested, Decimal("2200"))
        self.assertEqual(sections["invest"].total_pnl, Decimal("100"))
        self.assertEqual(sections["pension"].total_value, Decimal("300"))

    def test_reconcile_adjustment_rounds_to_cents(self) -> None:
        adjustment = reconcile_adjustment(
            self.broker, self.transactions, Decimal("1200.455"), date(2024, 12, 31)
        )

        self.assertEqual(adjustment, Decimal("50.46"))

    def test_reconcile_adjustment_respects_date(self) -> None:
        adjustment = reconcile_adjustment(self.broker, self.transactions, "1000", date(2024, 1, 31))

        self.assertEqual(adjustment, Decimal("0.00"))


if __name__ == "__main__":
    unittest.main()
