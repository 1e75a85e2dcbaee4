from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Iterable, Optional

from fintrack.currency_conversion import Valuator
from fintrack.ledger import (
    ZERO,
    Account,
    Investment,
    InvestmentTrend,
    Transaction,
    is_expense_kind,
    is_income_kind,
    normalize_kind,
    parse_date,
    ratio_percent,
    running_balance,
    safe_amount,
    transaction_date,
    valid_transactions,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
RETIREMENT = "retirement"
PERSONAL = "personal"
PORTFOLIO_KINDS = ("pension", "invest")


@dataclass(frozen=True)
class TrendPoint:
    trend_id: str
    value_on: date
    value: Decimal
    cash_flow: Decimal
    total_invested: Decimal
    net_gain: Decimal
    total_roi: Decimal
    period_gain: Decimal
    period_gain_percent: Decimal


@dataclass(frozen=True)
class InvestmentStats:
    investment_id: str
    latest_value: Decimal
    last_date: date
    total_invested: Decimal

    @property
    def net_gain(self) -> Decimal:
        return self.latest_value - self.total_invested

    @property
    def roi(self) -> Decimal:
        return ratio_percent(self.net_gain, self.total_invested)


@dataclass(frozen=True)
class GroupStats:
    name: str
    currency: str
    total_value: Decimal
    total_invested: Decimal
    investment_ids: tuple[str, ...] = ()

    @property
    def net_gain(self) -> Decimal:
        return self.total_value - self.total_invested

    @property
    def roi(self) -> Decimal:
        return ratio_percent(self.net_gain, self.total_invested)


@dataclass(frozen=True)
class InvestmentSummary:
    as_of: date
    currency: str
    investments: tuple[tuple[Investment, Optional[InvestmentStats]], ...]
    retirement: GroupStats
    personal: GroupStats
    degraded_currencies: tuple[str, ...] = ()


@dataclass(frozen=True)
class PortfolioPoint:
    occurred_on: date
    transaction_id: str
    balance: Decimal
    invested: Decimal


@dataclass(frozen=True)
class AccountPortfolio:
    account: Account
    balance: Decimal
    invested: Decimal
    history: tuple[PortfolioPoint, ...] = ()

    @property
    def pnl(self) -> Decimal:
        return self.balance - self.invested

    @property
    def roi(self) -> Decimal:
        return ratio_percent(self.pnl, self.invested)


@dataclass(frozen=True)
class PortfolioSection:
    name: str
    currency: str
    accounts: tuple[AccountPortfolio, ...]
    total_value: Decimal
    total_invested: Decimal

    @property
    def total_pnl(self) -> Decimal:
        return self.total_value - self.total_invested


def analyze_trends(trends: Iterable[InvestmentTrend]) -> list[TrendPoint]:
    """Performance series of one investment, in ascending date order.

    The first point's cash flow is taken as the capital of the inception
    period. Period gain is the part of the value change that new cash flows
    do not explain.
    """
    if trends is None:
        raise ValueError("trends must not be None.")
    ordered = sorted(_valid_trends(trends), key=lambda item: item[0])

    points: list[TrendPoint] = []
    total_invested = ZERO
    previous_value = ZERO
    for index, (value_on, value, cash_flow, trend) in enumerate(ordered):
        total_invested += cash_flow
        net_gain = value - total_invested
        if index == 0:
            period_gain = value - cash_flow
        else:
            period_gain = value - (previous_value + cash_flow)
        period_base = previous_value if previous_value > ZERO else cash_flow
        points.append(
            TrendPoint(
                trend_id=trend.id,
                value_on=value_on,
                value=value,
                cash_flow=cash_flow,
                total_invested=total_invested,
                net_gain=net_gain,
                total_roi=ratio_percent(net_gain, total_invested),
                period_gain=period_gain,
                period_gain_percent=ratio_percent(period_gain, period_base),
            )
        )
        previous_value = value
    return points


def investment_stats(
    investment: Investment, trends: Iterable[InvestmentTrend]
) -> Optional[InvestmentStats]:
    points = analyze_trends(trend for trend in trends if trend.investment_id == investment.id)
    if not points:
        return None
    latest = points[-1]
    return InvestmentStats(
        investment_id=investment.id,
        latest_value=latest.value,
        last_date=latest.value_on,
        total_invested=latest.total_invested,
    )


def group_rollup(
    name: str,
    investments: Iterable[Investment],
    trends: Iterable[InvestmentTrend],
    valuator: Valuator,
    as_of: date,
) -> GroupStats:
    """Sum a group of investments in the reporting currency.

    Values and invested capital are converted per investment before being
    summed, and the group ROI is recomputed from the sums.
    """
    trends = list(trends)
    total_value = ZERO
    total_invested = ZERO
    members = []
    for investment in investments:
        stats = investment_stats(investment, trends)
        members.append(investment.id)
        if stats is None:
            continue
        rate = valuator.rate(investment.currency, as_of)
        total_value += stats.latest_value * rate
        total_invested += stats.total_invested * rate
    return GroupStats(
        name=name,
        currency=valuator.base_currency,
        total_value=total_value,
        total_invested=total_invested,
        investment_ids=tuple(members),
    )


def summarize_investments(
    investments: Iterable[Investment],
    trends: Iterable[InvestmentTrend],
    valuator: Valuator,
    as_of: date,
) -> InvestmentSummary:
    if investments is None or trends is None:
        raise ValueError("investments and trends must not be None.")
    investments = list(investments)
    trends = list(trends)
    retirement = [investment for investment in investments if investment.is_for_retirement]
    personal = [investment for investment in investments if not investment.is_for_retirement]
    return InvestmentSummary(
        as_of=as_of,
        currency=valuator.base_currency,
        investments=tuple(
            (investment, investment_stats(investment, trends)) for investment in investments
        ),
        retirement=group_rollup(RETIREMENT, retirement, trends, valuator, as_of),
        personal=group_rollup(PERSONAL, personal, trends, valuator, as_of),
        degraded_currencies=tuple(valuator.degraded_currencies),
    )


def account_portfolio(account: Account, transactions: Iterable[Transaction]) -> AccountPortfolio:
    """Balance versus invested capital of an investment account.

    Market-value adjustments move the balance but not the invested capital,
    so the difference between the two is the account's profit or loss.
    """
    own = sorted(
        (txn for txn in valid_transactions(transactions) if txn.account_id == account.id),
        key=transaction_date,
    )
    balance = ZERO
    invested = ZERO
    history = []
    for txn in own:
        amount = safe_amount(txn.amount_original)
        kind = normalize_kind(txn.kind)
        if is_expense_kind(kind):
            balance -= abs(amount)
            invested -= abs(amount)
        elif is_income_kind(kind):
            balance += abs(amount)
            invested += abs(amount)
        elif kind == "adjustment":
            balance += amount
        else:
            balance += amount
            invested += amount
        history.append(
            PortfolioPoint(
                occurred_on=transaction_date(txn),
                transaction_id=txn.id,
                balance=balance,
                invested=invested,
            )
        )
    return AccountPortfolio(
        account=account,
        balance=balance,
        invested=invested,
        history=tuple(history),
    )


def portfolio_sections(
    accounts: Iterable[Account],
    transactions: Iterable[Transaction],
    valuator: Valuator,
    as_of: date,
) -> dict[str, PortfolioSection]:
    transactions = list(transactions)
    sections = {}
    for kind in PORTFOLIO_KINDS:
        members = [
            account_portfolio(account, transactions)
            for account in accounts
            if normalize_kind(account.kind) == kind and account.is_active
        ]
        sections[kind] = PortfolioSection(
            name=kind,
            currency=valuator.base_currency,
            accounts=tuple(members),
            total_value=sum(
                (valuator.convert(item.balance, item.account.currency, as_of) for item in members),
                ZERO,
            ),
            total_invested=sum(
                (valuator.convert(item.invested, item.account.currency, as_of) for item in members),
                ZERO,
            ),
        )
    return sections


def reconcile_adjustment(
    account: Account,
    transactions: Iterable[Transaction],
    real_balance: Decimal,
    on: date,
) -> Decimal:
    """Adjustment needed so the ledger balance at ``on`` matches reality."""
    ledger_balance = running_balance(transactions, on, account_ids=[account.id])
    return (Decimal(str(real_balance)) - ledger_balance).quantize(CENT, rounding=ROUND_HALF_UP)


def _valid_trends(trends: Iterable[InvestmentTrend]):
    for trend in trends:
        value_on = parse_date(trend.value_on)
        value = ZERO if trend.value_original is None else safe_amount(trend.value_original)
        cash_flow = ZERO if trend.cash_flow is None else safe_amount(trend.cash_flow)
        if value_on is None or value is None or cash_flow is None:
            logger.debug("Skipping investment trend %s: malformed record", trend.id)
            continue
        yield value_on, value, cash_flow, trend
