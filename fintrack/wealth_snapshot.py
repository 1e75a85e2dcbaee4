from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from fintrack.currency_conversion import Valuator
from fintrack.ledger import (
    LIQUIDITY,
    WEALTH,
    ZERO,
    Account,
    Transaction,
    account_group,
    balances_by_account,
    is_opening_balance_marker,
    signed_amount,
    transaction_date,
    valid_transactions,
    year_end,
)

NEGLIGIBLE_BALANCE = Decimal("0.01")


@dataclass(frozen=True)
class AccountValuation:
    account_id: str
    name: str
    currency: str
    group: Optional[str]
    native_balance: Decimal
    rate: Decimal
    value: Decimal


@dataclass(frozen=True)
class WealthSnapshot:
    as_of: date
    currency: str
    accounts: tuple[AccountValuation, ...]
    liquidity: Decimal
    wealth: Decimal
    degraded_currencies: tuple[str, ...] = ()

    @property
    def total(self) -> Decimal:
        return self.liquidity + self.wealth


@dataclass(frozen=True)
class AccountEvolution:
    account_id: str
    name: str
    currency: str
    group: Optional[str]
    start: Decimal
    end: Decimal
    from_opening_balance: bool = False

    @property
    def delta(self) -> Decimal:
        return self.end - self.start


@dataclass(frozen=True)
class WealthEvolution:
    year: int
    currency: str
    accounts: tuple[AccountEvolution, ...]
    liquidity_start: Decimal
    liquidity_end: Decimal
    wealth_start: Decimal
    wealth_end: Decimal
    degraded_currencies: tuple[str, ...] = ()

    @property
    def liquidity_delta(self) -> Decimal:
        return self.liquidity_end - self.liquidity_start

    @property
    def wealth_delta(self) -> Decimal:
        return self.wealth_end - self.wealth_start


@dataclass(frozen=True)
class AccountBalance:
    account: Account
    balance: Decimal


@dataclass(frozen=True)
class AccountBalances:
    as_of: date
    currency: str
    active: tuple[AccountBalance, ...]
    inactive: tuple[AccountBalance, ...]
    active_total: Decimal
    spendable_total: Decimal
    degraded_currencies: tuple[str, ...] = ()


def snapshot_as_of(
    cutoff: date,
    accounts: Iterable[Account],
    transactions: Iterable[Transaction],
    valuator: Valuator,
) -> WealthSnapshot:
    """Point-in-time valuation of every account.

    Native balances up to ``cutoff`` are converted at the rate of ``cutoff``
    itself, not at the transaction dates.
    """
    if accounts is None or transactions is None:
        raise ValueError("accounts and transactions must not be None.")
    balances = balances_by_account(transactions, cutoff)

    valuations = []
    totals = {LIQUIDITY: ZERO, WEALTH: ZERO}
    for account in accounts:
        native = balances.get(account.id, ZERO)
        rate = valuator.rate(account.currency, cutoff)
        value = native * rate
        group = account_group(account)
        if group is not None:
            totals[group] += value
        valuations.append(
            AccountValuation(
                account_id=account.id,
                name=account.name,
                currency=account.currency,
                group=group,
                native_balance=native,
                rate=rate,
                value=value,
            )
        )

    return WealthSnapshot(
        as_of=cutoff,
        currency=valuator.base_currency,
        accounts=tuple(valuations),
        liquidity=totals[LIQUIDITY],
        wealth=totals[WEALTH],
        degraded_currencies=tuple(valuator.degraded_currencies),
    )


def year_end_snapshot(
    year: int,
    accounts: Iterable[Account],
    transactions: Iterable[Transaction],
    valuator: Valuator,
) -> WealthSnapshot:
    return snapshot_as_of(year_end(year), accounts, transactions, valuator)


def wealth_evolution(
    year: int,
    accounts: Iterable[Account],
    transactions: Iterable[Transaction],
    valuator: Valuator,
) -> WealthEvolution:
    """Year-over-year change of every account, valued at both year ends.

    An account without any posting before the year has no prior snapshot;
    its start value comes from the year's opening-balance postings instead,
    so seeding the ledger never shows up as a gain.
    """
    if accounts is None or transactions is None:
        raise ValueError("accounts and transactions must not be None.")
    transactions = list(valid_transactions(transactions))
    prior_cutoff = year_end(year - 1)
    cutoff = year_end(year)
    prior_balances = balances_by_account(transactions, prior_cutoff)
    end_balances = balances_by_account(transactions, cutoff)

    with_history = {txn.account_id for txn in transactions if transaction_date(txn) <= prior_cutoff}
    opening_postings: dict[str, list[Transaction]] = {}
    for txn in transactions:
        if transaction_date(txn).year == year and is_opening_balance_marker(txn.description):
            opening_postings.setdefault(txn.account_id, []).append(txn)

    rows = []
    totals = {
        LIQUIDITY: {"start": ZERO, "end": ZERO},
        WEALTH: {"start": ZERO, "end": ZERO},
    }
    for account in accounts:
        from_opening = account.id not in with_history
        if from_opening:
            start = sum(
                (
                    valuator.convert(signed_amount(txn), account.currency, transaction_date(txn))
                    for txn in opening_postings.get(account.id, ())
                ),
                ZERO,
            )
        else:
            start = valuator.convert(prior_balances.get(account.id, ZERO), account.currency, prior_cutoff)
        end = valuator.convert(end_balances.get(account.id, ZERO), account.currency, cutoff)
        if abs(start) < NEGLIGIBLE_BALANCE and abs(end) < NEGLIGIBLE_BALANCE:
            continue

        group = account_group(account)
        if group is not None:
            totals[group]["start"] += start
            totals[group]["end"] += end
        rows.append(
            AccountEvolution(
                account_id=account.id,
                name=account.name,
                currency=account.currency,
                group=group,
                start=start,
                end=end,
                from_opening_balance=from_opening,
            )
        )

    return WealthEvolution(
        year=year,
        currency=valuator.base_currency,
        accounts=tuple(rows),
        liquidity_start=totals[LIQUIDITY]["start"],
        liquidity_end=totals[LIQUIDITY]["end"],
        wealth_start=totals[WEALTH]["start"],
        wealth_end=totals[WEALTH]["end"],
        degraded_currencies=tuple(valuator.degraded_currencies),
    )


def spendable_wealth(
    as_of: date,
    accounts: Iterable[Account],
    transactions: Iterable[Transaction],
    valuator: Valuator,
) -> Decimal:
    balances = balances_by_account(transactions, as_of)
    return sum(
        (
            valuator.convert(balances.get(account.id, ZERO), account.currency, as_of)
            for account in accounts
            if not account.exclude_from_overview
        ),
        ZERO,
    )


def account_balances(
    as_of: date,
    accounts: Iterable[Account],
    transactions: Iterable[Transaction],
    valuator: Valuator,
) -> AccountBalances:
    accounts = list(accounts)
    transactions = list(transactions)
    balances = balances_by_account(transactions, as_of)
    rows = sorted(
        (AccountBalance(account=account, balance=balances.get(account.id, ZERO)) for account in accounts),
        key=lambda row: row.account.name.lower(),
    )
    active = tuple(row for row in rows if row.account.is_active)
    inactive = tuple(row for row in rows if not row.account.is_active)
    active_total = sum(
        (valuator.convert(row.balance, row.account.currency, as_of) for row in active),
        ZERO,
    )
    return AccountBalances(
        as_of=as_of,
        currency=valuator.base_currency,
        active=active,
        inactive=inactive,
        active_total=active_total,
        spendable_total=spendable_wealth(as_of, accounts, transactions, valuator),
        degraded_currencies=tuple(valuator.degraded_currencies),
    )
