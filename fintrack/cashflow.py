from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from fintrack.currency_conversion import Valuator
from fintrack.ledger import (
    LIQUIDITY,
    ZERO,
    Account,
    Category,
    Transaction,
    accounts_in_group,
    coerce_amount,
    is_expense_kind,
    is_opening_balance_marker,
    is_transfer_kind,
    normalize_kind,
    ratio_percent,
    safe_amount,
    signed_amount,
    transaction_date,
    valid_transactions,
    year_end,
)

INCOME_KIND = "income_personal"
FIXED_KIND = "expense_essential"
VARIABLE_KIND = "expense_personal"
UNCATEGORIZED = "Other"
GENERAL_SUBCATEGORY = "General"


@dataclass(frozen=True)
class MonthlyCashflow:
    month: int
    income: Decimal = ZERO
    fixed: Decimal = ZERO
    variable: Decimal = ZERO
    work: Decimal = ZERO

    @property
    def saved(self) -> Decimal:
        return self.income - self.fixed - self.variable


@dataclass(frozen=True)
class AnnualCashflow:
    year: int
    currency: str
    months: tuple[MonthlyCashflow, ...]
    income: Decimal
    fixed: Decimal
    variable: Decimal
    work: Decimal
    initial_liquidity: Decimal
    flow_to_invest: Decimal
    flow_to_pension: Decimal
    degraded_currencies: tuple[str, ...] = ()

    @property
    def saved(self) -> Decimal:
        return self.income - self.fixed - self.variable

    @property
    def savings_rate(self) -> Decimal:
        return ratio_percent(self.saved, self.income)

    @property
    def final_liquidity(self) -> Decimal:
        return self.initial_liquidity + self.saved - self.flow_to_invest - self.flow_to_pension


@dataclass(frozen=True)
class CategoryTotal:
    name: str
    total: Decimal
    subcategories: tuple[tuple[str, Decimal], ...] = ()


def analyze_cashflow(
    year: int,
    transactions: Iterable[Transaction],
    accounts: Iterable[Account],
    valuator: Valuator,
) -> AnnualCashflow:
    """Income/expense decomposition of the liquidity accounts for one year.

    Work and transfer kinds never count as personal cashflow. Postings that
    seed an account's opening balance are moved out of the flows and into
    the year's initial liquidity.
    """
    if transactions is None or accounts is None:
        raise ValueError("transactions and accounts must not be None.")
    accounts_by_id = {account.id: account for account in accounts}
    liquidity_ids = {
        account.id for account in accounts_in_group(accounts_by_id.values(), LIQUIDITY)
    }
    transactions = list(transactions)

    buckets = {
        month: {"income": ZERO, "fixed": ZERO, "variable": ZERO, "work": ZERO}
        for month in range(1, 13)
    }
    opening = ZERO
    flow_to_invest = ZERO
    flow_to_pension = ZERO
    for txn in valid_transactions(transactions, "amount_base"):
        if txn.account_id not in liquidity_ids:
            continue
        occurred_on = transaction_date(txn)
        if occurred_on.year != year:
            continue
        account = accounts_by_id[txn.account_id]
        value = _base_value(txn, account, valuator)

        if is_opening_balance_marker(txn.description):
            opening += value
            continue

        kind = normalize_kind(txn.kind)
        if value < ZERO and "invest" in kind:
            flow_to_invest += abs(value)
        elif value < ZERO and "pension" in kind:
            flow_to_pension += abs(value)

        bucket = buckets[occurred_on.month]
        if "work" in kind:
            bucket["work"] += value
        elif is_transfer_kind(kind):
            continue
        elif kind == INCOME_KIND:
            bucket["income"] += abs(value)
        elif kind == FIXED_KIND:
            bucket["fixed"] += abs(value)
        elif kind == VARIABLE_KIND:
            bucket["variable"] += abs(value)

    months = tuple(
        MonthlyCashflow(month=month, **totals) for month, totals in sorted(buckets.items())
    )
    initial_liquidity = (
        _liquidity_at(year_end(year - 1), transactions, accounts_by_id, liquidity_ids, valuator)
        + opening
    )
    return AnnualCashflow(
        year=year,
        currency=valuator.base_currency,
        months=months,
        income=sum((m.income for m in months), ZERO),
        fixed=sum((m.fixed for m in months), ZERO),
        variable=sum((m.variable for m in months), ZERO),
        work=sum((m.work for m in months), ZERO),
        initial_liquidity=initial_liquidity,
        flow_to_invest=flow_to_invest,
        flow_to_pension=flow_to_pension,
        degraded_currencies=tuple(valuator.degraded_currencies),
    )


def expenses_by_category(
    year: int,
    transactions: Iterable[Transaction],
    categories: Iterable[Category],
    month: Optional[int] = None,
) -> list[CategoryTotal]:
    if month is not None and not 1 <= month <= 12:
        raise ValueError("month must be between 1 and 12.")
    categories_by_id = {category.id: category for category in categories}

    totals: dict[str, dict[str, Decimal]] = {}
    for txn in valid_transactions(transactions, "amount_base"):
        kind = normalize_kind(txn.kind)
        if not is_expense_kind(kind) or "work" in kind:
            continue
        occurred_on = transaction_date(txn)
        if occurred_on.year != year or (month is not None and occurred_on.month != month):
            continue
        group_name, sub_name = _category_path(txn.category_id, categories_by_id)
        subs = totals.setdefault(group_name, {})
        subs[sub_name] = subs.get(sub_name, ZERO) + abs(coerce_amount(txn.amount_base))

    result = []
    for group_name, subs in totals.items():
        ordered_subs = sorted(subs.items(), key=lambda item: item[1], reverse=True)
        result.append(
            CategoryTotal(
                name=group_name,
                total=sum(subs.values(), ZERO),
                subcategories=tuple(ordered_subs),
            )
        )
    result.sort(key=lambda item: item.total, reverse=True)
    return result


def available_years(transactions: Iterable[Transaction], today: date) -> list[int]:
    years = {transaction_date(txn).year for txn in valid_transactions(transactions)}
    years.add(today.year)
    return sorted(years, reverse=True)


def _base_value(txn: Transaction, account: Account, valuator: Valuator) -> Decimal:
    base = signed_amount(txn, "amount_base")
    if base != ZERO:
        return base
    # Transfer legs carry no base amount; value them from the native amount.
    if safe_amount(txn.amount_original) in (None, ZERO):
        return ZERO
    return valuator.convert(signed_amount(txn), account.currency, transaction_date(txn))


def _liquidity_at(
    cutoff: date,
    transactions: Iterable[Transaction],
    accounts_by_id: Mapping[str, Account],
    liquidity_ids: set[str],
    valuator: Valuator,
) -> Decimal:
    native: dict[str, Decimal] = {}
    for txn in valid_transactions(transactions):
        if txn.account_id not in liquidity_ids or transaction_date(txn) > cutoff:
            continue
        native[txn.account_id] = native.get(txn.account_id, ZERO) + signed_amount(txn)
    return sum(
        (
            valuator.convert(balance, accounts_by_id[account_id].currency, cutoff)
            for account_id, balance in native.items()
        ),
        ZERO,
    )


def _category_path(
    category_id: str | None, categories_by_id: Mapping[str, Category]
) -> tuple[str, str]:
    category = categories_by_id.get(category_id) if category_id else None
    if category is None:
        return UNCATEGORIZED, GENERAL_SUBCATEGORY
    if category.parent_id:
        parent = categories_by_id.get(category.parent_id)
        if parent is None:
            return category.name, GENERAL_SUBCATEGORY
        return parent.name, category.name
    return category.name, GENERAL_SUBCATEGORY
