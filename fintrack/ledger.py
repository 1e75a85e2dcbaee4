from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import logging
from typing import Iterable, Iterator, Mapping, Optional

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

LIQUIDITY = "liquidity"
WEALTH = "wealth"
LIQUIDITY_KINDS = frozenset({"cash", "pocket"})
WEALTH_KINDS = frozenset({"invest", "pension"})
ACCOUNT_KINDS = LIQUIDITY_KINDS | WEALTH_KINDS

OPENING_BALANCE_MARKERS = ("saldo iniziale", "apertura")


@dataclass(frozen=True)
class Account:
    id: str
    name: str
    currency: str
    kind: str
    status: str = "active"
    exclude_from_overview: bool = False

    @property
    def is_active(self) -> bool:
        return self.status.strip().lower() == "active"


@dataclass(frozen=True)
class Transaction:
    id: str
    account_id: str
    occurred_on: date
    kind: str
    amount_original: Decimal
    amount_base: Decimal = ZERO
    category_id: Optional[str] = None
    tag: Optional[str] = None
    description: Optional[str] = None
    essential_transaction_id: Optional[str] = None


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    parent_id: Optional[str] = None


@dataclass(frozen=True)
class RecurringObligation:
    id: str
    name: str
    occurred_on: date
    kind: str
    amount_original: Decimal
    currency: str
    category_id: Optional[str] = None
    is_ready: bool = False
    is_active: bool = True
    description: Optional[str] = None


@dataclass(frozen=True)
class Investment:
    id: str
    name: str
    currency: str
    is_for_retirement: bool = False
    note: Optional[str] = None


@dataclass(frozen=True)
class InvestmentTrend:
    id: str
    investment_id: str
    value_on: date
    value_original: Decimal
    cash_flow: Decimal = ZERO


@dataclass(frozen=True)
class LedgerSnapshot:
    """Immutable bundle of every collection the engine reads."""

    accounts: tuple[Account, ...] = ()
    transactions: tuple[Transaction, ...] = ()
    categories: tuple[Category, ...] = ()
    obligations: tuple[RecurringObligation, ...] = ()
    investments: tuple[Investment, ...] = ()
    investment_trends: tuple[InvestmentTrend, ...] = ()
    accounts_by_id: Mapping[str, Account] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "accounts_by_id", {account.id: account for account in self.accounts}
        )


def normalize_kind(value: str | None) -> str:
    return (value or "").strip().lower()


def is_expense_kind(kind: str | None) -> bool:
    return normalize_kind(kind).startswith("expense")


def is_income_kind(kind: str | None) -> bool:
    return normalize_kind(kind).startswith("income")


def is_transfer_kind(kind: str | None) -> bool:
    return normalize_kind(kind).startswith("transfer")


def is_opening_balance_marker(description: str | None) -> bool:
    """Return True for the ledger-seeding postings of an account.

    Opening balances are recognised by their free-text description only,
    matching any of ``OPENING_BALANCE_MARKERS`` case-insensitively.
    """
    if not description:
        return False
    lowered = description.lower()
    return any(marker in lowered for marker in OPENING_BALANCE_MARKERS)


def signed_amount(transaction: Transaction, field_name: str = "amount_original") -> Decimal:
    """Amount of a transaction with the ledger sign law applied.

    Expenses never increase a balance and incomes never decrease it, whatever
    sign was stored. Transfers and adjustments keep their stored sign.
    """
    amount = coerce_amount(getattr(transaction, field_name))
    if is_expense_kind(transaction.kind):
        return -abs(amount)
    if is_income_kind(transaction.kind):
        return abs(amount)
    return amount


def running_balance(
    transactions: Iterable[Transaction],
    until: date,
    account_ids: Iterable[str] | None = None,
    field_name: str = "amount_original",
) -> Decimal:
    if transactions is None:
        raise ValueError("transactions must not be None.")
    allowed = None if account_ids is None else set(account_ids)
    total = ZERO
    for txn in valid_transactions(transactions, field_name):
        if allowed is not None and txn.account_id not in allowed:
            continue
        if transaction_date(txn) > until:
            continue
        total += signed_amount(txn, field_name)
    return total


def balances_by_account(
    transactions: Iterable[Transaction],
    until: date,
    field_name: str = "amount_original",
) -> dict[str, Decimal]:
    if transactions is None:
        raise ValueError("transactions must not be None.")
    balances: dict[str, Decimal] = {}
    for txn in valid_transactions(transactions, field_name):
        if transaction_date(txn) > until:
            continue
        balances[txn.account_id] = balances.get(txn.account_id, ZERO) + signed_amount(
            txn, field_name
        )
    return balances


def account_group(account: Account | None) -> str | None:
    if account is None:
        return None
    kind = normalize_kind(account.kind)
    if kind in LIQUIDITY_KINDS:
        return LIQUIDITY
    if kind in WEALTH_KINDS:
        return WEALTH
    return None


def accounts_in_group(accounts: Iterable[Account], group: str) -> list[Account]:
    if group not in {LIQUIDITY, WEALTH}:
        raise ValueError(f"Unsupported account group: {group}")
    return [account for account in accounts if account_group(account) == group]


def valid_transactions(
    transactions: Iterable[Transaction],
    field_name: str = "amount_original",
) -> Iterator[Transaction]:
    """Yield transactions whose date and amount are usable.

    A record with an unparseable date or a non-finite amount is skipped so a
    single bad entry never blanks an aggregate.
    """
    for txn in transactions:
        if parse_date(txn.occurred_on) is None:
            logger.debug("Skipping transaction %s: invalid date %r", txn.id, txn.occurred_on)
            continue
        if safe_amount(getattr(txn, field_name)) is None:
            logger.debug("Skipping transaction %s: invalid %s", txn.id, field_name)
            continue
        yield txn


def transaction_date(transaction: Transaction) -> date:
    parsed = parse_date(transaction.occurred_on)
    if parsed is None:
        raise ValueError(f"Transaction {transaction.id} has no valid date.")
    return parsed


def parse_date(value: date | str | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def safe_amount(value: Decimal | int | float | str | None) -> Decimal | None:
    if value is None:
        return None
    try:
        amount = coerce_amount(value)
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def coerce_amount(amount: Decimal | int | float | str | None) -> Decimal:
    if amount is None:
        return ZERO
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def ratio_percent(numerator: Decimal, denominator: Decimal) -> Decimal:
    if denominator == ZERO:
        return ZERO
    return numerator / denominator * HUNDRED


def year_end(year: int) -> date:
    return date(year, 12, 31)
