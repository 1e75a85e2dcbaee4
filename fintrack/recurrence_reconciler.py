from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from fintrack.currency_conversion import Valuator
from fintrack.ledger import (
    ZERO,
    Account,
    RecurringObligation,
    Transaction,
    coerce_amount,
    is_transfer_kind,
    parse_date,
    safe_amount,
    transaction_date,
    valid_transactions,
)

EXPENSE_BUCKET = "expense"
TRANSFER_BUCKET = "transfer"

PAID = "paid"
PENDING = "pending"
OVERDUE = "overdue"
READY = "ready"
AWAITING_FUNDS = "awaiting-funds"

EXPENSE_STATES = {PAID, READY, AWAITING_FUNDS, PENDING, OVERDUE}
TRANSFER_STATES = {PAID, PENDING, OVERDUE}


@dataclass(frozen=True)
class ObligationInstance:
    obligation: RecurringObligation
    expected_on: date
    status: str
    readiness: Optional[str]
    payment: Optional[Transaction] = None

    @property
    def is_transfer(self) -> bool:
        return is_transfer_kind(self.obligation.kind)

    @property
    def state(self) -> str:
        if self.status == PAID:
            return PAID
        if self.readiness == READY:
            return READY
        if self.status == OVERDUE:
            return OVERDUE
        if self.is_transfer:
            return PENDING
        return AWAITING_FUNDS

    @property
    def amount(self) -> Decimal:
        if self.payment is not None:
            return coerce_amount(self.payment.amount_original)
        return coerce_amount(self.obligation.amount_original)


@dataclass(frozen=True)
class ReconciliationYear:
    year: int
    currency: str
    names: tuple[str, ...]
    grid: Dict[str, Tuple[Optional[ObligationInstance], ...]]
    projected: Decimal
    paid: Decimal
    degraded_currencies: tuple[str, ...] = ()

    def instances(self) -> List[ObligationInstance]:
        return [cell for name in self.names for cell in self.grid[name] if cell is not None]


def kind_bucket(kind: str | None) -> str:
    return TRANSFER_BUCKET if is_transfer_kind(kind) else EXPENSE_BUCKET


def index_obligations(
    obligations: Iterable[RecurringObligation], year: int
) -> Dict[Tuple[str, int], RecurringObligation]:
    index: Dict[Tuple[str, int], RecurringObligation] = {}
    for obligation in obligations:
        expected_on = parse_date(obligation.occurred_on)
        if expected_on is None or expected_on.year != year:
            continue
        index.setdefault((obligation.name, expected_on.month), obligation)
    return index


def index_payments(
    transactions: Iterable[Transaction],
) -> Dict[Tuple[str, str], Transaction]:
    index: Dict[Tuple[str, str], Transaction] = {}
    linked = (txn for txn in valid_transactions(transactions) if txn.essential_transaction_id)
    for txn in sorted(linked, key=transaction_date):
        index.setdefault((txn.essential_transaction_id, kind_bucket(txn.kind)), txn)
    return index


def classify(
    obligation: RecurringObligation,
    payments: Dict[Tuple[str, str], Transaction],
    today: date,
) -> ObligationInstance:
    expected_on = parse_date(obligation.occurred_on)
    if expected_on is None:
        raise ValueError(f"Obligation {obligation.id} has no valid expected date.")
    payment = payments.get((obligation.id, kind_bucket(obligation.kind)))
    if payment is not None:
        status = PAID
    elif expected_on < today:
        status = OVERDUE
    else:
        status = PENDING

    readiness = None
    if not is_transfer_kind(obligation.kind):
        if payment is not None:
            readiness = PAID
        elif obligation.is_ready:
            readiness = READY
        else:
            readiness = AWAITING_FUNDS
    return ObligationInstance(
        obligation=obligation,
        expected_on=expected_on,
        status=status,
        readiness=readiness,
        payment=payment,
    )


def reconcile_year(
    year: int,
    obligations: Iterable[RecurringObligation],
    transactions: Iterable[Transaction],
    today: date,
    valuator: Valuator,
    accounts: Iterable[Account] = (),
) -> ReconciliationYear:
    """Match a year's planned obligations to the postings that paid them.

    Matching goes through the posting's back-reference to the obligation
    row, never through name or amount. Payments without a base amount are
    converted from their native amount, in the currency of the paying
    account, or of the obligation when the account is unknown.
    """
    if obligations is None or transactions is None:
        raise ValueError("obligations and transactions must not be None.")
    obligations_index = index_obligations(obligations, year)
    payments = index_payments(transactions)
    accounts_by_id = {account.id: account for account in accounts}

    names = tuple(sorted({name for name, _ in obligations_index}))
    grid: Dict[str, Tuple[Optional[ObligationInstance], ...]] = {}
    projected = ZERO
    paid = ZERO
    for name in names:
        cells: List[Optional[ObligationInstance]] = []
        for month in range(1, 13):
            obligation = obligations_index.get((name, month))
            if obligation is None:
                cells.append(None)
                continue
            instance = classify(obligation, payments, today)
            cells.append(instance)
            if obligation.is_active and safe_amount(obligation.amount_original) is not None:
                planned = valuator.convert(
                    obligation.amount_original, obligation.currency, instance.expected_on
                )
                projected += abs(planned)
            if instance.payment is not None:
                account = accounts_by_id.get(instance.payment.account_id)
                currency = account.currency if account is not None else obligation.currency
                paid += abs(_paid_amount(instance.payment, currency, valuator))
        grid[name] = tuple(cells)

    return ReconciliationYear(
        year=year,
        currency=valuator.base_currency,
        names=names,
        grid=grid,
        projected=projected,
        paid=paid,
        degraded_currencies=tuple(valuator.degraded_currencies),
    )


def payment_draft(obligation: RecurringObligation) -> dict:
    """Prefilled fields for recording the payment of an obligation."""
    return {
        "occurred_on": parse_date(obligation.occurred_on),
        "amount_original": abs(coerce_amount(obligation.amount_original)),
        "description": obligation.description or "",
        "category_id": obligation.category_id,
        "kind": obligation.kind,
        "essential_transaction_id": obligation.id,
        "tag": "",
    }


def _paid_amount(payment: Transaction, currency: str, valuator: Valuator) -> Decimal:
    base = safe_amount(payment.amount_base)
    if base:
        return base
    native = safe_amount(payment.amount_original)
    if not native:
        return ZERO
    return valuator.convert(native, currency, transaction_date(payment))
