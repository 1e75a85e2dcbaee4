import asyncio
import logging
import os
from datetime import date
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from fintrack.cashflow import analyze_cashflow, available_years, expenses_by_category
from fintrack.currency_conversion import (
    CompositeRateProvider,
    FrankfurterRateProvider,
    StaticRateProvider,
    Valuator,
    normalize_currency,
)
from fintrack.investment_analysis import (
    account_portfolio,
    analyze_trends,
    summarize_investments,
)
from fintrack.ledger import (
    WEALTH_KINDS,
    LedgerSnapshot,
    is_opening_balance_marker,
    normalize_kind,
    transaction_date,
    valid_transactions,
    year_end,
)
from fintrack.ledger_store import load_snapshot, metadata
from fintrack.recurrence_reconciler import reconcile_year
from fintrack.wealth_snapshot import (
    account_balances,
    snapshot_as_of,
    wealth_evolution,
)

logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./fintrack.db")
engine_options = {}
if database_url.startswith("sqlite"):
    engine_options["connect_args"] = {"check_same_thread": False}
    if database_url in {"sqlite://", "sqlite:///:memory:"}:
        engine_options["poolclass"] = StaticPool

engine = create_engine(database_url, **engine_options)


def get_base_currency() -> str:
    raw = os.getenv("BASE_CURRENCY", "CHF")
    try:
        return normalize_currency(raw)
    except ValueError:
        logger.warning("Invalid BASE_CURRENCY %r, falling back to CHF.", raw)
        return "CHF"


BASE_CURRENCY = get_base_currency()
FX_PROVIDER = CompositeRateProvider(
    primary=FrankfurterRateProvider(
        base_url=os.getenv("RATE_API_URL", "https://api.frankfurter.dev/v1")
    ),
    fallback=StaticRateProvider(),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class AccountBalanceEntry(BaseModel):
    id: str
    name: str
    currency: str
    kind: str
    status: str
    balance: Decimal


class AccountBalancesResponse(BaseModel):
    as_of: date
    currency: str
    active: list[AccountBalanceEntry]
    inactive: list[AccountBalanceEntry]
    active_total: Decimal
    spendable_total: Decimal
    degraded_currencies: list[str]


class PortfolioPointResponse(BaseModel):
    occurred_on: date
    transaction_id: str
    balance: Decimal
    invested: Decimal


class AccountPortfolioResponse(BaseModel):
    account_id: str
    name: str
    currency: str
    balance: Decimal
    invested: Decimal
    pnl: Decimal
    roi: Decimal
    history: list[PortfolioPointResponse]


class MonthlyCashflowResponse(BaseModel):
    month: int
    income: Decimal
    fixed: Decimal
    variable: Decimal
    saved: Decimal
    work: Decimal


class CashflowResponse(BaseModel):
    year: int
    currency: str
    months: list[MonthlyCashflowResponse]
    income: Decimal
    fixed: Decimal
    variable: Decimal
    saved: Decimal
    work: Decimal
    savings_rate: Decimal
    initial_liquidity: Decimal
    flow_to_invest: Decimal
    flow_to_pension: Decimal
    final_liquidity: Decimal
    available_years: list[int]
    degraded_currencies: list[str]


class SubcategoryTotalResponse(BaseModel):
    name: str
    total: Decimal


class CategoryTotalResponse(BaseModel):
    name: str
    total: Decimal
    subcategories: list[SubcategoryTotalResponse]


class AccountValuationResponse(BaseModel):
    account_id: str
    name: str
    currency: str
    group: str | None = None
    native_balance: Decimal
    rate: Decimal
    value: Decimal


class WealthSnapshotResponse(BaseModel):
    as_of: date
    currency: str
    accounts: list[AccountValuationResponse]
    liquidity: Decimal
    wealth: Decimal
    total: Decimal
    degraded_currencies: list[str]


class AccountEvolutionResponse(BaseModel):
    account_id: str
    name: str
    currency: str
    group: str | None = None
    start: Decimal
    end: Decimal
    delta: Decimal
    from_opening_balance: bool


class WealthEvolutionResponse(BaseModel):
    year: int
    currency: str
    accounts: list[AccountEvolutionResponse]
    liquidity_start: Decimal
    liquidity_end: Decimal
    liquidity_delta: Decimal
    wealth_start: Decimal
    wealth_end: Decimal
    wealth_delta: Decimal
    degraded_currencies: list[str]


class InvestmentStatsResponse(BaseModel):
    id: str
    name: str
    currency: str
    is_for_retirement: bool
    latest_value: Decimal | None = None
    last_date: date | None = None
    total_invested: Decimal | None = None
    net_gain: Decimal | None = None
    roi: Decimal | None = None


class GroupStatsResponse(BaseModel):
    name: str
    currency: str
    total_value: Decimal
    total_invested: Decimal
    net_gain: Decimal
    roi: Decimal


class InvestmentSummaryResponse(BaseModel):
    as_of: date
    currency: str
    investments: list[InvestmentStatsResponse]
    retirement: GroupStatsResponse
    personal: GroupStatsResponse
    degraded_currencies: list[str]


class TrendPointResponse(BaseModel):
    id: str
    value_on: date
    value: Decimal
    cash_flow: Decimal
    total_invested: Decimal
    net_gain: Decimal
    total_roi: Decimal
    period_gain: Decimal
    period_gain_percent: Decimal


class ObligationInstanceResponse(BaseModel):
    id: str
    name: str
    kind: str
    expected_on: date
    status: str
    readiness: str | None = None
    state: str
    amount: Decimal
    planned_amount: Decimal
    currency: str
    payment_id: str | None = None


class RecurrenceRowResponse(BaseModel):
    name: str
    months: list[ObligationInstanceResponse | None]


class RecurrencesResponse(BaseModel):
    year: int
    currency: str
    rows: list[RecurrenceRowResponse]
    projected: Decimal
    paid: Decimal
    degraded_currencies: list[str]


def get_user_id(x_user_id: str | None) -> str:
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    return x_user_id.strip()


def fetch_snapshot(user_id: str) -> LedgerSnapshot:
    with engine.begin() as conn:
        return load_snapshot(conn, user_id)


def new_valuator() -> Valuator:
    return Valuator(FX_PROVIDER, BASE_CURRENCY)


def resolve_year(year: int | None) -> int:
    return year if year is not None else date.today().year


def evolution_rate_requests(snapshot: LedgerSnapshot, year: int) -> list[tuple[str, date]]:
    """Every (currency, date) rate a wealth evolution of ``year`` looks up."""
    requests = [
        (account.currency, cutoff)
        for account in snapshot.accounts
        for cutoff in (year_end(year - 1), year_end(year))
    ]
    for txn in valid_transactions(snapshot.transactions):
        account = snapshot.accounts_by_id.get(txn.account_id)
        occurred_on = transaction_date(txn)
        if account is not None and occurred_on.year == year and is_opening_balance_marker(
            txn.description
        ):
            requests.append((account.currency, occurred_on))
    return requests


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/accounts/balances", response_model=AccountBalancesResponse)
def get_account_balances(
    as_of: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AccountBalancesResponse:
    user_id = get_user_id(x_user_id)
    as_of = as_of or date.today()
    snapshot = fetch_snapshot(user_id)
    result = account_balances(as_of, snapshot.accounts, snapshot.transactions, new_valuator())

    def entry(row) -> AccountBalanceEntry:
        return AccountBalanceEntry(
            id=row.account.id,
            name=row.account.name,
            currency=row.account.currency,
            kind=row.account.kind,
            status=row.account.status,
            balance=row.balance,
        )

    return AccountBalancesResponse(
        as_of=result.as_of,
        currency=result.currency,
        active=[entry(row) for row in result.active],
        inactive=[entry(row) for row in result.inactive],
        active_total=result.active_total,
        spendable_total=result.spendable_total,
        degraded_currencies=list(result.degraded_currencies),
    )


@app.get("/accounts/{account_id}/portfolio", response_model=AccountPortfolioResponse)
def get_account_portfolio(
    account_id: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AccountPortfolioResponse:
    user_id = get_user_id(x_user_id)
    snapshot = fetch_snapshot(user_id)
    account = snapshot.accounts_by_id.get(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found.")
    if normalize_kind(account.kind) not in WEALTH_KINDS:
        raise HTTPException(status_code=400, detail="Account is not an investment account.")

    portfolio = account_portfolio(account, snapshot.transactions)
    return AccountPortfolioResponse(
        account_id=account.id,
        name=account.name,
        currency=account.currency,
        balance=portfolio.balance,
        invested=portfolio.invested,
        pnl=portfolio.pnl,
        roi=portfolio.roi,
        history=[
            PortfolioPointResponse(
                occurred_on=point.occurred_on,
                transaction_id=point.transaction_id,
                balance=point.balance,
                invested=point.invested,
            )
            for point in portfolio.history
        ],
    )


@app.get("/reports/cashflow", response_model=CashflowResponse)
def get_cashflow(
    year: int | None = Query(None, ge=1901, le=9999),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CashflowResponse:
    user_id = get_user_id(x_user_id)
    target_year = resolve_year(year)
    snapshot = fetch_snapshot(user_id)
    result = analyze_cashflow(target_year, snapshot.transactions, snapshot.accounts, new_valuator())
    return CashflowResponse(
        year=result.year,
        currency=result.currency,
        months=[
            MonthlyCashflowResponse(
                month=month.month,
                income=month.income,
                fixed=month.fixed,
                variable=month.variable,
                saved=month.saved,
                work=month.work,
            )
            for month in result.months
        ],
        income=result.income,
        fixed=result.fixed,
        variable=result.variable,
        saved=result.saved,
        work=result.work,
        savings_rate=result.savings_rate,
        initial_liquidity=result.initial_liquidity,
        flow_to_invest=result.flow_to_invest,
        flow_to_pension=result.flow_to_pension,
        final_liquidity=result.final_liquidity,
        available_years=available_years(snapshot.transactions, date.today()),
        degraded_currencies=list(result.degraded_currencies),
    )


@app.get("/reports/expenses-by-category", response_model=list[CategoryTotalResponse])
def get_expenses_by_category(
    year: int | None = Query(None, ge=1901, le=9999),
    month: int | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryTotalResponse]:
    user_id = get_user_id(x_user_id)
    snapshot = fetch_snapshot(user_id)
    try:
        totals = expenses_by_category(
            resolve_year(year), snapshot.transactions, snapshot.categories, month=month
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [
        CategoryTotalResponse(
            name=item.name,
            total=item.total,
            subcategories=[
                SubcategoryTotalResponse(name=name, total=total)
                for name, total in item.subcategories
            ],
        )
        for item in totals
    ]


@app.get("/reports/wealth-snapshot", response_model=WealthSnapshotResponse)
async def get_wealth_snapshot(
    year: int | None = Query(None, ge=1901, le=9999),
    as_of: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> WealthSnapshotResponse:
    user_id = get_user_id(x_user_id)
    cutoff = as_of or year_end(resolve_year(year))
    snapshot = await asyncio.to_thread(fetch_snapshot, user_id)
    valuator = new_valuator()
    await valuator.prefetch((account.currency, cutoff) for account in snapshot.accounts)
    result = await asyncio.to_thread(
        snapshot_as_of, cutoff, snapshot.accounts, snapshot.transactions, valuator
    )
    return WealthSnapshotResponse(
        as_of=result.as_of,
        currency=result.currency,
        accounts=[
            AccountValuationResponse(
                account_id=item.account_id,
                name=item.name,
                currency=item.currency,
                group=item.group,
                native_balance=item.native_balance,
                rate=item.rate,
                value=item.value,
            )
            for item in result.accounts
        ],
        liquidity=result.liquidity,
        wealth=result.wealth,
        total=result.total,
        degraded_currencies=list(result.degraded_currencies),
    )


@app.get("/reports/wealth-evolution", response_model=WealthEvolutionResponse)
async def get_wealth_evolution(
    year: int | None = Query(None, ge=1901, le=9999),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> WealthEvolutionResponse:
    user_id = get_user_id(x_user_id)
    target_year = resolve_year(year)
    snapshot = await asyncio.to_thread(fetch_snapshot, user_id)
    valuator = new_valuator()
    await valuator.prefetch(evolution_rate_requests(snapshot, target_year))
    result = await asyncio.to_thread(
        wealth_evolution, target_year, snapshot.accounts, snapshot.transactions, valuator
    )
    return WealthEvolutionResponse(
        year=result.year,
        currency=result.currency,
        accounts=[
            AccountEvolutionResponse(
                account_id=item.account_id,
                name=item.name,
                currency=item.currency,
                group=item.group,
                start=item.start,
                end=item.end,
                delta=item.delta,
                from_opening_balance=item.from_opening_balance,
            )
            for item in result.accounts
        ],
        liquidity_start=result.liquidity_start,
        liquidity_end=result.liquidity_end,
        liquidity_delta=result.liquidity_delta,
        wealth_start=result.wealth_start,
        wealth_end=result.wealth_end,
        wealth_delta=result.wealth_delta,
        degraded_currencies=list(result.degraded_currencies),
    )


@app.get("/investments/summary", response_model=InvestmentSummaryResponse)
def get_investment_summary(
    as_of: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InvestmentSummaryResponse:
    user_id = get_user_id(x_user_id)
    snapshot = fetch_snapshot(user_id)
    result = summarize_investments(
        snapshot.investments,
        snapshot.investment_trends,
        new_valuator(),
        as_of or date.today(),
    )

    def group(stats) -> GroupStatsResponse:
        return GroupStatsResponse(
            name=stats.name,
            currency=stats.currency,
            total_value=stats.total_value,
            total_invested=stats.total_invested,
            net_gain=stats.net_gain,
            roi=stats.roi,
        )

    return InvestmentSummaryResponse(
        as_of=result.as_of,
        currency=result.currency,
        investments=[
            InvestmentStatsResponse(
                id=investment.id,
                name=investment.name,
                currency=investment.currency,
                is_for_retirement=investment.is_for_retirement,
                latest_value=stats.latest_value if stats else None,
                last_date=stats.last_date if stats else None,
                total_invested=stats.total_invested if stats else None,
                net_gain=stats.net_gain if stats else None,
                roi=stats.roi if stats else None,
            )
            for investment, stats in result.investments
        ],
        retirement=group(result.retirement),
        personal=group(result.personal),
        degraded_currencies=list(result.degraded_currencies),
    )


@app.get("/investments/{investment_id}/trends", response_model=list[TrendPointResponse])
def get_investment_trends(
    investment_id: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TrendPointResponse]:
    user_id = get_user_id(x_user_id)
    snapshot = fetch_snapshot(user_id)
    if not any(investment.id == investment_id for investment in snapshot.investments):
        raise HTTPException(status_code=404, detail="Investment not found.")

    points = analyze_trends(
        trend for trend in snapshot.investment_trends if trend.investment_id == investment_id
    )
    return [
        TrendPointResponse(
            id=point.trend_id,
            value_on=point.value_on,
            value=point.value,
            cash_flow=point.cash_flow,
            total_invested=point.total_invested,
            net_gain=point.net_gain,
            total_roi=point.total_roi,
            period_gain=point.period_gain,
            period_gain_percent=point.period_gain_percent,
        )
        for point in points
    ]


@app.get("/recurrences", response_model=RecurrencesResponse)
def get_recurrences(
    year: int | None = Query(None, ge=1901, le=9999),
    today: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurrencesResponse:
    user_id = get_user_id(x_user_id)
    snapshot = fetch_snapshot(user_id)
    result = reconcile_year(
        resolve_year(year),
        snapshot.obligations,
        snapshot.transactions,
        today or date.today(),
        new_valuator(),
        accounts=snapshot.accounts,
    )

    def cell(instance) -> ObligationInstanceResponse | None:
        if instance is None:
            return None
        obligation = instance.obligation
        return ObligationInstanceResponse(
            id=obligation.id,
            name=obligation.name,
            kind=obligation.kind,
            expected_on=instance.expected_on,
            status=instance.status,
            readiness=instance.readiness,
            state=instance.state,
            amount=instance.amount,
            planned_amount=obligation.amount_original,
            currency=obligation.currency,
            payment_id=instance.payment.id if instance.payment else None,
        )

    return RecurrencesResponse(
        year=result.year,
        currency=result.currency,
        rows=[
            RecurrenceRowResponse(name=name, months=[cell(item) for item in result.grid[name]])
            for name in result.names
        ],
        projected=result.projected,
        paid=result.paid,
        degraded_currencies=list(result.degraded_currencies),
    )
