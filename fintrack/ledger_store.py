from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    ForeignKey,
    MetaData,
    Numeric,
    String,
    Table,
    select,
)
from sqlalchemy.engine import Connection

from fintrack.ledger import (
    ZERO,
    Account,
    Category,
    Investment,
    InvestmentTrend,
    LedgerSnapshot,
    RecurringObligation,
    Transaction,
)

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("currency_code", String(3), nullable=False),
    Column("kind", String(20), nullable=False),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("exclude_from_overview", Boolean, nullable=False, server_default="0"),
)

categories = Table(
    "categories",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("parent_id", String(36), ForeignKey("categories.id")),
)

essential_transactions = Table(
    "essential_transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("is_ready", Boolean, nullable=False, server_default="0"),
    Column("occurred_on", Date, nullable=False),
    Column("kind", String(20), nullable=False),
    Column("amount_original", Numeric(14, 2), nullable=False),
    Column("currency_original", String(3), nullable=False),
    Column("category_id", String(36), ForeignKey("categories.id")),
    Column("description", String(500)),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False),
    Column("occurred_on", Date, nullable=False),
    Column("kind", String(30), nullable=False),
    Column("amount_original", Numeric(14, 2), nullable=False),
    Column("amount_base", Numeric(14, 2), nullable=False, server_default="0"),
    Column("category_id", String(36), ForeignKey("categories.id")),
    Column("tag", String(100)),
    Column("description", String(500)),
    Column("essential_transaction_id", String(36), ForeignKey("essential_transactions.id")),
)

investments = Table(
    "investments",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("is_for_retirement", Boolean, nullable=False, server_default="0"),
    Column("note", String(500)),
)

investment_trends = Table(
    "investment_trends",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("investment_id", String(36), ForeignKey("investments.id"), nullable=False),
    Column("value_on", Date, nullable=False),
    Column("value_original", Numeric(16, 2), nullable=False),
    Column("cash_flow", Numeric(16, 2), nullable=False, server_default="0"),
)


def load_snapshot(conn: Connection, user_id: str) -> LedgerSnapshot:
    """Read every collection owned by ``user_id`` into an immutable snapshot."""
    account_rows = conn.execute(
        select(accounts).where(accounts.c.user_id == user_id).order_by(accounts.c.name)
    ).mappings().all()
    category_rows = conn.execute(
        select(categories).where(categories.c.user_id == user_id)
    ).mappings().all()
    transaction_rows = conn.execute(
        select(transactions)
        .where(transactions.c.user_id == user_id)
        .order_by(transactions.c.occurred_on, transactions.c.id)
    ).mappings().all()
    obligation_rows = conn.execute(
        select(essential_transactions)
        .where(essential_transactions.c.user_id == user_id)
        .order_by(essential_transactions.c.occurred_on)
    ).mappings().all()
    investment_rows = conn.execute(
        select(investments).where(investments.c.user_id == user_id)
    ).mappings().all()
    trend_rows = conn.execute(
        select(investment_trends)
        .where(investment_trends.c.user_id == user_id)
        .order_by(investment_trends.c.value_on)
    ).mappings().all()

    return LedgerSnapshot(
        accounts=tuple(
            Account(
                id=row["id"],
                name=row["name"],
                currency=row["currency_code"],
                kind=row["kind"],
                status=row["status"],
                exclude_from_overview=bool(row["exclude_from_overview"]),
            )
            for row in account_rows
        ),
        transactions=tuple(
            Transaction(
                id=row["id"],
                account_id=row["account_id"],
                occurred_on=row["occurred_on"],
                kind=row["kind"],
                amount_original=row["amount_original"],
                amount_base=row["amount_base"] if row["amount_base"] is not None else ZERO,
                category_id=row["category_id"],
                tag=row["tag"],
                description=row["description"],
                essential_transaction_id=row["essential_transaction_id"],
            )
            for row in transaction_rows
        ),
        categories=tuple(
            Category(
                id=row["id"],
                name=row["name"],
                parent_id=row["parent_id"],
            )
            for row in category_rows
        ),
        obligations=tuple(
            RecurringObligation(
                id=row["id"],
                name=row["name"],
                occurred_on=row["occurred_on"],
                kind=row["kind"],
                amount_original=row["amount_original"],
                currency=row["currency_original"],
                category_id=row["category_id"],
                is_ready=bool(row["is_ready"]),
                is_active=bool(row["is_active"]),
                description=row["description"],
            )
            for row in obligation_rows
        ),
        investments=tuple(
            Investment(
                id=row["id"],
                name=row["name"],
                currency=row["currency"],
                is_for_retirement=bool(row["is_for_retirement"]),
                note=row["note"],
            )
            for row in investment_rows
        ),
        investment_trends=tuple(
            InvestmentTrend(
                id=row["id"],
                investment_id=row["investment_id"],
                value_on=row["value_on"],
                value_original=row["value_original"],
                cash_flow=row["cash_flow"] if row["cash_flow"] is not None else ZERO,
            )
            for row in trend_rows
        ),
    )
