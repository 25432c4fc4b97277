from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from finledger.store import transactions

ZERO = Decimal("0")

PERIODS = ("day", "week", "month", "year", "all")
GROUPINGS = ("day", "week", "month", "year")


@dataclass(frozen=True)
class AmountRow:
    transaction_date: date
    amount: Decimal


@dataclass(frozen=True)
class Rollup:
    total: Decimal = ZERO
    count: int = 0


@dataclass(frozen=True)
class PeriodSummary:
    period: str
    income: Decimal
    expenses: Decimal
    balance: Decimal
    income_count: int
    expense_count: int


@dataclass(frozen=True)
class BreakdownBucket:
    period: str
    income: Decimal
    expenses: Decimal
    balance: Decimal
    income_count: int
    expense_count: int

    @property
    def total_count(self) -> int:
        return self.income_count + self.expense_count


@dataclass(frozen=True)
class BreakdownTotals:
    total_income: Decimal = ZERO
    total_expenses: Decimal = ZERO
    total_balance: Decimal = ZERO
    total_transactions: int = 0
    income_transactions: int = 0
    expense_transactions: int = 0


@dataclass(frozen=True)
class Breakdown:
    group_by: str
    buckets: list[BreakdownBucket] = field(default_factory=list)
    summary: BreakdownTotals = field(default_factory=BreakdownTotals)


def normalize_period(value: Optional[str]) -> str:
    normalized = (value or "all").strip().lower()
    if normalized not in PERIODS:
        raise ValueError("Invalid period. Use day, week, month, year or all.")
    return normalized


def normalize_group_by(value: Optional[str]) -> str:
    normalized = (value or "month").strip().lower()
    if normalized not in GROUPINGS:
        raise ValueError("Invalid groupBy. Use day, week, month or year.")
    return normalized


def shift_month_keep_day(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    day = min(value.day, last_day)
    return date(year, month, day)


def period_start(period: str, today: date) -> Optional[date]:
    """First transaction_date included in a relative period, or None for all."""
    if period == "day":
        return today - timedelta(days=1)
    if period == "week":
        return today - timedelta(days=7)
    if period == "month":
        return shift_month_keep_day(today, -1)
    if period == "year":
        return shift_month_keep_day(today, -12)
    if period == "all":
        return None
    raise ValueError(f"Unsupported period: {period}")


def bucket_key(value: date, group_by: str) -> str:
    if group_by == "day":
        return value.isoformat()
    if group_by == "week":
        iso_year, iso_week, _ = value.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}"
    if group_by == "month":
        return f"{value.year:04d}-{value.month:02d}"
    if group_by == "year":
        return f"{value.year:04d}"
    raise ValueError(f"Unsupported groupBy: {group_by}")


def rollup(rows: Iterable[AmountRow], group_by: str) -> dict[str, Rollup]:
    buckets: dict[str, Rollup] = {}
    for row in rows:
        key = bucket_key(row.transaction_date, group_by)
        current = buckets.get(key, Rollup())
        buckets[key] = Rollup(
            total=current.total + _coerce_amount(row.amount),
            count=current.count + 1,
        )
    return buckets


def merge_rollups(
    income: dict[str, Rollup],
    expenses: dict[str, Rollup],
) -> list[BreakdownBucket]:
    merged: list[BreakdownBucket] = []
    for key in set(income) | set(expenses):
        income_side = income.get(key, Rollup())
        expense_side = expenses.get(key, Rollup())
        merged.append(
            BreakdownBucket(
                period=key,
                income=income_side.total,
                expenses=expense_side.total,
                balance=income_side.total - expense_side.total,
                income_count=income_side.count,
                expense_count=expense_side.count,
            )
        )
    # zero-padded keys sort chronologically as strings
    merged.sort(key=lambda bucket: bucket.period, reverse=True)
    return merged


def summarize_buckets(buckets: Iterable[BreakdownBucket]) -> BreakdownTotals:
    total_income = ZERO
    total_expenses = ZERO
    income_count = 0
    expense_count = 0
    for bucket in buckets:
        total_income += bucket.income
        total_expenses += bucket.expenses
        income_count += bucket.income_count
        expense_count += bucket.expense_count
    return BreakdownTotals(
        total_income=total_income,
        total_expenses=total_expenses,
        total_balance=total_income - total_expenses,
        total_transactions=income_count + expense_count,
        income_transactions=income_count,
        expense_transactions=expense_count,
    )


def build_breakdown(
    income_rows: Iterable[AmountRow],
    expense_rows: Iterable[AmountRow],
    group_by: str,
) -> Breakdown:
    buckets = merge_rollups(rollup(income_rows, group_by), rollup(expense_rows, group_by))
    return Breakdown(group_by=group_by, buckets=buckets, summary=summarize_buckets(buckets))


def fetch_period_summary(conn: Connection, user_id: str, period: str, today: date) -> PeriodSummary:
    start = period_start(period, today)
    income, income_count = _fetch_type_totals(conn, user_id, "credit", start)
    expenses, expense_count = _fetch_type_totals(conn, user_id, "debit", start)
    return PeriodSummary(
        period=period,
        income=income,
        expenses=expenses,
        balance=income - expenses,
        income_count=income_count,
        expense_count=expense_count,
    )


def fetch_breakdown(conn: Connection, user_id: str, group_by: str) -> Breakdown:
    income_rows = _fetch_amount_rows(conn, user_id, "credit")
    expense_rows = _fetch_amount_rows(conn, user_id, "debit")
    return build_breakdown(income_rows, expense_rows, group_by)


def fetch_transaction_overview(conn: Connection, user_id: str, today: date) -> dict:
    owned = transactions.c.user_id == user_id
    basic = conn.execute(
        select(
            func.count().label("total_transactions"),
            func.coalesce(func.sum(transactions.c.amount), 0).label("total_amount"),
        ).where(owned)
    ).mappings().one()

    by_type = conn.execute(
        select(
            transactions.c.type,
            func.count().label("count"),
            func.coalesce(func.sum(transactions.c.amount), 0).label("total"),
        )
        .where(owned, transactions.c.transaction_date == today)
        .group_by(transactions.c.type)
        .order_by(transactions.c.type)
    ).mappings().all()

    by_category = conn.execute(
        select(
            transactions.c.category,
            func.count().label("count"),
            func.coalesce(func.sum(transactions.c.amount), 0).label("total"),
        )
        .where(
            owned,
            transactions.c.category.isnot(None),
            transactions.c.transaction_date == today,
        )
        .group_by(transactions.c.category)
        .order_by(transactions.c.category)
    ).mappings().all()

    today_totals = {row["type"]: _coerce_amount(row["total"]) for row in by_type}
    total_income, _ = _fetch_type_totals(conn, user_id, "credit", None)
    total_expenses, _ = _fetch_type_totals(conn, user_id, "debit", None)

    return {
        "total_transactions": int(basic["total_transactions"] or 0),
        "total_amount": _coerce_amount(basic["total_amount"]),
        "balance": total_income - total_expenses,
        "income": today_totals.get("credit", ZERO),
        "expenses": today_totals.get("debit", ZERO),
        "total_income": total_income,
        "total_expenses": total_expenses,
        "by_type": [
            {"type": row["type"], "count": int(row["count"]), "total": _coerce_amount(row["total"])}
            for row in by_type
        ],
        "by_category": [
            {
                "category": row["category"],
                "count": int(row["count"]),
                "total": _coerce_amount(row["total"]),
            }
            for row in by_category
        ],
    }


def _fetch_type_totals(
    conn: Connection, user_id: str, txn_type: str, start: Optional[date]
) -> tuple[Decimal, int]:
    conditions = [transactions.c.user_id == user_id, transactions.c.type == txn_type]
    if start is not None:
        conditions.append(transactions.c.transaction_date >= start)
    stmt = select(
        func.coalesce(func.sum(transactions.c.amount), 0).label("total"),
        func.count().label("count"),
    ).where(*conditions)
    row = conn.execute(stmt).mappings().one()
    return _coerce_amount(row["total"]), int(row["count"] or 0)


def _fetch_amount_rows(conn: Connection, user_id: str, txn_type: str) -> list[AmountRow]:
    stmt = select(transactions.c.transaction_date, transactions.c.amount).where(
        transactions.c.user_id == user_id,
        transactions.c.type == txn_type,
    )
    return [
        AmountRow(transaction_date=row["transaction_date"], amount=_coerce_amount(row["amount"]))
        for row in conn.execute(stmt).mappings()
    ]


def _coerce_amount(amount) -> Decimal:
    if amount is None:
        return ZERO
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
