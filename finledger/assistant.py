from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from finledger.aggregation import shift_month_keep_day
from finledger.llm import TextModel
from finledger.store import transactions

logger = logging.getLogger(__name__)

RECENT_MONTHS = 3
TREND_MONTHS = 6
RECENT_LIMIT = 100
TOP_MERCHANTS_LIMIT = 10

INSTRUCTIONS = """You are a helpful, general-purpose AI assistant inside a personal finance app.
Answer any question the user asks, not only financial ones.
Only use the user's financial data below when the question is about their money, spending, income or budgeting.
When you use the data, reference actual amounts and patterns.
Keep answers concise and conversational. Use light formatting (short paragraphs or bullet lists) only when it helps."""


@dataclass(frozen=True)
class ChatTurn:
    role: str
    content: str


@dataclass(frozen=True)
class AssistantReply:
    message: str
    data_used: bool


def gather_grounding_data(engine: Engine, user_id: str, today: date) -> dict:
    recent_start = shift_month_keep_day(today, -RECENT_MONTHS)
    trend_start = shift_month_keep_day(today, -TREND_MONTHS)
    owned = transactions.c.user_id == user_id
    is_debit = transactions.c.type == "debit"
    total_amount = func.sum(transactions.c.amount)

    with engine.begin() as conn:
        recent = conn.execute(
            select(
                transactions.c.amount,
                transactions.c.type,
                transactions.c.category,
                transactions.c.description,
                transactions.c.transaction_date,
                transactions.c.currency,
            )
            .where(owned, transactions.c.transaction_date >= recent_start)
            .order_by(transactions.c.transaction_date.desc(), transactions.c.id.desc())
            .limit(RECENT_LIMIT)
        ).mappings().all()

        category_summary = conn.execute(
            select(
                transactions.c.category,
                func.count().label("transaction_count"),
                total_amount.label("total_amount"),
                func.avg(transactions.c.amount).label("avg_amount"),
            )
            .where(owned, is_debit, transactions.c.transaction_date >= recent_start)
            .group_by(transactions.c.category)
            .order_by(total_amount.desc())
        ).mappings().all()

        trend_rows = conn.execute(
            select(
                transactions.c.transaction_date,
                transactions.c.type,
                transactions.c.amount,
            ).where(owned, transactions.c.transaction_date >= trend_start)
        ).mappings().all()

        top_merchants = conn.execute(
            select(
                transactions.c.description,
                func.count().label("frequency"),
                total_amount.label("total_spent"),
            )
            .where(owned, is_debit, transactions.c.transaction_date >= recent_start)
            .group_by(transactions.c.description)
            .order_by(total_amount.desc())
            .limit(TOP_MERCHANTS_LIMIT)
        ).mappings().all()

    return {
        "recentTransactions": [dict(row) for row in recent],
        "categorySummary": [dict(row) for row in category_summary],
        "monthlyTrend": monthly_trend(trend_rows),
        "topMerchants": [dict(row) for row in top_merchants],
    }


def monthly_trend(rows) -> list[dict]:
    months: dict[str, dict] = {}
    for row in rows:
        key = row["transaction_date"].strftime("%Y-%m")
        bucket = months.setdefault(key, {"month": key, "income": Decimal("0"), "expenses": Decimal("0")})
        if row["type"] == "credit":
            bucket["income"] += row["amount"]
        elif row["type"] == "debit":
            bucket["expenses"] += row["amount"]
    return [months[key] for key in sorted(months, reverse=True)]


def build_chat_prompt(
    message: str,
    history: Sequence[ChatTurn] = (),
    grounding: Optional[dict] = None,
) -> str:
    sections = [INSTRUCTIONS]
    if history:
        lines = [f"{turn.role}: {turn.content}" for turn in history if turn.content]
        sections.append("Conversation so far:\n" + "\n".join(lines))
    if grounding:
        sections.append(
            "User's financial data (last 3 months, monthly trend covers 6 months):\n"
            + json.dumps(grounding, indent=2, default=str)
        )
    sections.append(f'User\'s question: "{message}"')
    return "\n\n".join(sections)


def answer(
    engine: Engine,
    model: TextModel,
    user_id: str,
    message: str,
    today: date,
    history: Sequence[ChatTurn] = (),
) -> AssistantReply:
    grounding: dict = {}
    try:
        grounding = gather_grounding_data(engine, user_id, today)
    except SQLAlchemyError:
        logger.exception("Could not load grounding data for user %s; answering without it", user_id)

    prompt = build_chat_prompt(message, history, grounding or None)
    reply = model.generate(prompt)
    return AssistantReply(message=reply, data_used=bool(grounding))
