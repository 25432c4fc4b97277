from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import insert, select
from sqlalchemy.engine import Connection, Engine

from finledger.store import DEFAULT_CURRENCY, transactions, user_exists

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
HISTORY_DAYS = 30
HISTORY_LIMIT = 10


class UserNotFound(LookupError):
    """Raised when the owning user does not exist."""


class BulkInsertError(RuntimeError):
    """Raised when a batch fails; earlier batches stay committed."""


@dataclass(frozen=True)
class BulkCandidate:
    amount: Decimal
    type: str
    category: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    date: Optional[date] = None


def to_transaction_row(candidate: BulkCandidate, user_id: str, today: date) -> dict:
    return {
        "user_id": user_id,
        "amount": abs(candidate.amount),
        "currency": DEFAULT_CURRENCY,
        "type": candidate.type,
        "category": candidate.category,
        "description": candidate.title or candidate.description,
        "reference": candidate.reference or None,
        "transaction_date": candidate.date or today,
        "tags": [],
        "receipt_url": None,
        "receipt_filename": None,
    }


def chunked(rows: Sequence[dict], size: int = BATCH_SIZE) -> Iterator[Sequence[dict]]:
    if size <= 0:
        raise ValueError("Batch size must be positive.")
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


def bulk_insert_transactions(
    engine: Engine,
    user_id: str,
    candidates: Sequence[BulkCandidate],
    today: date,
    batch_size: int = BATCH_SIZE,
) -> list[dict]:
    """Insert candidates for one user in sequential, independently committed batches.

    A failing batch stops the remaining ones; batches already written are not
    rolled back.
    """
    if not candidates:
        raise ValueError("Transactions array is required and must not be empty")

    with engine.begin() as conn:
        if not user_exists(conn, user_id):
            raise UserNotFound(user_id)

    rows = [to_transaction_row(candidate, user_id, today) for candidate in candidates]
    stmt = insert(transactions).returning(*transactions.c, sort_by_parameter_order=True)
    inserted: list[dict] = []
    for batch_number, batch in enumerate(chunked(rows, batch_size), start=1):
        try:
            with engine.begin() as conn:
                result = conn.execute(stmt, list(batch))
                inserted.extend(dict(row) for row in result.mappings().all())
        except Exception as exc:
            logger.exception(
                "Bulk insert failed at batch %d for user %s (%d rows already committed)",
                batch_number,
                user_id,
                len(inserted),
            )
            raise BulkInsertError("Failed to upload transactions") from exc

    logger.info("Inserted %d transactions for user %s", len(inserted), user_id)
    return inserted


def fetch_upload_history(conn: Connection, user_id: str, now: datetime) -> list[dict]:
    stmt = (
        select(transactions.c.created_at, transactions.c.amount, transactions.c.category)
        .where(
            transactions.c.user_id == user_id,
            transactions.c.receipt_filename.is_(None),
            transactions.c.created_at >= now - timedelta(days=HISTORY_DAYS),
        )
        .order_by(transactions.c.created_at.desc())
    )
    groups: dict[date, dict] = {}
    for row in conn.execute(stmt).mappings():
        upload_date = row["created_at"].date()
        group = groups.setdefault(
            upload_date,
            {"transaction_count": 0, "total_amount": Decimal("0"), "categories": set()},
        )
        group["transaction_count"] += 1
        group["total_amount"] += row["amount"]
        if row["category"]:
            group["categories"].add(row["category"])

    history = []
    for upload_date in sorted(groups, reverse=True)[:HISTORY_LIMIT]:
        group = groups[upload_date]
        history.append(
            {
                "upload_date": upload_date,
                "transaction_count": group["transaction_count"],
                "total_amount": group["total_amount"],
                "categories": ", ".join(sorted(group["categories"])),
            }
        )
    return history
