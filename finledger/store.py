from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql.dml import Update

from finledger.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = settings.DEFAULT_CURRENCY
TRANSACTION_TYPES = ("debit", "credit")
TRANSACTION_STATUSES = ("pending", "completed", "failed")

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("username", String(255), nullable=False),
    Column("email", String(255), nullable=False),
    Column("phone", String(32)),
    Column("image_url", Text),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)

transactions = Table(
    "user_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False, server_default=DEFAULT_CURRENCY),
    Column("type", String(20), nullable=False),
    Column("status", String(20), nullable=False, server_default="completed"),
    Column("category", String(64)),
    Column("tags", JSON, nullable=False, default=lambda: []),
    Column("merchant", String(128)),
    Column("description", Text),
    Column("reference", String(64)),
    Column("transaction_date", Date, nullable=False, server_default=func.current_date()),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    Column("receipt_url", Text),
    Column("receipt_filename", String(255)),
    Index("idx_user_transactions_user_id_created_at", "user_id", "created_at"),
    Index("idx_user_transactions_user_id_transaction_date", "user_id", "transaction_date"),
    Index("idx_user_transactions_category", "category"),
    Index("idx_user_transactions_merchant", "merchant"),
    Index("idx_user_transactions_reference", "reference"),
)


class CascadeDeleteError(RuntimeError):
    """Raised when transactions survive the deletion of their owner."""


def create_store_engine(database_url: str) -> Engine:
    connect_args = {}
    engine_kwargs: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in database_url or database_url in {"sqlite://", "sqlite+pysqlite://"}:
            engine_kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **engine_kwargs)


def init_db(engine: Engine) -> None:
    # create_all skips tables and indexes that already exist
    metadata.create_all(engine)
    logger.info("Tables ensured successfully")


def user_exists(conn: Connection, user_id: str) -> bool:
    return conn.execute(select(users.c.id).where(users.c.id == user_id)).first() is not None


def count_user_transactions(conn: Connection, user_id: str) -> int:
    stmt = select(func.count()).select_from(transactions).where(transactions.c.user_id == user_id)
    return int(conn.execute(stmt).scalar_one() or 0)


def build_partial_update(
    table: Table,
    key_column: str,
    key_value: Any,
    changes: Mapping[str, Any],
    allowed: Iterable[str],
) -> Update:
    """Build an UPDATE that only touches the columns present in ``changes``.

    Every value is passed as a bound parameter. Columns outside ``allowed`` are
    rejected so callers cannot rewrite keys or audit columns.
    """
    allowed_columns = set(allowed)
    unknown = sorted(set(changes) - allowed_columns)
    if unknown:
        raise ValueError(f"Unsupported fields: {', '.join(unknown)}")
    if not changes:
        raise ValueError("No fields to update.")

    values = dict(changes)
    if "updated_at" in table.c and "updated_at" not in values:
        values["updated_at"] = func.now()
    return (
        update(table)
        .where(table.c[key_column] == key_value)
        .values(**values)
        .returning(*table.c)
    )


def delete_user_with_transactions(conn: Connection, user_id: str) -> tuple[dict | None, int]:
    """Delete a user's transactions, then the user, and verify nothing is left.

    Transactions are removed explicitly rather than trusting the foreign key
    cascade. Returns the deleted user row and the number of transactions removed.
    """
    existing = count_user_transactions(conn, user_id)
    conn.execute(delete(transactions).where(transactions.c.user_id == user_id))
    deleted_user = conn.execute(
        delete(users).where(users.c.id == user_id).returning(*users.c)
    ).mappings().first()

    remaining = count_user_transactions(conn, user_id)
    if remaining:
        raise CascadeDeleteError(
            f"{remaining} transactions remain after deleting user {user_id}."
        )
    return (dict(deleted_user) if deleted_user else None), existing
