import base64
import logging
import re
from datetime import date, datetime, timezone
from datetime import date as date_type
from decimal import Decimal, InvalidOperation
from typing import Any

from fastapi import Body, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from finledger.aggregation import (
    fetch_breakdown,
    fetch_period_summary,
    fetch_transaction_overview,
    normalize_group_by,
    normalize_period,
)
from finledger.assistant import ChatTurn, answer
from finledger.bulk_import import (
    BulkCandidate,
    BulkInsertError,
    UserNotFound,
    bulk_insert_transactions,
    fetch_upload_history,
)
from finledger.identity import IdentityProvider, LocalIdentityProvider
from finledger.ingestion import IngestionError, UploadedFile, ingest_file
from finledger.llm import ChatModelClient, ModelUnavailable, TextModel
from finledger.market_data import market_snapshot
from finledger.rate_limiter import RateLimitMiddleware, TokenBucketRateLimiter
from finledger.settings import configure_logging, settings
from finledger.store import (
    DEFAULT_CURRENCY,
    TRANSACTION_STATUSES,
    TRANSACTION_TYPES,
    CascadeDeleteError,
    build_partial_update,
    create_store_engine,
    delete_user_with_transactions,
    init_db,
    transactions,
    user_exists,
    users,
)

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="finledger")

app.add_middleware(RateLimitMiddleware, fail_open=settings.RATE_LIMIT_FAIL_OPEN)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.FRONTEND_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
app.state.rate_limiter = TokenBucketRateLimiter(
    capacity=settings.RATE_LIMIT_CAPACITY,
    window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    idle_seconds=settings.RATE_LIMIT_IDLE_SECONDS,
)

engine = create_store_engine(settings.DATABASE_URL)
identity_provider = LocalIdentityProvider()
model_client = ChatModelClient()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9\s-]{6,18}[0-9]$")
USER_UPDATE_FIELDS = ("username", "email", "phone", "image_url")


@app.on_event("startup")
def startup() -> None:
    init_db(engine)


def get_model() -> TextModel:
    return model_client


def get_identity_provider() -> IdentityProvider:
    return identity_provider


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if exc.status_code == 404 and detail == "Not Found":
        detail = f"The requested route {request.url.path} was not found on this server"
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request."
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path", "form"))
        message = f"Invalid {field or 'request'}: {first.get('msg', 'invalid value')}"
    return JSONResponse(status_code=400, content={"success": False, "error": message})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


class TransactionType:
    values = set(TRANSACTION_TYPES)

    @classmethod
    def validate(cls, value: str | None) -> str:
        normalized = (value or "").strip().lower()
        if normalized not in cls.values:
            raise ValueError("Type is required and must be either 'debit' or 'credit'.")
        return normalized


class TransactionStatus:
    values = set(TRANSACTION_STATUSES)

    @classmethod
    def validate(cls, value: str | None) -> str:
        normalized = (value or "completed").strip().lower()
        if normalized not in cls.values:
            raise ValueError("Status must be pending, completed or failed.")
        return normalized


def normalize_currency(value: str | None) -> str:
    if not value:
        return DEFAULT_CURRENCY
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def parse_positive_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, AttributeError) as exc:
        raise ValueError("Amount is required and must be a positive number.") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Amount is required and must be a positive number.")
    return amount


def parse_optional_date(value: str | None) -> date | None:
    if value is None or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError("transaction_date must be in YYYY-MM-DD format.") from exc


def parse_tags(value: str | None) -> list[str]:
    if not value:
        return []
    return [tag.strip() for tag in value.split(",") if tag.strip()]


def require_user_id(user_id: str | None) -> str:
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=400, detail="User ID is required")
    return user_id.strip()


def validate_email(email: str) -> str:
    normalized = email.strip()
    if not EMAIL_PATTERN.match(normalized):
        raise ValueError("Invalid email format")
    return normalized


def validate_phone(phone: str) -> str:
    normalized = phone.strip()
    if not PHONE_PATTERN.match(normalized):
        raise ValueError("Invalid phone number format")
    return normalized


class UserCreatePayload(BaseModel):
    id: str | None = None
    username: str | None = None
    email: str | None = None
    phone: str | None = None
    image_url: str | None = None

    @classmethod
    def validate_payload(cls, payload: "UserCreatePayload") -> "UserCreatePayload":
        payload.username = payload.username.strip() if payload.username else None
        if not payload.username:
            raise ValueError("username is required")
        if not payload.email or not payload.email.strip():
            raise ValueError("email is required")
        payload.email = validate_email(payload.email)
        payload.phone = validate_phone(payload.phone) if payload.phone else None
        payload.id = payload.id.strip() if payload.id and payload.id.strip() else None
        return payload


class UserUpdatePayload(BaseModel):
    username: str | None = None
    email: str | None = None
    phone: str | None = None
    image_url: str | None = None

    def changes(self) -> dict:
        provided = {
            name: value.strip()
            for name, value in self.model_dump(exclude_unset=True).items()
            if isinstance(value, str) and value.strip()
        }
        if not provided:
            raise ValueError("At least one field (username, email, phone, image_url) must be provided and not empty")
        if "email" in provided:
            provided["email"] = validate_email(provided["email"])
        if "phone" in provided:
            provided["phone"] = validate_phone(provided["phone"])
        return provided


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    phone: str | None = None
    image_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class UserDeleteResponse(BaseModel):
    message: str
    deletedUser: UserResponse
    deletedTransactionsCount: int
    remainingTransactionsCount: int


class UsernameAvailabilityResponse(BaseModel):
    username: str
    available: bool


class TransactionResponse(BaseModel):
    id: int
    user_id: str
    amount: Decimal
    currency: str
    type: str
    status: str | None = None
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    merchant: str | None = None
    description: str | None = None
    reference: str | None = None
    transaction_date: date
    created_at: datetime | None = None
    updated_at: datetime | None = None
    receipt_url: str | None = None
    receipt_filename: str | None = None


class TransactionListResponse(BaseModel):
    success: bool = True
    data: list[TransactionResponse]
    count: int


class TransactionCreateResponse(BaseModel):
    message: str
    transaction: TransactionResponse
    receiptUploaded: bool


class TransactionUpdatePayload(BaseModel):
    amount: Any = None
    type: str | None = None
    currency: str | None = None
    status: str | None = None
    category: str | None = None
    tags: list[str] | None = None
    merchant: str | None = None
    reference: str | None = None
    description: str | None = None
    transaction_date: date | None = None

    def to_values(self, today: date) -> dict:
        return {
            "amount": parse_positive_amount(self.amount),
            "type": TransactionType.validate(self.type),
            "currency": normalize_currency(self.currency),
            "status": TransactionStatus.validate(self.status),
            "category": self.category.strip() if self.category else None,
            "tags": [tag.strip() for tag in self.tags or [] if tag.strip()],
            "merchant": (self.merchant or "").strip(),
            "reference": (self.reference or "").strip(),
            "description": (self.description or "").strip(),
            "transaction_date": self.transaction_date or today,
        }


class TransactionEnvelope(BaseModel):
    success: bool = True
    data: TransactionResponse


class TransactionDeleteResponse(BaseModel):
    message: str
    deletedTransaction: TransactionResponse


class BulkDeletePayload(BaseModel):
    transaction_ids: list[int] | None = None


class BulkDeleteResponse(BaseModel):
    message: str
    deletedTransactions: list[TransactionResponse]
    notFoundTransactionIds: list[int]


class TypeTotal(BaseModel):
    type: str
    count: int
    total: Decimal


class CategoryTotal(BaseModel):
    category: str | None = None
    count: int
    total: Decimal


class TransactionOverview(BaseModel):
    total_transactions: int
    total_amount: Decimal
    balance: Decimal
    income: Decimal
    expenses: Decimal
    total_income: Decimal
    total_expenses: Decimal
    by_type: list[TypeTotal]
    by_category: list[CategoryTotal]


class TransactionOverviewResponse(BaseModel):
    success: bool = True
    data: TransactionOverview


class SummaryCounts(BaseModel):
    income: int
    expenses: int


class FinanceSummaryResponse(BaseModel):
    period: str
    income: Decimal
    expenses: Decimal
    balance: Decimal
    transaction_count: SummaryCounts


class BucketCounts(BaseModel):
    income: int
    expenses: int
    total: int


class BreakdownBucketResponse(BaseModel):
    period: str
    income: Decimal
    expenses: Decimal
    balance: Decimal
    transaction_count: BucketCounts


class BreakdownSummaryResponse(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    total_balance: Decimal
    total_transactions: int
    income_transactions: int
    expense_transactions: int


class FinanceBreakdownResponse(BaseModel):
    group_by: str
    summary: BreakdownSummaryResponse
    breakdown: list[BreakdownBucketResponse]


class CandidateResponse(BaseModel):
    title: str | None = None
    description: str | None = None
    reference: str | None = None
    date: date
    type: str
    amount: Decimal
    category: str


class UploadFileData(BaseModel):
    fileName: str
    fileType: str
    totalTransactions: int
    discardedTransactions: int
    transactions: list[CandidateResponse]


class UploadFileResponse(BaseModel):
    success: bool = True
    data: UploadFileData


class BulkTransactionRow(BaseModel):
    title: str | None = None
    description: str | None = None
    reference: str | None = None
    date: date_type | None = None
    type: str
    amount: Decimal
    category: str | None = None


class BulkUploadPayload(BaseModel):
    userId: str | None = None
    transactions: Any = None


class BulkUploadData(BaseModel):
    totalUploaded: int
    transactions: list[TransactionResponse]


class BulkUploadResponse(BaseModel):
    success: bool = True
    data: BulkUploadData


class UploadHistoryEntry(BaseModel):
    upload_date: date
    transaction_count: int
    total_amount: Decimal
    categories: str


class UploadHistoryResponse(BaseModel):
    success: bool = True
    data: list[UploadHistoryEntry]


class ChatTurnPayload(BaseModel):
    role: str = "user"
    content: str = ""


class ChatPayload(BaseModel):
    message: str | None = None
    userId: str | None = None
    conversationHistory: list[ChatTurnPayload] | None = None


class ChatData(BaseModel):
    message: str
    timestamp: datetime
    dataUsed: bool


class ChatResponse(BaseModel):
    success: bool = True
    data: ChatData


def to_transaction_response(row) -> TransactionResponse:
    values = dict(row)
    values["tags"] = values.get("tags") or []
    return TransactionResponse(**values)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@app.get("/")
def root() -> dict:
    return {"message": "Welcome to the finledger API"}


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


# Users


@app.get("/api/users", response_model=list[UserResponse])
def list_users() -> list[UserResponse]:
    with engine.begin() as conn:
        rows = conn.execute(select(users).order_by(users.c.created_at.desc())).mappings().all()
    return [UserResponse(**row) for row in rows]


@app.get("/api/users/check-username", response_model=UsernameAvailabilityResponse)
def check_username(username: str | None = Query(None)) -> UsernameAvailabilityResponse:
    if not username or not username.strip():
        raise HTTPException(status_code=400, detail="username is required")
    normalized = username.strip()
    with engine.begin() as conn:
        taken = conn.execute(select(users.c.id).where(users.c.username == normalized)).first()
    return UsernameAvailabilityResponse(username=normalized, available=taken is None)


@app.get("/api/users/{user_id}", response_model=UserResponse)
def get_user(user_id: str) -> UserResponse:
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found")
    return UserResponse(**row)


@app.post("/api/users", response_model=UserResponse)
def create_user(
    payload: UserCreatePayload,
    provider: IdentityProvider = Depends(get_identity_provider),
) -> UserResponse:
    try:
        payload = UserCreatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    profile = payload.model_dump(exclude={"id"})
    user_id = payload.id or provider.create_user(profile)
    stmt = insert(users).values(id=user_id, **profile).returning(*users.c)
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="User already exists") from exc
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user")
    return UserResponse(**row)


@app.put("/api/users/{user_id}")
def update_user(
    user_id: str,
    payload: UserUpdatePayload,
    provider: IdentityProvider = Depends(get_identity_provider),
) -> dict:
    try:
        changes = payload.changes()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = build_partial_update(users, "id", user_id, changes, USER_UPDATE_FIELDS)
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found")
    provider.update_user(user_id, changes)
    return {"message": "User updated successfully", "updatedUser": UserResponse(**row)}


@app.delete("/api/users/{user_id}", response_model=UserDeleteResponse)
def delete_user(user_id: str) -> UserDeleteResponse:
    try:
        with engine.begin() as conn:
            if not user_exists(conn, user_id):
                raise HTTPException(status_code=404, detail="User not found")
            deleted_user, deleted_count = delete_user_with_transactions(conn, user_id)
    except CascadeDeleteError as exc:
        logger.error("Error deleting user %s: %s", user_id, exc)
        raise HTTPException(status_code=500, detail="Failed to delete user") from exc

    logger.info("Deleted user %s and %d transactions", user_id, deleted_count)
    return UserDeleteResponse(
        message="User and all associated transactions deleted successfully",
        deletedUser=UserResponse(**deleted_user),
        deletedTransactionsCount=deleted_count,
        remainingTransactionsCount=0,
    )


# Transactions


@app.get("/api/users/{user_id}/transactions", response_model=TransactionListResponse)
def list_transactions(
    user_id: str,
    type: str | None = None,
    category: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> TransactionListResponse:
    user_id = require_user_id(user_id)
    conditions = [transactions.c.user_id == user_id]
    if type:
        try:
            conditions.append(transactions.c.type == TransactionType.validate(type))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    if category:
        conditions.append(transactions.c.category == category)
    if start_date:
        conditions.append(transactions.c.transaction_date >= start_date)
    if end_date:
        conditions.append(transactions.c.transaction_date <= end_date)

    try:
        with engine.begin() as conn:
            rows = conn.execute(
                select(transactions)
                .where(*conditions)
                .order_by(transactions.c.transaction_date.desc(), transactions.c.created_at.desc())
            ).mappings().all()
    except SQLAlchemyError as exc:
        logger.exception("Error fetching transactions for user %s", user_id)
        raise HTTPException(status_code=500, detail="Failed to fetch transactions") from exc

    logger.info("Found %d transactions for user %s", len(rows), user_id)
    data = [to_transaction_response(row) for row in rows]
    return TransactionListResponse(data=data, count=len(data))


@app.get("/api/users/{user_id}/transactions/summary", response_model=TransactionOverviewResponse)
def transaction_summary(user_id: str) -> TransactionOverviewResponse:
    user_id = require_user_id(user_id)
    try:
        with engine.begin() as conn:
            overview = fetch_transaction_overview(conn, user_id, date.today())
    except SQLAlchemyError as exc:
        logger.exception("Error fetching transactions summary for user %s", user_id)
        raise HTTPException(status_code=500, detail="Failed to fetch transactions summary") from exc
    return TransactionOverviewResponse(data=TransactionOverview(**overview))


@app.get("/api/users/{user_id}/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(user_id: str, transaction_id: int) -> TransactionResponse:
    with engine.begin() as conn:
        row = conn.execute(
            select(transactions).where(
                transactions.c.id == transaction_id,
                transactions.c.user_id == user_id,
            )
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return to_transaction_response(row)


@app.post("/api/users/{user_id}/transactions", response_model=TransactionCreateResponse)
async def create_transaction(
    user_id: str,
    amount: str | None = Form(None),
    type: str | None = Form(None),
    currency: str | None = Form(None),
    status: str | None = Form(None),
    category: str | None = Form(None),
    tags: str | None = Form(None),
    merchant: str | None = Form(None),
    description: str | None = Form(None),
    reference: str | None = Form(None),
    transaction_date: str | None = Form(None),
    receipt: UploadFile | None = File(None),
) -> TransactionCreateResponse:
    try:
        values = {
            "amount": parse_positive_amount(amount),
            "type": TransactionType.validate(type),
            "currency": normalize_currency(currency),
            "status": TransactionStatus.validate(status),
            "category": category.strip() if category else None,
            "tags": parse_tags(tags),
            "merchant": merchant.strip() if merchant else None,
            "description": description.strip() if description else None,
            "reference": reference.strip() if reference else None,
            "transaction_date": parse_optional_date(transaction_date) or date.today(),
        }
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    receipt_url = None
    receipt_filename = None
    if receipt is not None and receipt.filename:
        contents = await receipt.read()
        if len(contents) > settings.MAX_RECEIPT_BYTES:
            raise HTTPException(status_code=413, detail="Receipt exceeds the maximum size of 5MB")
        mime_type = receipt.content_type or "image/jpeg"
        receipt_url = f"data:{mime_type};base64,{base64.b64encode(contents).decode('ascii')}"
        receipt_filename = receipt.filename

    def persist():
        with engine.begin() as conn:
            if not user_exists(conn, user_id):
                raise HTTPException(status_code=404, detail="User not found")
            return conn.execute(
                insert(transactions)
                .values(
                    user_id=user_id,
                    receipt_url=receipt_url,
                    receipt_filename=receipt_filename,
                    **values,
                )
                .returning(*transactions.c)
            ).mappings().first()

    row = await run_in_threadpool(persist)
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction")
    return TransactionCreateResponse(
        message="Transaction created successfully",
        transaction=to_transaction_response(row),
        receiptUploaded=receipt_url is not None,
    )


@app.put("/api/users/{user_id}/transactions/{transaction_id}", response_model=TransactionEnvelope)
def update_transaction(
    user_id: str,
    transaction_id: int,
    payload: TransactionUpdatePayload,
) -> TransactionEnvelope:
    try:
        values = payload.to_values(date.today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(transactions)
        .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
        .values(updated_at=utc_now(), **values)
        .returning(*transactions.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return TransactionEnvelope(data=to_transaction_response(row))


@app.delete("/api/users/{user_id}/transactions/{transaction_id}", response_model=TransactionDeleteResponse)
def delete_transaction(user_id: str, transaction_id: int) -> TransactionDeleteResponse:
    stmt = (
        delete(transactions)
        .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
        .returning(*transactions.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row:
        raise HTTPException(
            status_code=404,
            detail="Transaction not found or doesn't belong to this user",
        )
    return TransactionDeleteResponse(
        message="Transaction deleted successfully",
        deletedTransaction=to_transaction_response(row),
    )


@app.delete("/api/users/{user_id}/transactions", response_model=BulkDeleteResponse)
def bulk_delete_transactions(user_id: str, payload: BulkDeletePayload = Body(...)) -> BulkDeleteResponse:
    requested = payload.transaction_ids or []
    if not requested:
        raise HTTPException(status_code=400, detail="transaction_ids must be a non-empty array")

    with engine.begin() as conn:
        found_ids = set(
            conn.execute(
                select(transactions.c.id).where(
                    transactions.c.user_id == user_id,
                    transactions.c.id.in_(requested),
                )
            ).scalars()
        )
        deleted_rows = []
        if found_ids:
            deleted_rows = conn.execute(
                delete(transactions)
                .where(transactions.c.user_id == user_id, transactions.c.id.in_(found_ids))
                .returning(*transactions.c)
            ).mappings().all()

    not_found = [transaction_id for transaction_id in requested if transaction_id not in found_ids]
    return BulkDeleteResponse(
        message="Bulk delete completed",
        deletedTransactions=[to_transaction_response(row) for row in deleted_rows],
        notFoundTransactionIds=not_found,
    )


# Finance


@app.get("/api/users/{user_id}/finance/summary", response_model=FinanceSummaryResponse)
def finance_summary(user_id: str, period: str | None = Query("all")) -> FinanceSummaryResponse:
    user_id = require_user_id(user_id)
    try:
        normalized_period = normalize_period(period)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            summary = fetch_period_summary(conn, user_id, normalized_period, date.today())
    except SQLAlchemyError as exc:
        logger.exception("Error fetching financial summary for user %s", user_id)
        raise HTTPException(status_code=500, detail="Failed to fetch financial summary") from exc

    return FinanceSummaryResponse(
        period=summary.period,
        income=summary.income,
        expenses=summary.expenses,
        balance=summary.balance,
        transaction_count=SummaryCounts(income=summary.income_count, expenses=summary.expense_count),
    )


@app.get("/api/users/{user_id}/finance/breakdown", response_model=FinanceBreakdownResponse)
def finance_breakdown(
    user_id: str,
    group_by: str | None = Query("month", alias="groupBy"),
) -> FinanceBreakdownResponse:
    user_id = require_user_id(user_id)
    try:
        normalized_group_by = normalize_group_by(group_by)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            breakdown = fetch_breakdown(conn, user_id, normalized_group_by)
    except SQLAlchemyError as exc:
        logger.exception("Error fetching financial breakdown for user %s", user_id)
        raise HTTPException(status_code=500, detail="Failed to fetch financial breakdown") from exc

    totals = breakdown.summary
    return FinanceBreakdownResponse(
        group_by=breakdown.group_by,
        summary=BreakdownSummaryResponse(
            total_income=totals.total_income,
            total_expenses=totals.total_expenses,
            total_balance=totals.total_balance,
            total_transactions=totals.total_transactions,
            income_transactions=totals.income_transactions,
            expense_transactions=totals.expense_transactions,
        ),
        breakdown=[
            BreakdownBucketResponse(
                period=bucket.period,
                income=bucket.income,
                expenses=bucket.expenses,
                balance=bucket.balance,
                transaction_count=BucketCounts(
                    income=bucket.income_count,
                    expenses=bucket.expense_count,
                    total=bucket.total_count,
                ),
            )
            for bucket in breakdown.buckets
        ],
    )


# Uploads


@app.get("/api/upload/health")
def upload_health() -> dict:
    return {"success": True, "message": "Upload service is running", "timestamp": utc_now().isoformat()}


@app.post("/api/upload/file", response_model=UploadFileResponse)
async def upload_file(
    file: UploadFile | None = File(None),
    user_id: str | None = Form(None, alias="userId"),
    model: TextModel = Depends(get_model),
) -> UploadFileResponse:
    upload = None
    if file is not None and file.filename:
        upload = UploadedFile(
            file_name=file.filename,
            content_type=file.content_type or "",
            contents=await file.read(),
        )

    try:
        result = await run_in_threadpool(
            ingest_file, upload, user_id, model, settings.MAX_UPLOAD_BYTES
        )
    except IngestionError as exc:
        if exc.status_code >= 500:
            logger.error("File upload failed at stage %s: %s", exc.stage.value, exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc

    return UploadFileResponse(
        data=UploadFileData(
            fileName=result.file_name,
            fileType=result.file_type,
            totalTransactions=len(result.transactions),
            discardedTransactions=result.discarded_count,
            transactions=[CandidateResponse(**candidate.to_payload()) for candidate in result.transactions],
        )
    )


@app.post("/api/upload/bulk", response_model=BulkUploadResponse)
def bulk_upload(payload: BulkUploadPayload) -> BulkUploadResponse:
    user_id = require_user_id(payload.userId)
    if not isinstance(payload.transactions, list) or not payload.transactions:
        raise HTTPException(status_code=400, detail="Transactions array is required and must not be empty")
    with engine.begin() as conn:
        if not user_exists(conn, user_id):
            raise HTTPException(status_code=404, detail="User not found")

    candidates: list[BulkCandidate] = []
    for index, item in enumerate(payload.transactions, start=1):
        try:
            row = BulkTransactionRow.model_validate(item)
            txn_type = TransactionType.validate(row.type)
            amount = parse_positive_amount(abs(row.amount))
        except (ValidationError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"Row {index} is invalid: {exc}") from exc
        candidates.append(
            BulkCandidate(
                amount=amount,
                type=txn_type,
                category=row.category,
                title=row.title,
                description=row.description,
                reference=row.reference,
                date=row.date,
            )
        )

    try:
        inserted = bulk_insert_transactions(engine, user_id, candidates, date.today())
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc
    except BulkInsertError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return BulkUploadResponse(
        data=BulkUploadData(
            totalUploaded=len(inserted),
            transactions=[to_transaction_response(row) for row in inserted],
        )
    )


@app.get("/api/upload/history/{user_id}", response_model=UploadHistoryResponse)
def upload_history(user_id: str) -> UploadHistoryResponse:
    user_id = require_user_id(user_id)
    try:
        with engine.begin() as conn:
            history = fetch_upload_history(conn, user_id, utc_now())
    except SQLAlchemyError as exc:
        logger.exception("Get upload history error for user %s", user_id)
        raise HTTPException(status_code=500, detail="Failed to get upload history") from exc
    return UploadHistoryResponse(data=[UploadHistoryEntry(**entry) for entry in history])


# Assistant


@app.post("/api/ai/chat", response_model=ChatResponse)
def chat(payload: ChatPayload, model: TextModel = Depends(get_model)) -> ChatResponse:
    if not payload.message or not payload.message.strip():
        raise HTTPException(status_code=400, detail="Message is required")
    user_id = require_user_id(payload.userId)
    history = [ChatTurn(role=turn.role, content=turn.content) for turn in payload.conversationHistory or []]

    try:
        reply = answer(engine, model, user_id, payload.message.strip(), date.today(), history)
    except ModelUnavailable as exc:
        raise HTTPException(status_code=500, detail="Failed to process AI request. Please try again.") from exc

    return ChatResponse(data=ChatData(message=reply.message, timestamp=utc_now(), dataUsed=reply.data_used))


@app.get("/api/ai/market-data")
def market_data() -> dict:
    return {"success": True, "data": market_snapshot()}


@app.get("/api/ai/health")
def ai_health() -> dict:
    return {"success": True, "message": "AI service is running", "timestamp": utc_now().isoformat()}
