"""
Transaction extraction through the generative model.

Builds the extraction prompt for parsed statement rows (or raw PDF text), and turns
the model's free-text reply into validated candidate transactions. The reply is
treated as a strict contract: a JSON object holding a ``transactions`` array.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel, ValidationError, field_validator

logger = logging.getLogger(__name__)

CATEGORIES = (
    "Food & Drinks",
    "Shopping",
    "Transportation",
    "Entertainment",
    "Bills",
    "UPI",
    "Banking",
    "Investment",
    "Healthcare",
    "Education",
    "Travel",
    "Subscription",
    "Income",
    "Other",
)
FALLBACK_CATEGORY = "Other"
REQUIRED_FIELDS = ("date", "amount", "type", "category")

_FENCE_PATTERN = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)
_CATEGORY_LOOKUP = {name.lower(): name for name in CATEGORIES}

# amounts must fit Numeric(12, 2)
_CENTS = Decimal("0.01")
MAX_AMOUNT = Decimal("10000000000")
_CURRENCY_PREFIX = re.compile(r"^(?:rs\.?|inr\.?|₹|\$|usd)\s*", re.IGNORECASE)
_GROUPED_AMOUNT = re.compile(r"^\d{1,3}(?:,\d{2,3})+(?:\.\d+)?$")
_PLAIN_AMOUNT = re.compile(r"^\d+(?:\.\d+)?$")


class ExtractionError(RuntimeError):
    """Raised when the model reply is not usable structured data."""


class MalformedExtraction(ValueError):
    """Raised when the reply parses but does not follow the output contract."""


class CandidateTransaction(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    date: date
    type: str
    amount: Decimal
    category: str

    @field_validator("title", "description", "reference", mode="before")
    @classmethod
    def _clean_optional_text(cls, value):
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value):
        normalized = str(value).strip().lower()
        if normalized not in ("debit", "credit"):
            raise ValueError("type must be debit or credit")
        return normalized

    @field_validator("amount", mode="before")
    @classmethod
    def _normalize_amount(cls, value):
        if isinstance(value, bool) or not isinstance(value, (str, int, float, Decimal)):
            raise ValueError("amount must be numeric")
        text = clean_amount_text(value) if isinstance(value, str) else str(value)
        try:
            amount = abs(Decimal(text))
        except InvalidOperation as exc:
            raise ValueError("amount must be numeric") from exc
        if not amount.is_finite():
            raise ValueError("amount must be numeric")
        amount = amount.quantize(_CENTS, rounding=ROUND_HALF_UP)
        if amount == 0:
            raise ValueError("amount must be non-zero")
        if amount >= MAX_AMOUNT:
            raise ValueError("amount is too large")
        return amount

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value):
        return _CATEGORY_LOOKUP.get(str(value).strip().lower(), FALLBACK_CATEGORY)

    def to_payload(self) -> dict:
        return {
            "title": self.title,
            "description": self.description or self.title,
            "reference": self.reference,
            "date": self.date.isoformat(),
            "type": self.type,
            "amount": self.amount,
            "category": self.category,
        }


@dataclass(frozen=True)
class ExtractionResult:
    transactions: list[CandidateTransaction] = field(default_factory=list)
    discarded_count: int = 0


def build_extraction_prompt(content, file_kind: str, file_name: str) -> str:
    if file_kind == "pdf":
        source = "PDF text content"
        body = f"Content: {content}"
    else:
        source = f"{file_kind.upper()} data"
        body = f"Data: {json.dumps(content, indent=2, default=str)}"
    categories = ", ".join(CATEGORIES)

    return f"""You are a financial data processor. Analyze the following {source} and extract transactions.

File: {file_name}
{body}

Return the transactions in exactly this JSON format:
{{
  "transactions": [
    {{
      "title": "Short, user-friendly transaction title",
      "description": "Exact transaction description from the file",
      "reference": "Transaction ID or reference number",
      "date": "YYYY-MM-DD",
      "type": "debit" or "credit",
      "amount": 123.45,
      "category": "One of: {categories}"
    }}
  ]
}}

Rules:
1. Title: a short, informal title such as "Coffee at Starbucks", "Uber ride" or "Salary payment". No codes or jargon.
2. Description: copy the description exactly as it appears in the file.
3. Reference: use the transaction ID or reference number when present, otherwise generate one like "TXN-001".
4. Date: convert every date to YYYY-MM-DD.
5. Type and amount: amounts are always positive. Money leaving the account is "debit", money received is "credit".
6. Category: choose exactly one of {categories}.
7. Return only valid JSON with no explanations or extra text."""


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    match = _FENCE_PATTERN.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def clean_amount_text(value: str) -> str:
    """Drop sign, a known currency prefix and thousands separators from a textual amount.

    What remains must be a plain decimal; anything else (decimal commas, stray
    symbols) is rejected instead of being rewritten into a different number.
    """
    text = value.strip().lstrip("+-").strip()
    text = _CURRENCY_PREFIX.sub("", text, count=1).lstrip("+-").strip()
    if _GROUPED_AMOUNT.match(text):
        text = text.replace(",", "")
    if not _PLAIN_AMOUNT.match(text):
        raise ValueError(f"amount is not a plain decimal: {value!r}")
    return text


def parse_extraction_response(text: str) -> ExtractionResult:
    cleaned = strip_code_fences(text)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.error("AI response could not be parsed: %s", text)
        raise ExtractionError("AI response could not be parsed as valid JSON.") from exc

    if not isinstance(payload, dict) or not isinstance(payload.get("transactions"), list):
        raise MalformedExtraction("Failed to extract transaction data from file.")

    candidates: list[CandidateTransaction] = []
    discarded = 0
    for item in payload["transactions"]:
        candidate = validate_candidate(item)
        if candidate is None:
            discarded += 1
        else:
            candidates.append(candidate)

    if discarded:
        logger.info("Discarded %d extracted rows that were incomplete or malformed", discarded)
    return ExtractionResult(transactions=candidates, discarded_count=discarded)


def validate_candidate(item) -> Optional[CandidateTransaction]:
    if not isinstance(item, dict):
        return None
    if any(not item.get(name) for name in REQUIRED_FIELDS):
        return None
    if not (item.get("description") or item.get("title")):
        return None
    try:
        return CandidateTransaction.model_validate(item)
    except (ValidationError, ArithmeticError):
        return None
