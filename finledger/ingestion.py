from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from finledger.extraction import (
    CandidateTransaction,
    ExtractionError,
    MalformedExtraction,
    build_extraction_prompt,
    parse_extraction_response,
)
from finledger.file_parsers import FileParseError, extract_pdf_text, parse_csv, parse_spreadsheet
from finledger.llm import ModelUnavailable, TextModel

logger = logging.getLogger(__name__)

CSV_TYPES = {"text/csv"}
SPREADSHEET_TYPES = {
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}
PDF_TYPES = {"application/pdf"}
IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png"}
ALLOWED_TYPES = CSV_TYPES | SPREADSHEET_TYPES | PDF_TYPES | IMAGE_TYPES

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class IngestionStage(str, enum.Enum):
    RECEIVED = "received"
    PARSED = "parsed"
    EXTRACTED = "extracted"
    VALIDATED = "validated"
    RETURNED = "returned"


class IngestionError(Exception):
    def __init__(self, stage: IngestionStage, message: str, status_code: int = 400):
        super().__init__(message)
        self.stage = stage
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True)
class UploadedFile:
    file_name: str
    content_type: str
    contents: bytes


@dataclass
class IngestionResult:
    file_name: str
    file_type: str
    transactions: list[CandidateTransaction] = field(default_factory=list)
    discarded_count: int = 0
    stage: IngestionStage = IngestionStage.RECEIVED


def accept_upload(upload: UploadedFile | None, user_id: str | None, max_bytes: int = MAX_UPLOAD_BYTES) -> UploadedFile:
    if upload is None or not upload.contents:
        raise IngestionError(IngestionStage.RECEIVED, "No file uploaded")
    if not user_id or not str(user_id).strip():
        raise IngestionError(IngestionStage.RECEIVED, "User ID is required")
    if upload.content_type not in ALLOWED_TYPES:
        raise IngestionError(
            IngestionStage.RECEIVED,
            "Invalid file type. Upload a CSV, Excel or PDF statement.",
        )
    if len(upload.contents) > max_bytes:
        raise IngestionError(
            IngestionStage.RECEIVED,
            f"File exceeds the maximum upload size of {max_bytes // (1024 * 1024)}MB.",
            status_code=413,
        )
    return upload


def parse_upload(upload: UploadedFile) -> tuple[str, object]:
    """Return the extraction kind and the parsed content for an accepted upload."""
    content_type = upload.content_type
    try:
        if content_type in CSV_TYPES:
            return "csv", parse_csv(upload.contents)
        if content_type in SPREADSHEET_TYPES:
            return "excel", parse_spreadsheet(upload.contents)
        if content_type in PDF_TYPES:
            try:
                return "pdf", extract_pdf_text(upload.contents)
            except FileParseError as exc:
                raise IngestionError(
                    IngestionStage.PARSED,
                    "PDF processing is currently unavailable. Please try uploading a CSV or Excel file instead.",
                ) from exc
    except FileParseError as exc:
        raise IngestionError(IngestionStage.PARSED, str(exc)) from exc
    # images pass the upload filter but have no parse path
    raise IngestionError(IngestionStage.PARSED, "Unsupported file type")


def ingest_file(upload: UploadedFile | None, user_id: str | None, model: TextModel, max_bytes: int = MAX_UPLOAD_BYTES) -> IngestionResult:
    accepted = accept_upload(upload, user_id, max_bytes=max_bytes)
    result = IngestionResult(file_name=accepted.file_name, file_type=accepted.content_type)
    logger.info("Processing file: %s, Type: %s", accepted.file_name, accepted.content_type)

    file_kind, content = parse_upload(accepted)
    result.stage = IngestionStage.PARSED

    prompt = build_extraction_prompt(content, file_kind, accepted.file_name)
    try:
        reply = model.generate(prompt)
    except ModelUnavailable as exc:
        raise IngestionError(IngestionStage.EXTRACTED, "Failed to process file with AI", status_code=500) from exc
    result.stage = IngestionStage.EXTRACTED

    try:
        extraction = parse_extraction_response(reply)
    except ExtractionError as exc:
        raise IngestionError(IngestionStage.VALIDATED, str(exc), status_code=500) from exc
    except MalformedExtraction as exc:
        raise IngestionError(IngestionStage.VALIDATED, str(exc)) from exc

    if not extraction.transactions:
        raise IngestionError(IngestionStage.VALIDATED, "No valid transactions found in the file")
    result.transactions = extraction.transactions
    result.discarded_count = extraction.discarded_count
    result.stage = IngestionStage.VALIDATED

    logger.info(
        "Extracted %d transactions from %s (%d discarded)",
        len(result.transactions),
        accepted.file_name,
        result.discarded_count,
    )
    result.stage = IngestionStage.RETURNED
    return result
