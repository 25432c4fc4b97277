from __future__ import annotations

import csv
import io
import logging
import math
from datetime import date, datetime, time

import numpy as np
import pandas as pd
import pdfplumber

logger = logging.getLogger(__name__)

Row = dict[str, object]


class FileParseError(ValueError):
    """Raised when an uploaded file cannot be turned into rows or text."""


def parse_csv(contents: bytes) -> list[Row]:
    try:
        decoded = contents.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise FileParseError("CSV must be UTF-8 encoded.") from exc

    reader = csv.reader(io.StringIO(decoded), strict=True)
    try:
        raw_rows = [row for row in reader if row]
    except csv.Error as exc:
        raise FileParseError(f"Malformed CSV: {exc}") from exc

    if not raw_rows:
        raise FileParseError("CSV missing header row.")

    fieldnames = header_names(raw_rows[0])
    rows: list[Row] = []
    for line_number, values in enumerate(raw_rows[1:], start=2):
        if len(values) > len(fieldnames):
            raise FileParseError(f"Malformed CSV: row {line_number} has more cells than the header.")
        rows.append(row_to_dict(fieldnames, values))
    return rows


def parse_spreadsheet(contents: bytes) -> list[Row]:
    """Read the first sheet of an .xls/.xlsx workbook, using its first row as header."""
    try:
        frame = pd.read_excel(io.BytesIO(contents), sheet_name=0, header=None, dtype=object)
    except Exception as exc:
        logger.exception("Error parsing spreadsheet")
        raise FileParseError("Failed to parse Excel file.") from exc

    records = [[clean_cell(value) for value in record] for record in frame.itertuples(index=False)]
    records = [record for record in records if any(value is not None for value in record)]
    if not records:
        return []

    fieldnames = header_names(["" if value is None else str(value) for value in records[0]])
    return [row_to_dict(fieldnames, record) for record in records[1:]]


def extract_pdf_text(contents: bytes) -> str:
    try:
        with pdfplumber.open(io.BytesIO(contents)) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
    except Exception as exc:
        logger.exception("Error extracting text from PDF")
        raise FileParseError("Failed to extract text from PDF.") from exc

    text = "\n".join(pages).strip()
    if not text:
        raise FileParseError("PDF contains no extractable text.")
    return text


def header_names(values: list[str]) -> list[str]:
    return [clean_text(value) or f"col_{index}" for index, value in enumerate(values, start=1)]


def row_to_dict(fieldnames: list[str], values: list) -> Row:
    padded = list(values) + [None] * (len(fieldnames) - len(values))
    return dict(zip(fieldnames, padded))


def clean_cell(value: object) -> object:
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, datetime):
        if value.time() == time.min:
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, np.generic):
        return clean_cell(value.item())
    if isinstance(value, str):
        return value.strip() or None
    return value


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""
