from __future__ import annotations

import csv
import math
import re
from dataclasses import dataclass, field
from io import BytesIO, StringIO
from typing import Any

import pandas as pd
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from caseflow.core.config import settings
from caseflow.schemas.production import CASE_NUMBER_PATTERN, COLUMN_MAP, CaseRecord, RowError
from caseflow.services.production_errors import EmptyFileError, UnreadableFileError

ALLOWED_EXTENSIONS = ("xlsx", "xls", "csv")
EXPECTED_HEADER_DESCRIPTION = (
    "Expected headers at row 1: A=Case No, B=No. of Critical Parts, "
    "C=Total Lines, D=EKC, E=EKM"
)
HEADER_ROW_INDEX = 0

# Accepted header synonyms per column position, compared against normalized text.
_HEADER_SYNONYMS: tuple[tuple[str, ...], ...] = (
    ("caseno", "case#", "case"),
    ("no.ofcriticalparts", "criticalparts"),
    ("totallines",),
    ("ekc",),
    ("ekm",),
)
_NUMERIC_FIELDS = ("criticalParts", "totalLines", "domesticLines", "bulkLines")
_CASE_NUMBER_RE = re.compile(CASE_NUMBER_PATTERN)

_TEMPLATE_SHEET = "Template"
_TEMPLATE_SAMPLE_ROWS = (
    ["CASE-001", 2, 10, 7, 3],
    ["CASE-002", 0, 5, 2, 3],
)
_HEADER_FILL = PatternFill("solid", fgColor="FCE4D6")
_HEADER_FONT = Font(bold=True, color="9C0006")


@dataclass
class IncomingFile:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        name = (self.filename or "").strip()
        if "." not in name:
            return ""
        return name.rsplit(".", 1)[-1].lower()


@dataclass
class TabularGrid:
    rows: list[list[Any]]
    sheet_name: str | None = None


@dataclass
class ParsedBatch:
    file_name: str
    records: list[CaseRecord] = field(default_factory=list)
    errors: dict[int, list[str]] = field(default_factory=dict)
    sheet_name: str | None = None
    header_row_index: int = HEADER_ROW_INDEX

    @property
    def case_numbers(self) -> list[str]:
        return [record.case_number for record in self.records]

    def row_errors(self) -> list[RowError]:
        return [RowError(row=row, messages=messages) for row, messages in sorted(self.errors.items())]


def accept_file(incoming: IncomingFile) -> list[str]:
    errors: list[str] = []
    if incoming.extension not in ALLOWED_EXTENSIONS:
        errors.append("Invalid file format. Allowed: .xlsx, .xls, .csv")
    max_bytes = int(settings.PRODUCTION_UPLOAD_MAX_BYTES)
    if incoming.size > max_bytes:
        errors.append(f"File size exceeds {max_bytes // (1024 * 1024)}MB limit")
    return errors


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def _is_blank_row(row: list[Any] | tuple[Any, ...] | None) -> bool:
    return not row or all(_is_blank(cell) for cell in row)


def _trim_trailing_blank_rows(rows: list[list[Any]]) -> list[list[Any]]:
    end = len(rows)
    while end and _is_blank_row(rows[end - 1]):
        end -= 1
    return rows[:end]


def _read_xlsx(content: bytes) -> TabularGrid:
    try:
        workbook = load_workbook(filename=BytesIO(content), read_only=True, data_only=True)
    except Exception as exc:
        raise UnreadableFileError(message=f"Failed to parse file: {exc}") from exc
    try:
        if not workbook.sheetnames:
            raise EmptyFileError()
        sheet_name = workbook.sheetnames[0]
        rows = [list(row) for row in workbook[sheet_name].iter_rows(values_only=True)]
    finally:
        workbook.close()
    return TabularGrid(rows=rows, sheet_name=sheet_name)


def _read_xls(content: bytes) -> TabularGrid:
    try:
        sheets = pd.read_excel(BytesIO(content), sheet_name=None, header=None, engine="xlrd")
    except Exception as exc:
        raise UnreadableFileError(message=f"Failed to parse file: {exc}") from exc
    if not sheets:
        raise EmptyFileError()
    sheet_name, frame = next(iter(sheets.items()))
    frame = frame.astype(object).where(pd.notna(frame), None)
    return TabularGrid(rows=frame.values.tolist(), sheet_name=str(sheet_name))


def _read_csv(content: bytes) -> TabularGrid:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise UnreadableFileError(message=f"Failed to parse file: {exc}") from exc
    try:
        rows = [list(row) for row in csv.reader(StringIO(text))]
    except csv.Error as exc:
        raise UnreadableFileError(message=f"Failed to parse file: {exc}") from exc
    return TabularGrid(rows=rows, sheet_name=None)


def parse_grid(incoming: IncomingFile) -> TabularGrid:
    """Decode the spreadsheet container into raw rows; row 0 is the header candidate."""
    readers = {"xlsx": _read_xlsx, "xls": _read_xls, "csv": _read_csv}
    reader = readers.get(incoming.extension)
    if reader is None:
        raise UnreadableFileError(message=f"Unsupported file type '.{incoming.extension}'")
    grid = reader(incoming.content)
    grid.rows = _trim_trailing_blank_rows(grid.rows)
    if not grid.rows:
        raise EmptyFileError()
    return grid


def normalize_header(value: Any) -> str:
    return re.sub(r"\s+", "", str(value if value is not None else "").strip().lower())


def match_header(header_row: list[Any] | tuple[Any, ...]) -> bool:
    cells = list(header_row or [])
    for index, synonyms in enumerate(_HEADER_SYNONYMS):
        normalized = normalize_header(cells[index]) if index < len(cells) else ""
        if not any(synonym in normalized for synonym in synonyms):
            return False
    return True


def _case_number_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _coerce_count(value: Any) -> int | float | None:
    """Return the numeric value of a cell, or None when it is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def validate_row(cells: list[Any], row_number: int) -> tuple[CaseRecord | None, list[str]]:
    padded = list(cells) + [None] * max(0, 5 - len(cells))
    messages: list[str] = []

    case_number = _case_number_text(padded[0])
    if not case_number:
        messages.append("Case number is required")
    elif not _CASE_NUMBER_RE.fullmatch(case_number):
        messages.append("Invalid case number format")

    counts: dict[str, int | float] = {}
    for field_name, raw in zip(_NUMERIC_FIELDS, padded[1:5]):
        number = _coerce_count(raw)
        if number is None:
            messages.append(f"{field_name} must be a number")
        elif number < 0:
            messages.append(f"{field_name} must be >= 0")
        else:
            counts[field_name] = number

    if messages:
        return None, messages
    record = CaseRecord(
        case_number=case_number,
        critical_parts=counts["criticalParts"],
        total_lines=counts["totalLines"],
        domestic_lines=counts["domesticLines"],
        bulk_lines=counts["bulkLines"],
        source_row=row_number,
    )
    return record, []


def validate_rows(
    grid: TabularGrid,
    header_row_index: int = HEADER_ROW_INDEX,
    *,
    file_name: str = "",
) -> ParsedBatch:
    """
    Validate every data row after the header, positionally (A-E).

    A row with any failing field lands in `errors` keyed by its 1-based
    spreadsheet row number and contributes nothing to `records`.
    """
    batch = ParsedBatch(
        file_name=file_name,
        sheet_name=grid.sheet_name,
        header_row_index=header_row_index,
    )
    for index in range(header_row_index + 1, len(grid.rows)):
        cells = grid.rows[index]
        if _is_blank_row(cells):
            continue
        record, messages = validate_row(list(cells), index + 1)
        if messages:
            batch.errors[index + 1] = messages
        else:
            batch.records.append(record)
    return batch


def build_template_workbook() -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = _TEMPLATE_SHEET
    ws.append(list(COLUMN_MAP.values()))
    for row in _TEMPLATE_SAMPLE_ROWS:
        ws.append(list(row))
    for col_idx in range(1, len(COLUMN_MAP) + 1):
        cell = ws.cell(row=1, column=col_idx)
        cell.fill = _HEADER_FILL
        cell.font = _HEADER_FONT
        ws.column_dimensions[get_column_letter(col_idx)].width = 24
    ws.freeze_panes = "A2"

    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()
