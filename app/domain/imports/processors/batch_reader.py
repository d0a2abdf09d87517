"""
Windowed reads over uploaded CSV and Excel files.

Every pipeline stage scans source data through ``read_batch`` so no stage
ever holds more than one batch of rows in memory.
"""
import csv
import logging
import os
import re
from dataclasses import dataclass, field
from itertools import islice
from typing import Any, Dict, Iterator, List, Optional

import pandas as pd
from openpyxl import load_workbook

from app.core.config import settings
from app.domain.imports.exceptions import ImportPipelineError
from app.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)

CSV_EXTENSIONS = (".csv",)
EXCEL_EXTENSIONS = (".xlsx", ".xlsm")

# rows parsed per pandas chunk while scanning a CSV
CSV_CHUNK_SIZE = 5000

_INT_RE = re.compile(r"^-?(0|[1-9]\d*)$")
_FLOAT_RE = re.compile(r"^-?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?$")


class FileReadError(ImportPipelineError):
    """Raised when a source file is missing, unsupported, or cannot be parsed."""

    def __init__(self, path: str, message: str = None):
        self.path = path
        self.message = message or f"Unable to read file: {path}"
        super().__init__(self.message)


@dataclass
class SheetInfo:
    index: int
    name: str
    row_count: int
    headers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "row_count": self.row_count,
            "headers": list(self.headers),
        }


def resolve_storage_path(storage_path: str) -> str:
    if os.path.isabs(storage_path):
        return storage_path
    return os.path.join(settings.upload_dir, storage_path)


def detect_file_type(path: str) -> str:
    """Return 'csv' or 'excel' based on the file extension."""
    lowered = path.lower()
    if lowered.endswith(CSV_EXTENSIONS):
        return "csv"
    if lowered.endswith(EXCEL_EXTENSIONS):
        return "excel"
    raise FileReadError(path, f"Unsupported file type: {os.path.basename(path)}")


def _coerce_csv_cell(value: Any) -> Any:
    """Type a raw CSV string: blanks to None, numbers, and true/false."""
    if value is None:
        return None
    if not isinstance(value, str):
        return value
    if value.strip() == "":
        return None
    text = value.strip()
    if _INT_RE.match(text):
        return int(text)
    if _FLOAT_RE.match(text) and not (text.startswith("0") and len(text) > 1 and text[1] != "."):
        return float(text)
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return value


def _clean_excel_cell(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    if value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime().isoformat()
    return make_json_safe(value)


def _normalize_headers(columns) -> List[str]:
    headers = []
    for position, column in enumerate(columns):
        name = str(column).strip() if column is not None else ""
        if not name or name.startswith("Unnamed:"):
            name = f"column_{position + 1}"
        headers.append(name)
    return headers


def _is_blank_record(record: Dict[str, Any]) -> bool:
    return all(value is None or (isinstance(value, str) and not value.strip()) for value in record.values())


def _iter_csv_records(path: str) -> Iterator[Dict[str, Any]]:
    """Yield typed data records in file order, leaving out blank rows."""
    try:
        reader = pd.read_csv(path, dtype=str, keep_default_na=False, chunksize=CSV_CHUNK_SIZE)
    except pd.errors.EmptyDataError:
        return
    except pd.errors.ParserError as exc:
        raise FileReadError(path, f"Unable to parse CSV file {os.path.basename(path)}: {exc}") from exc

    with reader:
        try:
            for chunk in reader:
                chunk.columns = _normalize_headers(chunk.columns)
                for record in chunk.to_dict("records"):
                    typed = {key: _coerce_csv_cell(value) for key, value in record.items()}
                    if not _is_blank_record(typed):
                        yield typed
        except pd.errors.ParserError as exc:
            raise FileReadError(path, f"Unable to parse CSV file {os.path.basename(path)}: {exc}") from exc


def _read_csv_window(path: str, start_row: int, limit: int) -> List[Dict[str, Any]]:
    return list(islice(_iter_csv_records(path), start_row, start_row + limit))


def _iter_excel_records(path: str, sheet_index: int) -> Iterator[Dict[str, Any]]:
    try:
        df = pd.read_excel(path, sheet_name=sheet_index, engine="openpyxl", dtype=object)
    except (ValueError, IndexError, KeyError) as exc:
        raise FileReadError(path, f"Unable to read sheet {sheet_index} of {os.path.basename(path)}: {exc}") from exc

    df.columns = _normalize_headers(df.columns)
    for record in df.to_dict("records"):
        cleaned = {key: _clean_excel_cell(value) for key, value in record.items()}
        if not _is_blank_record(cleaned):
            yield cleaned


def _read_excel_window(path: str, sheet_index: int, start_row: int, limit: int) -> List[Dict[str, Any]]:
    return list(islice(_iter_excel_records(path, sheet_index), start_row, start_row + limit))


def read_batch(
    path: str,
    *,
    start_row: int,
    limit: int,
    sheet_index: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Read up to ``limit`` data rows starting at 0-based data row ``start_row``.

    Returns an empty list once the window is past the end of the sheet.
    """
    if not os.path.exists(path):
        raise FileReadError(path, f"File not found: {path}")

    file_type = detect_file_type(path)
    if file_type == "csv":
        rows = _read_csv_window(path, start_row, limit)
    else:
        rows = _read_excel_window(path, sheet_index or 0, start_row, limit)

    logger.debug("Read %d rows from %s (start_row=%d, limit=%d)", len(rows), path, start_row, limit)
    return rows


def _count_csv_data_rows(path: str) -> SheetInfo:
    with open(path, newline="", encoding="utf-8", errors="ignore") as handle:
        reader = csv.reader(handle)
        headers = next(reader, None) or []
    # counted with the same blank-row rule as the windows
    row_count = sum(1 for _ in _iter_csv_records(path)) if headers else 0
    name = os.path.splitext(os.path.basename(path))[0]
    return SheetInfo(index=0, name=name, row_count=row_count, headers=_normalize_headers(headers))


def _list_excel_sheets(path: str) -> List[SheetInfo]:
    try:
        workbook = load_workbook(path, read_only=True, data_only=True)
    except Exception as exc:
        raise FileReadError(path, f"Unable to open workbook {os.path.basename(path)}: {exc}") from exc

    sheets: List[SheetInfo] = []
    try:
        for index, worksheet in enumerate(workbook.worksheets):
            headers: Optional[List[str]] = None
            row_count = 0
            for row in worksheet.iter_rows(values_only=True):
                has_values = any(cell is not None and str(cell).strip() != "" for cell in row)
                if headers is None:
                    if has_values:
                        headers = _normalize_headers(row)
                    continue
                if has_values:
                    row_count += 1
            if headers is None or row_count == 0:
                logger.info("Skipping empty sheet '%s' in %s", worksheet.title, path)
                continue
            sheets.append(SheetInfo(index=index, name=worksheet.title, row_count=row_count, headers=headers))
    finally:
        workbook.close()
    return sheets


def list_sheets(path: str) -> List[SheetInfo]:
    """Describe every sheet that holds data rows (a CSV is a single sheet)."""
    if not os.path.exists(path):
        raise FileReadError(path, f"File not found: {path}")

    if detect_file_type(path) == "csv":
        info = _count_csv_data_rows(path)
        return [info] if info.headers else []
    return _list_excel_sheets(path)
