import csv
import io
import logging
from typing import List, Optional, Sequence, Tuple

import pandas as pd

from app.core.config import settings
from app.core.errors import ParseError

logger = logging.getLogger(__name__)

CANDIDATE_DELIMITERS: Tuple[str, ...] = (",", "\t", "|", ";")
SUPPORTED_EXTENSIONS = {".csv": "csv", ".txt": "csv", ".tsv": "csv", ".xlsx": "excel", ".xls": "excel"}


def detect_file_type(file_name: str) -> str:
    """Return 'csv' or 'excel' for a file name, raising ParseError otherwise."""
    lowered = (file_name or "").lower()
    for extension, file_type in SUPPORTED_EXTENSIONS.items():
        if lowered.endswith(extension):
            return file_type
    raise ParseError(f"Unsupported file type for '{file_name}'. Only CSV and Excel files are supported.")


def decode_content(file_content: bytes) -> str:
    """Decode uploaded bytes, tolerating a UTF-8 BOM and falling back to latin-1."""
    try:
        return file_content.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.warning("File is not valid UTF-8; decoding as latin-1")
        return file_content.decode("latin-1")


def detect_delimiter(text: str, sample_lines: Optional[int] = None) -> str:
    """
    Pick the delimiter that splits the sampled lines most consistently.

    Each candidate is scored on whether it produces more than one header column,
    the share of sampled lines whose column count equals the header's, and the
    header column count. Ties keep the earlier candidate (comma, tab, pipe,
    semicolon).
    """
    limit = sample_lines or settings.parser_sample_lines
    lines = [line for line in text.splitlines() if line.strip()][:limit]
    if not lines:
        return ","

    best_delimiter = CANDIDATE_DELIMITERS[0]
    best_score: Tuple[bool, float, int] = (False, -1.0, 0)

    for delimiter in CANDIDATE_DELIMITERS:
        counts = [len(row) for row in csv.reader(lines, delimiter=delimiter)]
        if not counts:
            continue
        header_columns = counts[0]
        consistency = sum(1 for count in counts if count == header_columns) / len(counts)
        score = (header_columns > 1, consistency, header_columns)
        if score > best_score:
            best_delimiter, best_score = delimiter, score

    logger.debug("Detected delimiter %r (score=%s)", best_delimiter, best_score)
    return best_delimiter


def _is_blank_row(row: Sequence[str]) -> bool:
    return all(not (cell or "").strip() for cell in row)


def _fit_row(row: Sequence[str], width: int) -> List[str]:
    """Truncate or pad a row so it matches the header width."""
    cells = [(cell or "").strip() for cell in row[:width]]
    if len(cells) < width:
        cells.extend([""] * (width - len(cells)))
    return cells


def _split_header_and_rows(raw_rows: List[List[str]]) -> Tuple[List[str], List[List[str]]]:
    non_blank = [row for row in raw_rows if row and not _is_blank_row(row)]
    if not non_blank:
        raise ParseError("File is empty")

    headers = [(cell or "").strip() for cell in non_blank[0]]
    width = len(headers)
    rows = [_fit_row(row, width) for row in non_blank[1:]]

    if not rows:
        raise ParseError("File contains a header row but no data rows")
    return headers, rows


def parse_csv_content(text: str) -> Tuple[List[str], List[List[str]]]:
    """
    Parse delimited text into (headers, rows).

    The delimiter is auto-detected, quoted fields may contain the delimiter,
    blank lines are skipped and every data row is fitted to the header width.
    """
    if text.startswith("\ufeff"):
        text = text[1:]

    delimiter = detect_delimiter(text)
    try:
        raw_rows = list(csv.reader(io.StringIO(text), delimiter=delimiter))
    except csv.Error as e:
        raise ParseError(f"Could not parse delimited file: {e}") from e

    headers, rows = _split_header_and_rows(raw_rows)
    logger.info("Parsed delimited file: %d columns, %d rows (delimiter=%r)", len(headers), len(rows), delimiter)
    return headers, rows


def _excel_cell_to_str(value) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    return str(value).strip()


def parse_excel_content(file_content: bytes) -> Tuple[List[str], List[List[str]]]:
    """Read the first worksheet of an Excel workbook into (headers, rows)."""
    try:
        df = pd.read_excel(io.BytesIO(file_content), header=None, engine="openpyxl")
    except Exception as e:
        # Fall back to pandas' default engine for legacy .xls workbooks
        try:
            df = pd.read_excel(io.BytesIO(file_content), header=None)
        except Exception:
            raise ParseError(f"Could not read Excel file: {e}") from e

    raw_rows = [[_excel_cell_to_str(value) for value in record] for record in df.itertuples(index=False, name=None)]
    headers, rows = _split_header_and_rows(raw_rows)
    logger.info("Parsed Excel file: %d columns, %d rows", len(headers), len(rows))
    return headers, rows


def parse_file(file_content: bytes, file_name: str) -> Tuple[str, List[str], List[List[str]]]:
    """
    Parse raw upload bytes according to the file extension.

    Returns:
        Tuple of (file_type, headers, rows)
    """
    file_type = detect_file_type(file_name)
    if file_type == "excel":
        headers, rows = parse_excel_content(file_content)
    else:
        headers, rows = parse_csv_content(decode_content(file_content))
    return file_type, headers, rows
