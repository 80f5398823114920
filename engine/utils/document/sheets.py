"""
Spreadsheet extraction: workbook sheets rendered as CSV text.

Usage:
    from utils.document.sheets import workbook_to_csv, decode_csv

    for sheet_name, csv_text in workbook_to_csv(data, max_sheets=8, max_chars=50_000):
        ...
"""

from __future__ import annotations

import io
import csv
from typing import Any, List, Tuple

import openpyxl

from utils.core.log import get_logger
from utils.core.errors import DocumentExtractionError


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return " ".join(str(value).split())


def rows_to_csv(rows: List[List[Any]], max_chars: int | None = None) -> str:
    """CSV for non-empty rows, trailing empty cells trimmed, cut at `max_chars`."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    for row in rows:
        cells = [_cell_text(v) for v in row]
        while cells and not cells[-1]:
            cells.pop()
        if not cells:
            continue
        writer.writerow(cells)
        if max_chars is not None and buf.tell() >= max_chars:
            break
    text = buf.getvalue()
    if max_chars is not None and len(text) > max_chars:
        text = text[:max_chars].rsplit("\n", 1)[0]
    return text.strip()


def workbook_to_csv(
    data: bytes, *, max_sheets: int = 8, max_chars: int = 50_000, filename: str = ""
) -> List[Tuple[str, str]]:
    """
    (sheet name, CSV text) for the first `max_sheets` non-empty sheets.

    Formulas are read as their cached values.
    """
    logger = get_logger()
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as e:
        raise DocumentExtractionError(f"openpyxl could not open {filename}: {e}") from e

    out: List[Tuple[str, str]] = []
    try:
        for sheet_name in workbook.sheetnames:
            if len(out) >= max_sheets:
                logger.debug(f"{filename}: sheet cap {max_sheets} reached")
                break
            rows = [list(r) for r in workbook[sheet_name].iter_rows(values_only=True)]
            text = rows_to_csv(rows, max_chars)
            if text:
                out.append((sheet_name, text))
    finally:
        workbook.close()
    return out


def decode_csv(data: bytes, max_chars: int | None = None) -> str:
    """Decode CSV bytes (BOM tolerant) and re-emit normalized CSV text."""
    text = data.decode("utf-8-sig", errors="replace")
    try:
        rows = list(csv.reader(io.StringIO(text)))
    except csv.Error as e:
        raise DocumentExtractionError(f"Unreadable CSV: {e}") from e
    return rows_to_csv(rows, max_chars)
