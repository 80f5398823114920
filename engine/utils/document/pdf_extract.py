"""
PDF extraction into pages of text blocks and tables.

Two interchangeable extractors share one result shape:

    {"pages": [{"number": 1, "text_blocks": ["..."], "tables": [[["a", "b"], ...]]}]}

- `RemotePdfExtractor` POSTs the raw bytes to the extraction service.
- `LocalPdfExtractor` runs pdfplumber in-process.

`get_pdf_extractor(mode, url)` picks one from configuration.
"""

from __future__ import annotations

import io
from typing import Any, Callable, Dict, List, Optional

import httpx
import pdfplumber

from utils.core.log import get_logger
from utils.core.errors import ConfigurationError, DocumentExtractionError

PdfExtractor = Callable[[bytes, str], Dict[str, Any]]


def _clean_cell(value: Any) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split())


def normalize_result(data: Any) -> Dict[str, Any]:
    """Coerce an extractor answer into the shared page shape, dropping empties."""
    pages_in = data.get("pages") if isinstance(data, dict) else None
    if not isinstance(pages_in, list):
        raise DocumentExtractionError("Extractor response has no 'pages' list")

    pages: List[Dict[str, Any]] = []
    for pos, page in enumerate(pages_in, start=1):
        if not isinstance(page, dict):
            continue
        number = page.get("number") or page.get("page") or pos
        blocks = page.get("text_blocks") or []
        if isinstance(blocks, str):
            blocks = [blocks]
        text_blocks = [str(b).strip() for b in blocks if b and str(b).strip()]
        tables = []
        for table in page.get("tables") or []:
            rows = [
                [_clean_cell(c) for c in row]
                for row in (table or [])
                if isinstance(row, (list, tuple)) and any(_clean_cell(c) for c in row)
            ]
            if rows:
                tables.append(rows)
        pages.append({"number": int(number), "text_blocks": text_blocks, "tables": tables})
    return {"pages": pages}


class LocalPdfExtractor:
    """pdfplumber page text plus detected tables."""

    def __call__(self, data: bytes, filename: str) -> Dict[str, Any]:
        logger = get_logger()
        pages = []
        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                for page_num, page in enumerate(pdf.pages, start=1):
                    text = page.extract_text() or ""
                    tables = [t for t in (page.extract_tables() or []) if t]
                    pages.append(
                        {
                            "number": page_num,
                            "text_blocks": [text] if text.strip() else [],
                            "tables": tables,
                        }
                    )
        except Exception as e:
            raise DocumentExtractionError(f"pdfplumber failed on {filename}: {e}") from e
        logger.debug(f"pdfplumber extracted {len(pages)} pages from {filename}")
        return normalize_result({"pages": pages})


class RemotePdfExtractor:
    """Client for the PDF extraction service."""

    def __init__(self, url: str, timeout: float = 120.0, client: Optional[httpx.Client] = None):
        if not url:
            raise ConfigurationError("Missing PDF_EXTRACTOR_URL")
        self.url = url
        self.timeout = timeout
        self._client = client

    def __call__(self, data: bytes, filename: str) -> Dict[str, Any]:
        logger = get_logger()
        headers = {"Content-Type": "application/pdf", "X-File-Name": filename}
        client = self._client or httpx.Client(timeout=self.timeout)
        try:
            resp = client.post(self.url, content=data, headers=headers)
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DocumentExtractionError(f"PDF extractor failed on {filename}: {e}") from e
        finally:
            if self._client is None:
                client.close()
        result = normalize_result(payload)
        logger.debug(f"Remote extractor returned {len(result['pages'])} pages for {filename}")
        return result


def get_pdf_extractor(mode: str = "auto", url: str = "", timeout: float = 120.0) -> PdfExtractor:
    """
    Extractor for `mode`: 'remote', 'local' or 'auto'.

    Raises:
        ConfigurationError: remote mode without a URL, or an unknown mode
    """
    mode = (mode or "auto").strip().lower()
    if mode == "remote":
        return RemotePdfExtractor(url, timeout)
    if mode == "local":
        return LocalPdfExtractor()
    if mode == "auto":
        return RemotePdfExtractor(url, timeout) if url else LocalPdfExtractor()
    raise ConfigurationError(f"Unknown pdf_extractor_mode: {mode}")
