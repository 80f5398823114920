"""
Bid discovery and document loading.

Turns a job's bids into `ContractorBid` groups, then each contractor's
documents into named `EvidenceFragment`s:

- PDF table  -> "{key} :: page {n} :: table {i}" (rows as CSV)
- PDF text   -> "{key} :: page {n} :: text"
- XLSX sheet -> "{key} :: {sheet}" (CSV)
- CSV        -> "{key}"

Documents are read one at a time per contractor. A document that cannot be
read is logged and skipped; the caller decides whether what is left is
enough.
"""

from __future__ import annotations

import hashlib
from os.path import basename, splitext
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from utils.core.log import get_logger
from utils.core.errors import DocumentExtractionError
from utils.document.pdf_extract import PdfExtractor
from utils.document.sheets import decode_csv, rows_to_csv, workbook_to_csv
from tools.bid_level.bid_level_config import LevelingLimits
from tools.bid_level.bid_level_models import ContractorBid, EvidenceFragment

PDF_EXTENSIONS = {".pdf"}
WORKBOOK_EXTENSIONS = {".xlsx", ".xlsm"}
CSV_EXTENSIONS = {".csv"}
SUPPORTED_EXTENSIONS = PDF_EXTENSIONS | WORKBOOK_EXTENSIONS | CSV_EXTENSIONS

UNASSIGNED = "unassigned"


def extension(key: str) -> str:
    return splitext(key)[1].lower()


def is_supported(key: str) -> bool:
    return extension(key) in SUPPORTED_EXTENSIONS


def _contractor_names(meta: Mapping[str, Any]) -> Dict[str, str]:
    raw = meta.get("contractors") or {}
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items() if v}
    names = {}
    for entry in raw if isinstance(raw, list) else []:
        if isinstance(entry, dict) and entry.get("id"):
            names[str(entry["id"])] = str(entry.get("name") or entry["id"])
    return names


def _supported_documents(bid_id: str, keys: Iterable[str], limit: int) -> List[str]:
    logger = get_logger()
    kept = []
    for key in keys:
        if not is_supported(key):
            logger.warning(f"Skipping unsupported document {key} on bid {bid_id}")
            continue
        if len(kept) >= limit:
            logger.info(f"Bid {bid_id}: document cap {limit} reached, ignoring {key}")
            continue
        kept.append(key)
    return kept


def bids_from_meta(
    meta: Mapping[str, Any], limits: LevelingLimits = LevelingLimits()
) -> List[ContractorBid]:
    """
    Group `meta["bids"]` by contractor, first-seen order.

    Each bid is `{bid_id, contractor_id, name, documents}`; bids without a
    contractor are grouped under "unassigned".
    """
    names = _contractor_names(meta)
    grouped: Dict[str, Dict[str, Any]] = {}
    for pos, bid in enumerate(meta.get("bids") or [], start=1):
        if not isinstance(bid, dict):
            continue
        bid_id = str(bid.get("bid_id") or bid.get("id") or f"bid-{pos}")
        cid = str(bid.get("contractor_id") or bid.get("contractorId") or UNASSIGNED)
        entry = grouped.setdefault(
            cid,
            {"name": names.get(cid) or bid.get("name") or cid, "bids": [], "docs": []},
        )
        entry["bids"].append(bid_id)
        docs = bid.get("documents") or []
        if isinstance(docs, str):
            docs = [docs]
        entry["docs"].extend(_supported_documents(bid_id, docs, limits.max_docs_per_bid))
    return [
        ContractorBid(cid, str(e["name"]), tuple(e["bids"]), tuple(dict.fromkeys(e["docs"])))
        for cid, e in grouped.items()
    ]


def bids_from_store(
    job_id: str,
    company_id: str,
    division: str,
    meta: Mapping[str, Any],
    *,
    list_subdirectories: Callable[[str, str, str], List[str]],
    list_files: Callable[[str, str, str], List[str]],
    limits: LevelingLimits = LevelingLimits(),
) -> List[ContractorBid]:
    """One bid per contractor folder under bid_level/{division}/."""
    names = _contractor_names(meta)
    base = f"bid_level/{division}"
    bids = []
    for contractor in list_subdirectories(job_id, base, company_id):
        keys = list_files(job_id, f"{base}/{contractor}/", company_id)
        docs = _supported_documents(contractor, keys, limits.max_docs_per_bid)
        bids.append(ContractorBid(contractor, names.get(contractor, contractor), (contractor,), tuple(docs)))
    return bids


def discover_bids(
    job_id: str,
    company_id: str,
    division: str,
    meta: Optional[Mapping[str, Any]],
    *,
    list_subdirectories: Callable[[str, str, str], List[str]],
    list_files: Callable[[str, str, str], List[str]],
    limits: LevelingLimits = LevelingLimits(),
) -> List[ContractorBid]:
    """Bids from meta when given, else from the object store; capped at max_contractors."""
    logger = get_logger()
    meta = meta or {}
    if meta.get("bids"):
        bids = bids_from_meta(meta, limits)
    else:
        bids = bids_from_store(
            job_id,
            company_id,
            division,
            meta,
            list_subdirectories=list_subdirectories,
            list_files=list_files,
            limits=limits,
        )
    if len(bids) > limits.max_contractors:
        logger.warning(
            f"{len(bids)} contractors found; leveling the first {limits.max_contractors}"
        )
        bids = bids[: limits.max_contractors]
    return bids


class DocumentLoader:
    def __init__(
        self,
        fetch_bytes: Callable[[str], bytes],
        pdf_extractor: Optional[PdfExtractor] = None,
        limits: LevelingLimits = LevelingLimits(),
        *,
        cache_get: Optional[Callable[[str], Optional[Dict[str, Any]]]] = None,
        cache_put: Optional[Callable[[str, str, Dict[str, Any]], None]] = None,
    ):
        self.fetch_bytes = fetch_bytes
        self.pdf_extractor = pdf_extractor
        self.limits = limits
        self.cache_get = cache_get
        self.cache_put = cache_put

    def load_bid(self, bid: ContractorBid) -> List[EvidenceFragment]:
        logger = get_logger()
        fragments: List[EvidenceFragment] = []
        for key in bid.document_keys:
            try:
                doc_fragments = self.load_document(key)
            except (DocumentExtractionError, FileNotFoundError) as e:
                logger.warning(f"Skipping {key} for {bid.contractor_id}: {e}")
                continue
            logger.debug(f"{key}: {len(doc_fragments)} fragments")
            fragments.extend(doc_fragments)
        return fragments

    def load_document(self, key: str) -> List[EvidenceFragment]:
        ext = extension(key)
        if ext not in SUPPORTED_EXTENSIONS:
            raise DocumentExtractionError(f"Unsupported document type: {key}")
        data = self.fetch_bytes(key)
        if not data:
            return []
        if ext in PDF_EXTENSIONS:
            return self._pdf_fragments(key, data)
        if ext in WORKBOOK_EXTENSIONS:
            sheets = workbook_to_csv(
                data,
                max_sheets=self.limits.max_sheets_per_workbook,
                max_chars=self.limits.csv_chars_per_sheet,
                filename=key,
            )
            return [EvidenceFragment(f"{key} :: {name}", text) for name, text in sheets]
        text = decode_csv(data, self.limits.csv_chars_per_sheet)
        return [EvidenceFragment(key, text)] if text else []

    def _extract_pdf(self, key: str, data: bytes) -> Dict[str, Any]:
        logger = get_logger()
        if self.pdf_extractor is None:
            raise DocumentExtractionError(f"No PDF extractor configured for {key}")
        digest = hashlib.sha256(data).hexdigest()
        if self.cache_get is not None:
            try:
                cached = self.cache_get(digest)
            except Exception as e:
                logger.warning(f"Extraction cache read failed for {key}: {e}")
                cached = None
            if cached:
                logger.debug(f"Extraction cache hit for {key} ({digest[:12]})")
                return cached

        result = self.pdf_extractor(data, basename(key))
        if self.cache_put is not None:
            try:
                self.cache_put(digest, key, result)
            except Exception as e:
                logger.warning(f"Extraction cache write failed for {key}: {e}")
        return result

    def _pdf_fragments(self, key: str, data: bytes) -> List[EvidenceFragment]:
        result = self._extract_pdf(key, data)
        fragments = []
        for page in result.get("pages", []):
            number = page.get("number")
            for i, table in enumerate(page.get("tables") or [], start=1):
                text = rows_to_csv(table)
                if text:
                    fragments.append(EvidenceFragment(f"{key} :: page {number} :: table {i}", text))
            text = "\n".join(b for b in page.get("text_blocks") or [] if b and b.strip()).strip()
            if text:
                fragments.append(EvidenceFragment(f"{key} :: page {number} :: text", text))
        return fragments
