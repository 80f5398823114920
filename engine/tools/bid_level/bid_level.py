"""
Bid leveling queue-facing orchestration.

- GET: poll a processing job's status
- POST: enqueue one division (or subdivision) of a job for leveling
- the worker processor calls `_do_level_workflow` defined here

Pipeline: load documents -> extract candidate scope -> score each contractor
sequentially -> reconcile -> merge into one report.
"""

from __future__ import annotations

import time
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from utils.core.log import pid_tool_logger, set_logger, get_logger
from utils.core.errors import NoInputError, make_error_payload
from utils.db.job_queue import get_cached_extraction, save_cached_extraction
from utils.document.pdf_extract import PdfExtractor, get_pdf_extractor
from tools.bid_level.bid_level_config import (
    EXTRACTION_CACHE_ENABLED,
    PDF_EXTRACTOR_MODE,
    PDF_EXTRACTOR_TIMEOUT,
    PDF_EXTRACTOR_URL,
    LevelingLimits,
    load_limits,
)
from tools.bid_level.bid_level_dictionary import ScopeDictionary, get_scope_dictionary
from tools.bid_level.bid_level_loader import DocumentLoader, PDF_EXTENSIONS, discover_bids, extension
from tools.bid_level.bid_level_merge import merge_reports
from tools.bid_level.bid_level_models import EvidenceFragment, LevelingReport
from tools.bid_level.bid_level_oracle import Oracle, OracleClient
from tools.bid_level.bid_level_reconcile import ReconciledContractor, Reconciler
from tools.bid_level.bid_level_scope import CandidateScopeExtractor
from tools.bid_level.bid_level_score import ContractorScorer
from tools.bid_level.job_queue_integration import (
    create_bid_level_job,
    get_job_status_response,
    get_report_response,
)

ProgressCallback = Optional[Callable[[Dict[str, Any]], None]]

PROGRESS_CLAIMED = 5
PROGRESS_LOADED = 10
PROGRESS_EXTRACTED = 20
PROGRESS_SCORING_SPAN = 75
PROGRESS_CEILING = 95


def _emit_progress(progress_callback: ProgressCallback, **payload: Any) -> None:
    if progress_callback:
        progress_callback(payload)


def scoring_progress(done: int, total: int) -> int:
    if total <= 0:
        return PROGRESS_CEILING
    return min(PROGRESS_CEILING, PROGRESS_EXTRACTED + round(done / total * PROGRESS_SCORING_SPAN))


def _safe_slack_sub(logger, wact, text: str) -> None:
    if not wact:
        return
    try:
        wact.sub(text)
    except Exception:
        logger.debug("Slack sub failed (non-fatal).", exc_info=True)


def _safe_slack_done(logger, wact) -> None:
    if not wact:
        return
    try:
        wact.done()
    except Exception:
        logger.debug("Slack done failed (non-fatal).", exc_info=True)


def _safe_slack_error(logger, wact, text: str) -> None:
    if not wact:
        return
    try:
        wact.error(text)
    except Exception:
        logger.debug("Slack error failed (non-fatal).", exc_info=True)


def _start_slack(logger, *, job_id: str, company_id: str | None, division: str, user_name: str | None):
    try:
        from utils.core.slack import SlackActivityLogger, SlackActivityMeta

        wact = SlackActivityLogger(
            SlackActivityMeta(
                job_id=job_id,
                tool="BID-LEVEL",
                user=user_name or "unknown",
                company=company_id,
                division=division,
            )
        )
        wact.start()
        _safe_slack_sub(logger, wact, f"🛠️ Starting bid leveling for division {division}")
        return wact
    except Exception:
        logger.debug("Slack logger not available, continuing without it")
        return None


def _default_oracle() -> Oracle:
    from utils.llm.LLM import ensure_oracle_credentials, gemini_oracle

    ensure_oracle_credentials()
    return gemini_oracle


def _default_store():
    from utils.storage import bucket

    return bucket.read_file_bytes, bucket.list_subdirectories, bucket.list_files


async def _do_level_workflow(
    *,
    job_id: str,
    company_id: str | None = None,
    division_code: str | None = None,
    subdivision_id: str | None = None,
    meta: Optional[Dict[str, Any]] = None,
    user_name: str | None = None,
    progress_callback: ProgressCallback = None,
    oracle: Optional[Oracle] = None,
    fetch_bytes: Optional[Callable[[str], bytes]] = None,
    list_subdirectories: Optional[Callable[[str, str, str], List[str]]] = None,
    list_files: Optional[Callable[[str, str, str], List[str]]] = None,
    pdf_extractor: Optional[PdfExtractor] = None,
    limits: Optional[LevelingLimits] = None,
    dictionary: Optional[ScopeDictionary] = None,
    sleep: Callable[[float], None] = time.sleep,
    pace: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    use_extraction_cache: bool = EXTRACTION_CACHE_ENABLED,
) -> LevelingReport:
    """
    Level one division of a job and return the merged report.

    Every collaborator (oracle, storage, extractor, sleeps) can be injected;
    the defaults are Gemini, MinIO and the configured PDF extractor.

    Raises:
        NoInputError: no bids, no documents or no readable content
        ConfigurationError: missing oracle credentials or extractor endpoint
        OracleRateLimitError / OracleResponseError: scoring could not finish
    """
    logger = get_logger()
    start_t = time.perf_counter()
    division = subdivision_id or division_code or ""
    limits = limits or load_limits()
    if dictionary is None:
        dictionary = get_scope_dictionary(division_code or subdivision_id)
    wact = _start_slack(
        logger, job_id=job_id, company_id=company_id, division=division, user_name=user_name
    )

    try:
        if fetch_bytes is None or list_subdirectories is None or list_files is None:
            store_fetch, store_subdirs, store_files = _default_store()
            fetch_bytes = fetch_bytes or store_fetch
            list_subdirectories = list_subdirectories or store_subdirs
            list_files = list_files or store_files

        _safe_slack_sub(logger, wact, "📁 Discovering bids")
        bids = await asyncio.to_thread(
            discover_bids,
            job_id,
            company_id or "",
            division,
            meta,
            list_subdirectories=list_subdirectories,
            list_files=list_files,
            limits=limits,
        )
        if not bids:
            raise NoInputError(f"No bids found for division {division or '-'}")
        if not any(bid.document_keys for bid in bids):
            raise NoInputError(
                f"No documents found on any of {len(bids)} bids for division {division or '-'}"
            )

        has_pdf = any(extension(k) in PDF_EXTENSIONS for bid in bids for k in bid.document_keys)
        if pdf_extractor is None and has_pdf:
            pdf_extractor = get_pdf_extractor(
                PDF_EXTRACTOR_MODE, PDF_EXTRACTOR_URL, PDF_EXTRACTOR_TIMEOUT
            )
        loader = DocumentLoader(
            fetch_bytes,
            pdf_extractor,
            limits,
            cache_get=get_cached_extraction if use_extraction_cache else None,
            cache_put=save_cached_extraction if use_extraction_cache else None,
        )

        _safe_slack_sub(logger, wact, f"⬇️ Loading documents for {len(bids)} contractors")
        fragments: Dict[str, List[EvidenceFragment]] = {}
        for bid in bids:
            fragments[bid.contractor_id] = await asyncio.to_thread(loader.load_bid, bid)
            logger.info(
                f"Loaded {len(fragments[bid.contractor_id])} fragments for {bid.contractor_id}"
            )
        if not any(fragments.values()):
            raise NoInputError(
                f"No readable content in the documents for division {division or '-'}"
            )
        _emit_progress(
            progress_callback,
            stage="load",
            progress=PROGRESS_LOADED,
            batches_total=len(bids),
            batches_done=0,
        )

        client = OracleClient(oracle or _default_oracle(), limits, sleep=sleep)

        _safe_slack_sub(logger, wact, "🧠 Extracting candidate scope")
        extractor = CandidateScopeExtractor(dictionary, client=client, limits=limits)
        extraction = await asyncio.to_thread(extractor.extract, fragments)
        candidates = extraction.candidates
        _emit_progress(progress_callback, stage="extract", progress=PROGRESS_EXTRACTED)
        _safe_slack_sub(
            logger, wact, f"📋 {len(candidates)} candidate scope items ({extraction.source})"
        )

        scorer = ContractorScorer(client, candidates, limits)
        reconciler = Reconciler(candidates, dictionary)
        reconciled: List[ReconciledContractor] = []
        for done, bid in enumerate(bids, start=1):
            harvest = extraction.harvests.get(bid.contractor_id)
            outcome = await asyncio.to_thread(
                scorer.score, bid, fragments[bid.contractor_id], harvest
            )
            reconciled.append(
                reconciler.reconcile(
                    bid.contractor_id,
                    bid.name,
                    outcome.response,
                    harvest.alternates if harvest else (),
                )
            )
            _emit_progress(
                progress_callback,
                stage="score",
                progress=scoring_progress(done, len(bids)),
                batches_done=done,
            )
            _safe_slack_sub(logger, wact, f"✅ Scored {bid.name} ({done}/{len(bids)})")

            if done < len(bids) and not outcome.skipped:
                delay = limits.pacing_delay(outcome.tokens_used)
                logger.debug(f"Pacing {delay:.1f}s after ~{outcome.tokens_used} tokens")
                await pace(delay)

        report = merge_reports(
            candidates,
            reconciled,
            division_code=division_code,
            subdivision_id=subdivision_id,
        )
        _safe_slack_sub(
            logger,
            wact,
            f"🏁 Bid leveling completed in {time.perf_counter() - start_t:.0f}s",
        )
        _safe_slack_done(logger, wact)
        return report
    except Exception as exc:
        _safe_slack_error(
            logger,
            wact,
            f"🔥 Bid leveling failed after {time.perf_counter() - start_t:.0f}s: {exc}",
        )
        raise


async def bid_level_main(
    *,
    job_id: str | None = None,
    processing_job_id: str | None = None,
    company_id: str | None = None,
    division_code: str | None = None,
    subdivision_id: str | None = None,
    meta: Optional[Dict[str, Any]] = None,
    request_method: str | None = None,
    remote_ip: str | None = None,
    user_name: str | None = None,
    user_id: str | None = None,
) -> Dict[str, Any]:
    base_logger = pid_tool_logger(job_id, "bid_level")
    set_logger(
        base_logger,
        tool_name="bid_level_main",
        job_id=job_id or "unknown",
        ip_address=remote_ip or "no_ip",
        request_type=request_method or "N/A",
        user_name=user_name or "unknown",
    )
    logger = get_logger()

    if request_method == "GET":
        if not processing_job_id:
            return {"status": "error", "error": "processingJobId is required"}
        return get_job_status_response(processing_job_id)

    if request_method == "POST":
        if not job_id:
            return {"status": "error", "error": "jobId is required"}
        if not (division_code or subdivision_id):
            return {"status": "error", "error": "division or subdivisionId is required"}
        processing_id = create_bid_level_job(
            job_id=job_id,
            division_code=division_code,
            subdivision_id=subdivision_id,
            company_id=company_id,
            user_id=user_id,
            meta=meta,
            user_name=user_name,
            remote_ip=remote_ip,
        )
        logger.info(f"Queued bid leveling {processing_id} for job {job_id}")
        return {"status": "queued", "processing_job_id": processing_id}

    return {"status": "error", "error": f"Unsupported request method: {request_method}"}


async def bid_level_report_main(
    *,
    job_id: str | None = None,
    division_code: str | None = None,
    subdivision_id: str | None = None,
    remote_ip: str | None = None,
) -> Dict[str, Any]:
    set_logger(
        pid_tool_logger(job_id, "bid_level"),
        tool_name="bid_level_report",
        job_id=job_id or "unknown",
        ip_address=remote_ip or "no_ip",
        request_type="GET",
    )
    if not job_id:
        return {"status": "error", "error": "jobId is required"}
    if not (division_code or subdivision_id):
        return {"status": "error", "error": "division or subdivisionId is required"}
    return get_report_response(job_id, division_code, subdivision_id)


async def bid_level_worker_main(
    *,
    request_method: str | None = None,
    remote_ip: str | None = None,
) -> Dict[str, Any]:
    """Process the oldest queued job inline, for deployments without a worker."""
    from utils.db.worker import run_next_job

    set_logger(
        pid_tool_logger("SYSTEM", "worker"),
        tool_name="bid_level_worker",
        ip_address=remote_ip or "no_ip",
        request_type=request_method or "N/A",
    )
    result = await run_next_job()
    if result is None:
        return {"status": "idle", "message": "No queued jobs"}
    if result.get("status") == "failed":
        return make_error_payload(
            "worker", result["error"], {"processing_job_id": result["processing_job_id"]}
        )
    return result
