"""
Job processors for the bid leveling tool.
"""

from typing import Dict, Any

from utils.db.job_queue import (
    update_job_progress,
    mark_job_succeeded,
    mark_job_failed,
    save_level_report,
)
from utils.core.log import pid_tool_logger, set_logger, get_logger


async def process_bid_level_job(job: Dict[str, Any], **overrides: Any) -> Dict[str, Any]:
    """
    Run a claimed processing job end to end.

    On success the report is stored before the job is marked succeeded, so a
    successful job always has a report. On failure the job is marked failed
    with the error text and the exception is re-raised.
    `overrides` are passed through to the workflow (oracle, storage, sleeps).
    """
    from tools.bid_level.bid_level import _do_level_workflow

    processing_id = job["id"]
    job_id = job.get("job_id")
    meta = job.get("meta") or {}

    worker_logger = pid_tool_logger(job_id, "bid_level")
    set_logger(
        worker_logger,
        tool_name="bid_level_worker",
        job_id=job_id or "unknown",
        ip_address=meta.get("remote_ip", "no_ip"),
        request_type="WORKER",
        user_name=meta.get("user_name") or "unknown",
    )
    log = get_logger()

    def progress_callback(progress: Dict[str, Any]):
        update_job_progress(
            processing_id,
            progress=progress.get("progress"),
            batches_total=progress.get("batches_total"),
            batches_done=progress.get("batches_done"),
        )

    try:
        report = await _do_level_workflow(
            job_id=job_id,
            company_id=job.get("company_id"),
            division_code=job.get("division_code"),
            subdivision_id=job.get("subdivision_id"),
            meta=meta,
            user_name=meta.get("user_name"),
            progress_callback=progress_callback,
            **overrides,
        )

        report_id = save_level_report(
            processing_job_id=processing_id,
            job_id=job_id,
            division_code=job.get("division_code"),
            subdivision_id=job.get("subdivision_id"),
            report=report.to_dict(),
        )
        mark_job_succeeded(processing_id)
        log.debug("Processing job %s completed (report %s)", processing_id, report_id)
        return {"status": "success", "processing_job_id": processing_id, "report_id": report_id}
    except Exception as e:
        error_msg = str(e) or type(e).__name__
        log.exception("Processing job %s failed: %s", processing_id, e)
        mark_job_failed(processing_id, error_msg)
        raise
