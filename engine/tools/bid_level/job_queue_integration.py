"""
Job Queue Integration for the bid leveling tool.
"""

from typing import Dict, Any, Optional

from utils.db.job_queue import (
    enqueue_processing_job,
    get_processing_job,
    get_latest_level_report,
)
from utils.core.log import pid_tool_logger, set_logger, get_logger

_STATUS_FIELDS = (
    "job_id",
    "division_code",
    "subdivision_id",
    "progress",
    "batches_total",
    "batches_done",
    "error",
    "created_at",
    "started_at",
    "finished_at",
)


def create_bid_level_job(
    job_id: str,
    division_code: Optional[str] = None,
    subdivision_id: Optional[str] = None,
    company_id: Optional[str] = None,
    user_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
    **kwargs,
) -> str:
    """Queue one division for leveling. Extra kwargs (user_name, remote_ip) ride in meta."""
    meta = dict(meta or {})
    meta.update({k: v for k, v in kwargs.items() if v is not None})

    processing_id = enqueue_processing_job(
        job_id=job_id,
        division_code=division_code,
        subdivision_id=subdivision_id,
        meta=meta,
        company_id=company_id,
        user_id=user_id,
    )

    set_logger(pid_tool_logger(job_id or "SYSTEM", "job_queue"))
    log = get_logger()
    log.debug(
        "Created bid_level job %s for job %s (division=%s, subdivision=%s)",
        processing_id,
        job_id,
        division_code,
        subdivision_id,
    )
    return processing_id


def get_job_status_response(processing_job_id: str) -> Dict[str, Any]:
    job = get_processing_job(processing_job_id)
    if not job:
        return {
            "status": "error",
            "error": f"No processing job found for {processing_job_id}",
        }
    response = {"status": job["status"], "processing_job_id": job["id"]}
    response.update({k: job.get(k) for k in _STATUS_FIELDS})
    return response


def get_report_response(
    job_id: str,
    division_code: Optional[str] = None,
    subdivision_id: Optional[str] = None,
) -> Dict[str, Any]:
    row = get_latest_level_report(job_id, division_code, subdivision_id)
    if not row:
        where = subdivision_id or division_code or "-"
        return {"status": "error", "error": f"No report found for job {job_id} ({where})"}
    return {
        "status": "success",
        "processing_job_id": row.get("processing_job_id"),
        "created_at": row.get("created_at"),
        "report": row.get("report"),
    }
