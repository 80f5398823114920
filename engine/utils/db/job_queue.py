"""
Processing-job queue and report store for the leveling engine.

Works with both PostgreSQL and the mock in-memory backend.
schema
- processing_jobs: one row per leveling run
  (status queued -> running -> success | failed, progress 0..100, batches)
- bid_level_reports: persisted Leveling Reports, latest per
  (job_id, division_code, subdivision_id) is authoritative
- document_extractions: PDF extraction results keyed by sha256 of the bytes
"""

import json
import uuid
import itertools
from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg2.extras import Json

from utils.db.connection import get_db_connection, DB_TYPE, _mock_db, _mock_lock
from utils.core.log import get_logger
from utils.core.jsonval import coerce_json


class JobStatus(str, Enum):
    """Processing job status."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = {JobStatus.SUCCESS.value, JobStatus.FAILED.value}

_mock_seq = itertools.count(1)


def _generate_id() -> str:
    return str(uuid.uuid4())


def _utcnow_naive() -> datetime:
    """UTC now as a naive datetime, matching TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _serialize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(row)
    for key, value in out.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, uuid.UUID):
            out[key] = str(value)
    for key in ("meta", "report", "result"):
        if key in out:
            out[key] = coerce_json(out[key])
    out.pop("_seq", None)
    return out


# Processing jobs
def enqueue_processing_job(
    job_id: str,
    division_code: Optional[str] = None,
    subdivision_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
    company_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> str:
    """
    Create a queued processing job for one division (or subdivision) of a
    construction job.

    Returns:
        processing job id (UUID string)
    """
    log = get_logger()
    processing_id = _generate_id()
    now = _utcnow_naive()
    meta = dict(meta or {})

    if DB_TYPE == "postgres":
        conn = get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO processing_jobs
                        (id, job_id, company_id, user_id, division_code,
                         subdivision_id, meta, status, progress, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 0, %s)
                """,
                    (
                        processing_id,
                        job_id,
                        company_id,
                        user_id,
                        division_code,
                        subdivision_id,
                        Json(meta),
                        JobStatus.QUEUED.value,
                        now,
                    ),
                )
            conn.commit()
        except Exception as e:
            conn.rollback()
            log.error(f"Failed to enqueue processing job: {e}")
            raise
        finally:
            conn.close()
    else:
        with _mock_lock:
            _mock_db["processing_jobs"][processing_id] = {
                "id": processing_id,
                "job_id": job_id,
                "company_id": company_id,
                "user_id": user_id,
                "division_code": division_code,
                "subdivision_id": subdivision_id,
                "meta": meta,
                "status": JobStatus.QUEUED.value,
                "progress": 0,
                "batches_total": 0,
                "batches_done": 0,
                "error": None,
                "created_at": now.isoformat(),
                "started_at": None,
                "finished_at": None,
                "_seq": next(_mock_seq),
            }

    log.debug(
        f"Queued processing job {processing_id} for job {job_id} "
        f"(division={division_code}, subdivision={subdivision_id})"
    )
    return processing_id


def claim_next_job() -> Optional[Dict[str, Any]]:
    """
    Atomically move the oldest queued job to running and return it.

    Postgres uses FOR UPDATE SKIP LOCKED so concurrent workers never claim
    the same row; the mock backend holds a lock across read and update.
    Returns None when the queue is empty.
    """
    log = get_logger()
    now = _utcnow_naive()

    if DB_TYPE == "postgres":
        conn = get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE processing_jobs
                    SET status = %s, progress = 5, started_at = %s, error = NULL
                    WHERE id = (
                        SELECT id FROM processing_jobs
                        WHERE status = %s
                        ORDER BY created_at ASC
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING *
                """,
                    (JobStatus.RUNNING.value, now, JobStatus.QUEUED.value),
                )
                row = cur.fetchone()
            conn.commit()
        except Exception as e:
            conn.rollback()
            log.error(f"Failed to claim processing job: {e}")
            raise
        finally:
            conn.close()
        if not row:
            return None
        job = _serialize_row(row)
    else:
        with _mock_lock:
            queued = [
                j
                for j in _mock_db["processing_jobs"].values()
                if j["status"] == JobStatus.QUEUED.value
            ]
            if not queued:
                return None
            oldest = min(queued, key=lambda j: (j["created_at"], j["_seq"]))
            oldest.update(
                status=JobStatus.RUNNING.value,
                progress=5,
                started_at=now.isoformat(),
                error=None,
            )
            job = _serialize_row(oldest)

    log.debug(f"Claimed processing job {job['id']}")
    return job


def get_processing_job(processing_id: str) -> Optional[Dict[str, Any]]:
    if DB_TYPE == "postgres":
        conn = get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM processing_jobs WHERE id = %s", (processing_id,))
                row = cur.fetchone()
                return _serialize_row(row) if row else None
        except Exception as e:
            get_logger().error(f"Failed to get processing job {processing_id}: {e}")
            raise
        finally:
            conn.close()

    with _mock_lock:
        row = _mock_db["processing_jobs"].get(processing_id)
        return _serialize_row(row) if row else None


def list_processing_jobs(
    job_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    """Newest first, optionally filtered by construction job and status."""
    if DB_TYPE == "postgres":
        conn = get_db_connection()
        try:
            with conn.cursor() as cur:
                conditions = []
                params: List[Any] = []
                if job_id:
                    conditions.append("job_id = %s")
                    params.append(job_id)
                if status:
                    conditions.append("status = %s")
                    params.append(status)
                where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
                params.append(limit)
                cur.execute(
                    f"""
                    SELECT * FROM processing_jobs
                    {where_clause}
                    ORDER BY created_at DESC
                    LIMIT %s
                """,
                    params,
                )
                return [_serialize_row(r) for r in cur.fetchall()]
        except Exception as e:
            get_logger().error(f"Failed to list processing jobs: {e}")
            raise
        finally:
            conn.close()

    with _mock_lock:
        rows = [
            j
            for j in _mock_db["processing_jobs"].values()
            if (not job_id or j["job_id"] == job_id)
            and (not status or j["status"] == status)
        ]
        rows.sort(key=lambda j: (j["created_at"], j["_seq"]), reverse=True)
        return [_serialize_row(r) for r in rows[:limit]]


def update_job_progress(
    processing_id: str,
    *,
    progress: Optional[int] = None,
    batches_total: Optional[int] = None,
    batches_done: Optional[int] = None,
) -> None:
    """Update progress bookkeeping of a running job. Unset fields are untouched."""
    fields: Dict[str, Any] = {}
    if progress is not None:
        fields["progress"] = max(0, min(100, int(progress)))
    if batches_total is not None:
        fields["batches_total"] = int(batches_total)
    if batches_done is not None:
        fields["batches_done"] = int(batches_done)
    if not fields:
        return

    if DB_TYPE == "postgres":
        conn = get_db_connection()
        try:
            with conn.cursor() as cur:
                assignments = ", ".join(f"{k} = %s" for k in fields)
                cur.execute(
                    f"UPDATE processing_jobs SET {assignments} WHERE id = %s AND status = %s",
                    (*fields.values(), processing_id, JobStatus.RUNNING.value),
                )
            conn.commit()
        except Exception as e:
            conn.rollback()
            get_logger().error(f"Failed to update progress for {processing_id}: {e}")
            raise
        finally:
            conn.close()
        return

    with _mock_lock:
        job = _mock_db["processing_jobs"].get(processing_id)
        if job and job["status"] == JobStatus.RUNNING.value:
            job.update(fields)


def _finish_job(processing_id: str, status: JobStatus, error: Optional[str]) -> bool:
    log = get_logger()
    now = _utcnow_naive()
    progress_sql = ", progress = 100" if status == JobStatus.SUCCESS else ""
    allowed = (
        (JobStatus.RUNNING.value,)
        if status == JobStatus.SUCCESS
        else tuple(s.value for s in JobStatus if s.value not in TERMINAL_STATUSES)
    )

    if DB_TYPE == "postgres":
        conn = get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE processing_jobs
                    SET status = %s, error = %s, finished_at = %s{progress_sql}
                    WHERE id = %s AND status = ANY(%s)
                """,
                    (status.value, error, now, processing_id, list(allowed)),
                )
                updated = cur.rowcount
            conn.commit()
        except Exception as e:
            conn.rollback()
            log.error(f"Failed to mark {processing_id} {status.value}: {e}")
            raise
        finally:
            conn.close()
    else:
        with _mock_lock:
            job = _mock_db["processing_jobs"].get(processing_id)
            updated = 0
            if job and job["status"] in allowed:
                job.update(status=status.value, error=error, finished_at=now.isoformat())
                if status == JobStatus.SUCCESS:
                    job["progress"] = 100
                updated = 1

    if not updated:
        log.warning(f"Processing job {processing_id} not in {allowed}; left unchanged")
    return bool(updated)


def mark_job_succeeded(processing_id: str) -> bool:
    return _finish_job(processing_id, JobStatus.SUCCESS, None)


def mark_job_failed(processing_id: str, error: str) -> bool:
    return _finish_job(processing_id, JobStatus.FAILED, error or "Job failed")


# Reports
def save_level_report(
    *,
    processing_job_id: Optional[str],
    job_id: str,
    division_code: Optional[str],
    subdivision_id: Optional[str],
    report: Dict[str, Any],
) -> str:
    log = get_logger()
    report_id = _generate_id()
    now = _utcnow_naive()

    if DB_TYPE == "postgres":
        conn = get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO bid_level_reports
                        (id, processing_job_id, job_id, division_code,
                         subdivision_id, report, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                    (
                        report_id,
                        processing_job_id,
                        job_id,
                        division_code,
                        subdivision_id,
                        Json(report),
                        now,
                    ),
                )
            conn.commit()
        except Exception as e:
            conn.rollback()
            log.error(f"Failed to save leveling report: {e}")
            raise
        finally:
            conn.close()
    else:
        with _mock_lock:
            _mock_db["bid_level_reports"][report_id] = {
                "id": report_id,
                "processing_job_id": processing_job_id,
                "job_id": job_id,
                "division_code": division_code,
                "subdivision_id": subdivision_id,
                "report": json.loads(json.dumps(report)),
                "created_at": now.isoformat(),
                "_seq": next(_mock_seq),
            }

    log.debug(f"Saved leveling report {report_id} for job {job_id}")
    return report_id


def get_latest_level_report(
    job_id: str,
    division_code: Optional[str] = None,
    subdivision_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Newest report row for the (job, division, subdivision) key, or None."""
    if DB_TYPE == "postgres":
        conn = get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT * FROM bid_level_reports
                    WHERE job_id = %s
                      AND division_code IS NOT DISTINCT FROM %s
                      AND subdivision_id IS NOT DISTINCT FROM %s
                    ORDER BY created_at DESC
                    LIMIT 1
                """,
                    (job_id, division_code, subdivision_id),
                )
                row = cur.fetchone()
                return _serialize_row(row) if row else None
        except Exception as e:
            get_logger().error(f"Failed to load report for job {job_id}: {e}")
            raise
        finally:
            conn.close()

    with _mock_lock:
        rows = [
            r
            for r in _mock_db["bid_level_reports"].values()
            if r["job_id"] == job_id
            and r["division_code"] == division_code
            and r["subdivision_id"] == subdivision_id
        ]
        if not rows:
            return None
        latest = max(rows, key=lambda r: (r["created_at"], r["_seq"]))
        return _serialize_row(latest)


# Extraction cache
def get_cached_extraction(sha256: str) -> Optional[Dict[str, Any]]:
    if DB_TYPE == "postgres":
        conn = get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT result FROM document_extractions WHERE sha256 = %s",
                    (sha256,),
                )
                row = cur.fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return coerce_json(row["result"])

    with _mock_lock:
        row = _mock_db["document_extractions"].get(sha256)
        return json.loads(json.dumps(row["result"])) if row else None


def save_cached_extraction(sha256: str, source_name: str, result: Dict[str, Any]) -> None:
    if DB_TYPE == "postgres":
        conn = get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO document_extractions (id, sha256, source_name, result)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (sha256) DO NOTHING
                """,
                    (_generate_id(), sha256, source_name, Json(result)),
                )
            conn.commit()
        except Exception as e:
            conn.rollback()
            get_logger().error(f"Failed to cache extraction {sha256[:12]}: {e}")
            raise
        finally:
            conn.close()
        return

    with _mock_lock:
        _mock_db["document_extractions"].setdefault(
            sha256,
            {
                "sha256": sha256,
                "source_name": source_name,
                "result": json.loads(json.dumps(result)),
                "created_at": _utcnow_naive().isoformat(),
            },
        )
