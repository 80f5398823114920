"""
Local runner for the bid leveling pipeline.

Queues one job whose bids point at files on disk, processes it inline
through the regular job processor and prints the stored report JSON.
Uses whatever database `db_type` selects (mock by default) and the real
Gemini oracle, so Application Default Credentials must be available.

Usage:
  python -m utils.sim --job-id demo --division 23 \\
      --contractor acme=bids/acme.pdf --contractor best=bids/best.xlsx
"""

import sys
import json
import asyncio
import argparse
from pathlib import Path
from typing import Dict, List

from utils.llm.gcp_credentials import ensure_gcp_credentials_from_vault

ensure_gcp_credentials_from_vault()

from utils.db.connection import init_db, DB_TYPE
from utils.db.job_queue import (
    enqueue_processing_job,
    claim_next_job,
    get_processing_job,
    get_latest_level_report,
)
from utils.core.log import setup_logging, pid_tool_logger, set_logger, get_logger
from tools.bid_level.job_processors import process_bid_level_job


def read_local_file(key: str) -> bytes:
    path = Path(key)
    if not path.is_file():
        raise FileNotFoundError(f"No such file: {key}")
    return path.read_bytes()


def _no_store_listing(job_id: str, subdir: str, company_id: str) -> List[str]:
    return []


def parse_contractors(values: List[str]) -> Dict[str, List[str]]:
    """`ID=path` pairs grouped by contractor id, first-seen order."""
    grouped: Dict[str, List[str]] = {}
    for value in values:
        cid, sep, path = value.partition("=")
        if not sep or not cid.strip() or not path.strip():
            raise ValueError(f"Expected ID=path, got {value!r}")
        grouped.setdefault(cid.strip(), []).append(path.strip())
    return grouped


def build_meta(contractors: Dict[str, List[str]]) -> dict:
    return {
        "bids": [
            {"bid_id": f"{cid}-local", "contractor_id": cid, "name": cid, "documents": docs}
            for cid, docs in contractors.items()
        ],
        "user_name": "sim",
    }


async def run_local(job_id: str, division: str, contractors: Dict[str, List[str]], log) -> int:
    processing_id = enqueue_processing_job(
        job_id=job_id, division_code=division, meta=build_meta(contractors)
    )
    log.info("Queued processing job %s for job %s", processing_id, job_id)

    job = claim_next_job()
    if not job or job["id"] != processing_id:
        log.error("Could not claim processing job %s (another job is queued first?)", processing_id)
        return 1

    try:
        await process_bid_level_job(
            job,
            fetch_bytes=read_local_file,
            list_subdirectories=_no_store_listing,
            list_files=_no_store_listing,
        )
    except Exception as e:
        status = get_processing_job(processing_id) or {}
        log.error("Leveling failed (%s): %s", status.get("status"), e)
        return 1

    row = get_latest_level_report(job_id, division, None)
    if not row:
        log.error("Job %s succeeded but no report was stored", processing_id)
        return 1
    print(json.dumps(row["report"], indent=2))
    return 0


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Level local bid documents for one division.")
    parser.add_argument("--job-id", required=True)
    parser.add_argument("--division", required=True, help='Division code, e.g. "23"')
    parser.add_argument(
        "--contractor",
        action="append",
        default=[],
        metavar="ID=PATH",
        help="Bid document for a contractor; repeat for more documents or contractors",
    )
    args = parser.parse_args(argv)

    setup_logging()
    set_logger(pid_tool_logger(args.job_id, "sim"), tool_name="sim", job_id=args.job_id)
    log = get_logger()

    try:
        contractors = parse_contractors(args.contractor)
    except ValueError as e:
        parser.error(str(e))
    if not contractors:
        parser.error("at least one --contractor ID=PATH is required")

    if DB_TYPE == "postgres":
        init_db()
    return asyncio.run(run_local(args.job_id, args.division, contractors, log))


if __name__ == "__main__":
    sys.exit(main())
