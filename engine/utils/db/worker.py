"""
Job Worker Process for the leveling engine.

This module provides a worker that claims queued processing jobs one at a
time and runs the bid leveling pipeline on each.
"""

import sys
import signal
import asyncio
from typing import Dict, Any, Optional

from utils.db.job_queue import claim_next_job
from utils.db.connection import init_db, DB_TYPE
from utils.core.log import setup_logging, pid_tool_logger, set_logger, get_logger
from utils.core.warnings_config import configure_warning_filters
from utils.llm.gcp_credentials import ensure_gcp_credentials_from_vault
from utils.vault import secrets

# Worker configuration (Vault or ephemeral env)
WORKER_POLL_INTERVAL = secrets.get_int("worker_poll_interval", 5)


async def run_next_job(**overrides: Any) -> Optional[Dict[str, Any]]:
    """
    Claim and process the oldest queued job.

    Returns None when the queue is empty, otherwise a small status dict. A
    failed job is already marked failed by its processor and is reported
    here rather than raised, so one bad job never stops the worker.
    """
    from tools.bid_level.job_processors import process_bid_level_job

    log = get_logger()
    job = claim_next_job()
    if not job:
        return None

    processing_id = job["id"]
    log.info(f"Processing job {processing_id} (job {job.get('job_id')})")
    try:
        return await process_bid_level_job(job, **overrides)
    except Exception as e:
        log.error(f"Job {processing_id} failed: {e}")
        return {"status": "failed", "processing_job_id": processing_id, "error": str(e)}
    finally:
        # processors swap the context logger; restore the worker's
        set_logger(pid_tool_logger("SYSTEM", "worker"))


async def worker_loop(shutdown_event: asyncio.Event):
    """
    Main worker loop that claims queued jobs and processes them sequentially.
    Exits when shutdown_event is set (e.g. by SIGINT/SIGTERM).
    """
    set_logger(pid_tool_logger("SYSTEM", "worker"))
    log = get_logger()
    log.info("Worker loop started")

    while not shutdown_event.is_set():
        try:
            result = await run_next_job()
            if result is not None:
                log.info(f"Job {result.get('processing_job_id')} finished: {result.get('status')}")
                continue

            # No jobs: wait in short steps so we can react to shutdown
            for _ in range(WORKER_POLL_INTERVAL):
                if shutdown_event.is_set():
                    break
                await asyncio.sleep(1)

        except asyncio.CancelledError:
            break
        except Exception as e:
            log.exception(f"Error in worker loop: {e}")
            for _ in range(WORKER_POLL_INTERVAL):
                if shutdown_event.is_set():
                    break
                await asyncio.sleep(1)

    log.info("Worker loop stopped")


def run_worker():
    """
    Run the worker as a standalone process.
    """
    setup_logging()
    configure_warning_filters()
    ensure_gcp_credentials_from_vault()
    set_logger(pid_tool_logger("SYSTEM", "worker"))
    log = get_logger()

    # Initialize database (creates tables if they don't exist)
    if DB_TYPE == "postgres":
        log.info("Initializing database...")
        init_db()

    log.info("Starting job worker process")

    # Setup signal handlers for graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler(signum, frame):
        log.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        asyncio.run(worker_loop(shutdown_event))
    except KeyboardInterrupt:
        log.info("Worker interrupted by user")
    except Exception as e:
        log.exception(f"Worker crashed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run_worker()
