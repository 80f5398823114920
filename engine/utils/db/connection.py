"""
Database connection management for the leveling engine.

Supports both PostgreSQL (via psycopg2) and a mock in-memory implementation.
Config from Vault (`db_type`, `postgres_url`).
"""

import threading
from typing import Any, Dict
from urllib.parse import urlparse, unquote

import psycopg2
from psycopg2.extras import RealDictCursor

from utils.vault import secrets
from utils.core.log import pid_tool_logger, set_logger, get_logger

DB_TYPE = (secrets.get("db_type", default="mock") or "mock").strip().lower()
DATABASE_URL = secrets.get("postgres_url", default="") or ""

# Mock database storage (in-memory)
_mock_db: Dict[str, Any] = {
    "processing_jobs": {},
    "bid_level_reports": {},
    "document_extractions": {},
}

# Serialises read-then-update sequences against the mock store
_mock_lock = threading.RLock()


def reset_mock_db() -> None:
    with _mock_lock:
        for table in _mock_db.values():
            table.clear()


def _parse_postgres_url(url: str) -> Dict[str, Any]:
    """
    Parse postgresql:// or postgres:// URL into connection kwargs.
    Component-based so a password containing %, & or @ need not be
    percent-encoded in Vault.
    """
    parsed = urlparse(url)
    netloc = parsed.netloc or ""
    path = (parsed.path or "").strip("/") or "postgres"

    at = netloc.rfind("@")
    if at >= 0:
        userinfo = netloc[:at]
        hostport = netloc[at + 1 :]
    else:
        userinfo = ""
        hostport = netloc

    user = ""
    password = ""
    if userinfo:
        colon = userinfo.find(":")
        if colon >= 0:
            user = unquote(userinfo[:colon])
            password = unquote(userinfo[colon + 1 :])
        else:
            user = unquote(userinfo)

    host = "localhost"
    port = 5432
    if hostport:
        if ":" in hostport:
            host, port_str = hostport.rsplit(":", 1)
            try:
                port = int(port_str)
            except ValueError:
                port = 5432
        else:
            host = hostport

    return {
        "host": host or "localhost",
        "port": port,
        "user": user,
        "password": password,
        "dbname": path,
    }


def get_db_connection():
    """Open a psycopg2 connection with dict rows. Postgres mode only."""
    log = get_logger()
    if not DATABASE_URL:
        raise ValueError("postgres_url is required when db_type=postgres")
    try:
        conn = psycopg2.connect(
            cursor_factory=RealDictCursor,
            **_parse_postgres_url(DATABASE_URL),
        )
    except psycopg2.Error as e:
        log.error(f"Failed to connect to PostgreSQL: {e}")
        raise
    log.debug("Connected to PostgreSQL database")
    return conn


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS processing_jobs (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        job_id VARCHAR(255) NOT NULL,
        company_id VARCHAR(255),
        user_id VARCHAR(255),
        division_code VARCHAR(32),
        subdivision_id VARCHAR(255),
        meta JSONB NOT NULL DEFAULT '{}',
        status VARCHAR(16) NOT NULL DEFAULT 'queued',
        progress INTEGER NOT NULL DEFAULT 0,
        batches_total INTEGER NOT NULL DEFAULT 0,
        batches_done INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        started_at TIMESTAMP,
        finished_at TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS bid_level_reports (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        processing_job_id UUID REFERENCES processing_jobs(id) ON DELETE SET NULL,
        job_id VARCHAR(255) NOT NULL,
        division_code VARCHAR(32),
        subdivision_id VARCHAR(255),
        report JSONB NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS document_extractions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        sha256 CHAR(64) NOT NULL UNIQUE,
        source_name TEXT,
        result JSONB NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_processing_jobs_queued
    ON processing_jobs(created_at) WHERE status = 'queued';
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_processing_jobs_job_id
    ON processing_jobs(job_id, created_at DESC);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_bid_level_reports_lookup
    ON bid_level_reports(job_id, division_code, subdivision_id, created_at DESC);
    """,
)


def init_db():
    """
    Initialize database tables.
    For PostgreSQL: creates tables if they don't exist.
    For mock: clears the in-memory store.
    """
    set_logger(pid_tool_logger("SYSTEM", "db_init"))
    log = get_logger()

    if DB_TYPE != "postgres":
        log.debug("Mock database mode - no initialization needed")
        reset_mock_db()
        return

    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            for statement in _SCHEMA:
                cur.execute(statement)
        conn.commit()
        log.info("Database tables initialized successfully")
    except Exception as e:
        conn.rollback()
        log.error(f"Failed to initialize database: {e}")
        raise
    finally:
        conn.close()
