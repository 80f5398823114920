"""
Leveling engine utils - Modular utility functions.

Submodules:
- core: Logging, errors, Slack activity and fuzzy matching
- llm: Gemini client, rate-limit retry and credentials
- storage: MinIO storage operations (S3-compatible)
- document: PDF and spreadsheet extraction
- db: Processing-job queue and report store
"""

from utils import core
from utils import llm
from utils import storage
from utils import document
from utils import db

__all__ = [
    "core",
    "llm",
    "storage",
    "document",
    "db",
]
