"""
GCP / Vertex AI credentials for Gemini (Application Default Credentials).

Ensures GOOGLE_APPLICATION_CREDENTIALS points at a readable key file,
writing the `gemini-access-key` secret to the repo root when needed.
"""

import json
import logging
import os
from pathlib import Path

from utils.vault import secrets

CREDS_FILENAME = "gcp-credentials.json"

logger = logging.getLogger("BidLevelBE")


def _repo_root() -> Path:
    resolved = Path(__file__).resolve()
    parts = resolved.parts
    try:
        idx = parts.index("engine")
        return Path(*parts[:idx])
    except ValueError:
        # No "engine" in path (e.g. Docker: /app/utils/llm/...)
        return resolved.parent.parent.parent


def _default_creds_path() -> str:
    explicit = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", "").strip()
    if explicit and os.path.isfile(explicit):
        return explicit
    return str(_repo_root() / CREDS_FILENAME)


def _export(creds_path: str) -> None:
    os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = creds_path
    project = secrets.get("gcp_project", default="")
    if project and "GOOGLE_CLOUD_PROJECT" not in os.environ:
        os.environ["GOOGLE_CLOUD_PROJECT"] = project


def ensure_gcp_credentials_from_vault() -> None:
    """
    Set Application Default Credentials for Vertex AI from Vault or an existing file.
    Leaves the environment untouched when neither is available.
    """
    creds_path = _default_creds_path()
    if os.path.isfile(creds_path):
        _export(creds_path)
        return

    raw = secrets.get("gemini-access-key", default="")
    if not (raw and str(raw).strip()):
        return
    key_data = json.dumps(raw) if isinstance(raw, dict) else str(raw)
    try:
        creds_dir = os.path.dirname(creds_path)
        if creds_dir:
            os.makedirs(creds_dir, exist_ok=True)
        with open(creds_path, "w") as f:
            f.write(key_data)
        os.chmod(creds_path, 0o600)
    except OSError as exc:
        logger.warning(f"Could not write GCP credentials to {creds_path}: {exc}")
        return
    _export(creds_path)
