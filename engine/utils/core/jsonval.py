import json
import re
from typing import Any, Optional
from utils.core.log import get_logger

"""
Validating and repairing JSON returned by the oracle.
"""

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def clean_malformed_json(raw: str, *, label: Optional[str] = None) -> str:
    """
    Best-effort scrub for common model JSON glitches.

    The heuristics are idempotent, running twice is safe.
    """
    logger = get_logger()

    try:
        # fix '}, ], {' breaks in arrays
        raw = re.sub(r"\},\s*\],\s*\{", r"}, {", raw)

        # drop trailing commas before ] or }
        raw = re.sub(r",\s*([\]}])", r"\1", raw)

        # replace raw control characters (0x00-0x1F) with space
        raw = re.sub(r"(?<!\\)[\x00-\x08\x0B\x0C\x0E-\x1F]", " ", raw)

        return raw
    except re.error as e:
        logger.debug(f"[clean_malformed_json] ({label or 'json'}) failed: {e}")
        return raw


def fix_truncated_json(response: str) -> str | None:
    """
    Close open brackets/braces of a response cut off at the token limit.
    Returns None when the text cannot be repaired into valid JSON.
    """
    open_braces = response.count("{") - response.count("}")
    open_brackets = response.count("[") - response.count("]")
    if open_braces < 0 or open_brackets < 0:
        return None
    last_complete = max(
        response.rfind("},"),
        response.rfind("}]"),
        response.rfind("}"),
        response.rfind("]"),
    )
    if last_complete == -1:
        return None
    truncated = response[: last_complete + 1].rstrip().rstrip(",")
    open_braces = truncated.count("{") - truncated.count("}")
    open_brackets = truncated.count("[") - truncated.count("]")
    truncated += "]" * open_brackets + "}" * open_braces
    try:
        json.loads(truncated)
        return truncated
    except json.JSONDecodeError:
        return None


def _try_load(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def parse_llm_json(response: str | None, *, label: Optional[str] = None) -> dict | None:
    """
    Robustly parse an oracle JSON object.

    Tries, in order: direct load, markdown fence body, first {...} block,
    the same after scrubbing, and finally a truncated-JSON repair.
    Returns None when nothing parses to a JSON object.
    """
    logger = get_logger()
    if not response or not response.strip():
        logger.debug(f"[parse_llm_json] ({label or 'json'}) empty response")
        return None

    text = response.strip()
    candidates = [text]
    fence = _FENCE_RE.search(text)
    if fence:
        candidates.append(fence.group(1).strip())
    block = _OBJECT_RE.search(text)
    if block:
        candidates.append(block.group())

    for candidate in candidates:
        for attempt in (candidate, clean_malformed_json(candidate, label=label)):
            data = _try_load(attempt)
            if isinstance(data, dict):
                return data
            if isinstance(data, list) and len(data) == 1 and isinstance(data[0], dict):
                return data[0]

    start = text.find("{")
    if start >= 0:
        fixed = fix_truncated_json(clean_malformed_json(text[start:], label=label))
        if fixed:
            data = _try_load(fixed)
            if isinstance(data, dict):
                logger.debug(f"[parse_llm_json] ({label or 'json'}) repaired truncated JSON")
                return data

    logger.debug(f"[parse_llm_json] ({label or 'json'}) invalid or truncated JSON")
    return None


def coerce_json(value):
    """Return a Python object from storage: handles dict/list/str/bytes/None."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return json.loads(value.decode("utf-8"))
    if isinstance(value, str):
        return json.loads(value)
    return value
