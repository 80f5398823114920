import re
from datetime import datetime, UTC

from google.genai import errors as gerrors


class LevelingError(Exception):
    """Base class for failures that end a leveling run."""


class ConfigurationError(LevelingError):
    """Missing credentials or endpoints. Never retried."""


class NoInputError(LevelingError):
    """No bids, no documents or no readable text for the division."""


class DocumentExtractionError(LevelingError):
    """A single document could not be turned into fragments."""


class OracleRateLimitError(LevelingError):
    """429-class answer from the oracle."""


class OracleResponseError(LevelingError):
    """The oracle returned nothing usable, even after the lenient retry."""


_RATE_LIMIT_RE = re.compile(r"\b429\b|rate.?limit|resource.?exhausted", re.IGNORECASE)


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, OracleRateLimitError):
        return True
    if isinstance(exc, gerrors.ClientError):
        return getattr(exc, "code", None) == 429
    if isinstance(exc, LevelingError):
        return False
    return bool(_RATE_LIMIT_RE.search(str(exc)))


def make_error_payload(
    stage: str, err: Exception | str, extra: dict | None = None
) -> dict:
    msg = str(err)
    base = {
        "status": "error",
        "error": msg,
        "stage": stage,
        "timestamp": datetime.now(UTC)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z"),
    }
    if extra:
        base.update(extra)
    return base
