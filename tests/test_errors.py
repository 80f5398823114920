import pytest

from utils.core.errors import (
    ConfigurationError,
    NoInputError,
    OracleRateLimitError,
    is_rate_limit_error,
    make_error_payload,
)


def test_error_payload():
    payload = make_error_payload("score", NoInputError("No documents found"), {"processing_job_id": "p1"})

    assert payload["status"] == "error"
    assert payload["error"] == "No documents found"
    assert payload["stage"] == "score"
    assert payload["processing_job_id"] == "p1"
    assert payload["timestamp"].endswith("Z")


@pytest.mark.parametrize(
    "exc, expected",
    [
        (OracleRateLimitError("slow down"), True),
        (RuntimeError("429 Too Many Requests"), True),
        (RuntimeError("RESOURCE_EXHAUSTED: quota"), True),
        (RuntimeError("Rate limit reached"), True),
        (RuntimeError("connection reset"), False),
        (ConfigurationError("429 is not a rate limit here"), False),
    ],
)
def test_is_rate_limit_error(exc, expected):
    assert is_rate_limit_error(exc) is expected
