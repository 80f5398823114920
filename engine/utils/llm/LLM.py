"""Centralised Gemini helper utilities.

This module is the single doorway to the oracle (Vertex AI Gemini). It owns
client creation, per-minute token budgeting, rate-limit retries and
structured call logging.

## Key Features

- Client is initialized lazily with `HttpOptions(api_version="v1")` and a
  pooled httpx transport; credentials come from Vault through
  `ensure_gcp_credentials_from_vault()`.

- `RateLimiter` is a per-minute sliding window over requests and tokens,
  shared by every caller in the process.

- `call_with_rate_limit_retry()` applies the Tenacity exponential-jitter
  policy to any oracle callable, retrying only 429-class failures.

- `gemini_oracle()` matches the oracle signature used by the leveling tool:
  `(system_instruction, blocks) -> str`.

Import pattern for tools:
```python
from utils.llm.LLM import gemini_oracle, call_with_rate_limit_retry
```
"""

from __future__ import annotations

import os
import time
import httpx
import threading
from collections import deque
from typing import Any, Callable, List, Sequence

import tenacity
from google import genai
from google.genai import types
from google.genai.types import Part
from google.genai import errors as gerrors

from utils.vault import secrets
from utils.core.log import get_logger
from utils.core.errors import (
    ConfigurationError,
    OracleRateLimitError,
    is_rate_limit_error,
)


__all__ = [
    "Part",
    "RateLimiter",
    "EmptyLLMResponseError",
    "get_client",
    "to_parts",
    "call_llm_sync",
    "call_with_rate_limit_retry",
    "ensure_oracle_credentials",
    "gemini_oracle",
]

# Configuration

MODEL_DEFAULT = secrets.get("llm_model", default="gemini-2.5-flash")
GCP_PROJECT = secrets.get("gcp_project", default="")
GCP_LOCATION = secrets.get("vertex_location", default="us-central1")
REQUESTS_PER_MINUTE = 60
TOKENS_PER_MINUTE = 1_000_000
CHARS_PER_TOKEN = 4

_CLIENT = None
_LOCK = threading.Lock()


class EmptyLLMResponseError(Exception):
    """Raised when the model returns empty output (e.g. max tokens hit)."""


def _make_preview(parts: Sequence[Part], max_chars: int = 120) -> str:
    for p in parts:
        t = getattr(p, "text", None)
        if isinstance(t, str) and t.strip():
            s = " ".join(t.split())
            return (s[:max_chars] + "...") if len(s) > max_chars else s
    return ""


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    wait_s = retry_state.next_action.sleep if retry_state.next_action else 0.0
    get_logger().warning(
        "Oracle rate-limited (attempt %d): %s; backing off %.1fs",
        retry_state.attempt_number,
        exc,
        wait_s,
    )


def call_with_rate_limit_retry(
    fn: Callable[..., Any],
    *args: Any,
    retries: int = 4,
    base_seconds: float = 2.0,
    max_seconds: float = 16.0,
    jitter_seconds: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> Any:
    """
    Call `fn`, retrying rate-limit failures up to `retries` extra times.

    Anything that is not a rate-limit error propagates on the first attempt.
    Exhausted retries raise OracleRateLimitError.
    """
    retrying = tenacity.Retrying(
        retry=tenacity.retry_if_exception(is_rate_limit_error),
        wait=tenacity.wait_exponential_jitter(
            initial=base_seconds, max=max_seconds, jitter=jitter_seconds
        ),
        stop=tenacity.stop_after_attempt(retries + 1),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    try:
        return retrying(fn, *args, **kwargs)
    except Exception as exc:
        if is_rate_limit_error(exc):
            raise OracleRateLimitError(
                f"Oracle rate limit persisted after {retries + 1} attempts: {exc}"
            ) from exc
        raise


def _wrap_sdk_call(fn, *args, _log_model=None, _caller: str = "unknown", _preview: str = "", **kwargs):
    """Run an SDK call, classify errors, and emit structured logs."""
    logger = get_logger()
    t0 = time.perf_counter()

    try:
        resp = fn(*args, **kwargs)
    except gerrors.ClientError as e:
        code = getattr(e, "code", None)
        logger.error(
            "LLM ClientError | caller=%s | model=%s | code=%s | err=%s | preview='%s'",
            _caller, _log_model, code, e, _preview,
        )
        if code == 429:
            raise OracleRateLimitError(str(e)) from e
        raise
    except gerrors.ServerError as e:
        logger.error(
            "LLM ServerError | caller=%s | model=%s | err=%s | preview='%s'",
            _caller, _log_model, e, _preview,
        )
        raise

    latency_ms = int((time.perf_counter() - t0) * 1000)
    usage = getattr(resp, "usage_metadata", None)
    prompt_tok = getattr(usage, "prompt_token_count", -1) if usage else -1
    total_tok = getattr(usage, "total_token_count", -1) if usage else -1
    candidates = getattr(resp, "candidates", None) or []
    finish = str(getattr(candidates[0], "finish_reason", "STOP") if candidates else "STOP")

    base_msg = (
        f"LLM Call OK | caller={_caller} | model={_log_model} | latency={latency_ms}ms | "
        f"prompt_tokens={prompt_tok} | total_tokens={total_tok}"
    )
    if "STOP" not in finish.upper():
        logger.warning(base_msg + f" | finish_reason={finish}")
    else:
        logger.debug(base_msg)
    return resp


def ensure_oracle_credentials() -> None:
    """Raise ConfigurationError unless Gemini credentials are available."""
    from utils.llm.gcp_credentials import ensure_gcp_credentials_from_vault

    ensure_gcp_credentials_from_vault()
    creds = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", "").strip()
    if creds and os.path.isfile(creds):
        return
    if os.environ.get("GOOGLE_API_KEY", "").strip():
        return
    raise ConfigurationError(
        "Missing oracle credentials: set GOOGLE_APPLICATION_CREDENTIALS, "
        "GOOGLE_API_KEY or the gemini-access-key secret"
    )


def _create_client() -> genai.Client:
    ensure_oracle_credentials()
    http_options = types.HttpOptions(
        api_version="v1",
        client_args={
            "http2": False,
            "limits": httpx.Limits(
                max_keepalive_connections=20,
                max_connections=50,
                keepalive_expiry=60.0,
            ),
            "timeout": httpx.Timeout(120.0),
        },
    )
    api_key = os.environ.get("GOOGLE_API_KEY", "").strip()
    if api_key and not os.environ.get("GOOGLE_APPLICATION_CREDENTIALS"):
        return genai.Client(api_key=api_key, http_options=http_options)
    return genai.Client(
        vertexai=True,
        project=GCP_PROJECT or os.environ.get("GOOGLE_CLOUD_PROJECT") or None,
        location=GCP_LOCATION,
        http_options=http_options,
    )


def get_client() -> genai.Client:
    global _CLIENT
    if _CLIENT is None:
        with _LOCK:
            if _CLIENT is None:
                _CLIENT = _create_client()
    return _CLIENT


# Rate limiter
class RateLimiter:
    """Token/request bucket over a one-minute sliding window (thread-safe)."""

    def __init__(
        self, req_pm: int = REQUESTS_PER_MINUTE, tok_pm: int = TOKENS_PER_MINUTE
    ):
        self.req_pm = req_pm
        self.tok_pm = tok_pm
        self._mtx = threading.Lock()
        self._req: deque[float] = deque()
        self._tok: deque[tuple[float, int]] = deque()

    def acquire_sync(self, tokens: int = 0) -> None:
        """Block until the request fits in the current window."""
        tokens = min(max(0, int(tokens)), self.tok_pm)
        while True:
            now = time.time()
            window_start = now - 60.0

            with self._mtx:
                while self._req and self._req[0] < window_start:
                    self._req.popleft()
                while self._tok and self._tok[0][0] < window_start:
                    self._tok.popleft()

                used_tokens = sum(t for _, t in self._tok)
                can_req = len(self._req) < self.req_pm
                can_tok = (used_tokens + tokens) <= self.tok_pm

                if can_req and can_tok:
                    self._req.append(now)
                    self._tok.append((now, tokens))
                    return

                next_req = (self._req[0] + 60.0 - now) if self._req else 0.05
                next_tok = (self._tok[0][0] + 60.0 - now) if self._tok else 0.05
                sleep_for = max(0.001, min(next_req, next_tok))

            time.sleep(sleep_for)


_GLOBAL_LIMITER = RateLimiter()


def get_global_limiter() -> RateLimiter:
    return _GLOBAL_LIMITER


def to_parts(content: Sequence[Part | str | bytes]) -> List[Part]:
    "makes content gemini safe by converting to parts"
    parts: List[Part] = []
    for item in content:
        if isinstance(item, Part):
            parts.append(item)
        elif isinstance(item, str):
            parts.append(Part.from_text(text=item))
        elif isinstance(item, (bytes, bytearray)):
            parts.append(
                Part.from_bytes(data=bytes(item), mime_type="application/octet-stream")
            )
        else:
            raise TypeError(f"Unsupported Part type: {type(item)}")
    return parts


def _estimate_tokens(parts: Sequence[Part]) -> int:
    chars = sum(len(getattr(p, "text", "") or "") for p in parts)
    return chars // CHARS_PER_TOKEN


def call_llm_sync(
    prompt_parts: Sequence[Part | str],
    *,
    model: str | None = None,
    system_instruction: str | None = None,
    cfg: dict[str, Any] | None = None,
    limiter: RateLimiter | None = None,
    debug_caller: str | None = None,
) -> str:
    """
    Send one chat turn to Gemini and return the response text.

    Args:
        prompt_parts: Evidence blocks (strings or Parts).
        model: Model name, MODEL_DEFAULT when None.
        system_instruction: Instruction guiding the model.
        cfg: Generation config. Defaults to deterministic JSON output.
        limiter: Rate limiter, the process-wide one when None.

    Raises:
        OracleRateLimitError: on 429 from the service (not retried here).
        EmptyLLMResponseError: when the model produced no text.
    """
    model = model or MODEL_DEFAULT
    cfg = cfg or {
        "temperature": 0.0,
        "max_output_tokens": 32_768,
        "response_mime_type": "application/json",
    }
    limiter = limiter or get_global_limiter()
    parts = to_parts(prompt_parts)
    limiter.acquire_sync(_estimate_tokens(parts))

    client = get_client()
    chat = client.chats.create(
        model=model, config={"system_instruction": system_instruction or ""}
    )
    resp = _wrap_sdk_call(
        chat.send_message,
        parts,
        config=cfg,
        _log_model=model,
        _caller=debug_caller or "unknown",
        _preview=_make_preview(parts),
    )
    text = resp.text or ""
    if not text.strip():
        raise EmptyLLMResponseError(f"Empty response from {model}")
    return text


def gemini_oracle(system_instruction: str, blocks: Sequence[str]) -> str:
    """Oracle callable backed by Gemini. An empty completion comes back as ""."""
    try:
        return call_llm_sync(
            list(blocks),
            system_instruction=system_instruction,
            debug_caller="bid_level",
        )
    except EmptyLLMResponseError as exc:
        get_logger().warning("Oracle returned no text: %s", exc)
        return ""
