"""
Oracle access for the leveling pipeline.

An oracle is any callable `(system_instruction, blocks) -> str`. Production
uses `utils.llm.LLM.gemini_oracle`; tests pass scripted fakes. `OracleClient`
adds the rate-limit retry policy and keeps a running token estimate for
pacing.
"""

from __future__ import annotations

import time
from typing import Callable, Sequence

from utils.core.log import get_logger
from utils.llm.LLM import call_with_rate_limit_retry
from tools.bid_level.bid_level_config import LevelingLimits

Oracle = Callable[[str, Sequence[str]], str]


class OracleClient:
    def __init__(
        self,
        oracle: Oracle,
        limits: LevelingLimits,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.oracle = oracle
        self.limits = limits
        self.sleep = sleep
        self.tokens_used = 0
        self.calls = 0

    def ask(self, system_instruction: str, blocks: Sequence[str], *, label: str = "oracle") -> str:
        """One oracle call with 429 retries. Other errors propagate."""
        log = get_logger()
        blocks = list(blocks)
        sent_chars = len(system_instruction) + sum(len(b) for b in blocks)
        t0 = time.perf_counter()
        text = call_with_rate_limit_retry(
            self.oracle,
            system_instruction,
            blocks,
            retries=self.limits.rate_limit_retries,
            base_seconds=self.limits.retry_base_seconds,
            max_seconds=self.limits.retry_max_seconds,
            jitter_seconds=self.limits.retry_jitter_seconds,
            sleep=self.sleep,
        )
        text = text or ""
        spent = self.limits.estimate_tokens(sent_chars + len(text))
        self.tokens_used += spent
        self.calls += 1
        log.debug(
            "%s call: sent=%d chars, received=%d chars, ~%d tokens, %.1fs",
            label,
            sent_chars,
            len(text),
            spent,
            time.perf_counter() - t0,
        )
        return text

    def take_tokens(self) -> int:
        """Tokens spent since the last call to take_tokens()."""
        spent, self.tokens_used = self.tokens_used, 0
        return spent
