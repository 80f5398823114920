"""
Tunable limits for a leveling run, read once from Vault/env.
"""

from __future__ import annotations

from dataclasses import dataclass

from utils.vault import secrets


@dataclass(frozen=True)
class LevelingLimits:
    max_candidates: int = 100
    evidence_char_ceiling: int = 120_000
    csv_chars_per_sheet: int = 50_000
    max_sheets_per_workbook: int = 8
    max_docs_per_bid: int = 4
    max_contractors: int = 5
    tokens_per_minute: int = 40_000
    chars_per_token: int = 4
    pacing_min_seconds: float = 1.5
    pacing_max_seconds: float = 20.0
    rate_limit_retries: int = 4
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 16.0
    retry_jitter_seconds: float = 1.0
    aggregation_min_items: int = 15
    aggregation_max_items: int = 80

    def pacing_delay(self, tokens: int) -> float:
        """Seconds to wait after spending `tokens`, clamped to the pacing window."""
        if self.tokens_per_minute <= 0:
            return self.pacing_min_seconds
        raw = tokens / self.tokens_per_minute * 60.0
        return max(self.pacing_min_seconds, min(self.pacing_max_seconds, raw))

    def estimate_tokens(self, chars: int) -> int:
        return max(0, chars) // max(1, self.chars_per_token)


def load_limits() -> LevelingLimits:
    d = LevelingLimits()
    return LevelingLimits(
        max_candidates=secrets.get_int("level_max_candidates", d.max_candidates),
        evidence_char_ceiling=secrets.get_int(
            "level_evidence_char_ceiling", d.evidence_char_ceiling
        ),
        csv_chars_per_sheet=secrets.get_int("level_csv_chars_per_sheet", d.csv_chars_per_sheet),
        max_sheets_per_workbook=secrets.get_int(
            "level_max_sheets_per_workbook", d.max_sheets_per_workbook
        ),
        max_docs_per_bid=secrets.get_int("level_max_docs_per_bid", d.max_docs_per_bid),
        max_contractors=secrets.get_int("level_max_contractors", d.max_contractors),
        tokens_per_minute=secrets.get_int("level_tokens_per_minute", d.tokens_per_minute),
        chars_per_token=secrets.get_int("level_chars_per_token", d.chars_per_token),
        pacing_min_seconds=secrets.get_float("level_pacing_min_seconds", d.pacing_min_seconds),
        pacing_max_seconds=secrets.get_float("level_pacing_max_seconds", d.pacing_max_seconds),
        rate_limit_retries=secrets.get_int("level_rate_limit_retries", d.rate_limit_retries),
        retry_base_seconds=secrets.get_float("level_retry_base_seconds", d.retry_base_seconds),
        retry_max_seconds=secrets.get_float("level_retry_max_seconds", d.retry_max_seconds),
        retry_jitter_seconds=secrets.get_float(
            "level_retry_jitter_seconds", d.retry_jitter_seconds
        ),
        aggregation_min_items=secrets.get_int(
            "level_aggregation_min_items", d.aggregation_min_items
        ),
        aggregation_max_items=secrets.get_int(
            "level_aggregation_max_items", d.aggregation_max_items
        ),
    )


PDF_EXTRACTOR_MODE = (secrets.get("pdf_extractor_mode", default="auto") or "auto").strip().lower()
PDF_EXTRACTOR_URL = (secrets.get("pdf_extractor_url", default="") or "").strip()
PDF_EXTRACTOR_TIMEOUT = secrets.get_float("pdf_extractor_timeout", 120.0)
EXTRACTION_CACHE_ENABLED = secrets.get_bool("extraction_cache_enabled", True)
