"""
Per-contractor scoring.

Sends one contractor's evidence plus the indexed candidate list to the oracle
and parses the answer. A strict pass runs first over filtered evidence; when
it yields no items a single lenient pass follows over raw text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from utils.core.log import get_logger
from utils.core.errors import OracleResponseError
from tools.bid_level.bid_level_config import LevelingLimits
from tools.bid_level.bid_level_models import (
    ContractorBid,
    EvidenceFragment,
    ScoringResponse,
)
from tools.bid_level.bid_level_oracle import OracleClient
from tools.bid_level.bid_level_scope import HarvestResult, is_contact_noise
from tools.bid_level.prompts_bid_level import (
    candidate_block,
    contractor_block,
    fragment_block,
    scoring_system_prompt,
    structured_block,
)

TRUNCATION_MARK = "\n[... truncated ...]"


@dataclass
class ScoringOutcome:
    contractor_id: str
    response: ScoringResponse
    tokens_used: int = 0
    lenient_used: bool = False
    skipped: bool = False


def _strict_text(text: str) -> str:
    kept = [line for line in (text or "").splitlines() if line.strip() and not is_contact_noise(line)]
    return "\n".join(kept)


def build_evidence_blocks(
    fragments: Sequence[EvidenceFragment],
    *,
    char_ceiling: int,
    lenient: bool = False,
    harvest: Optional[HarvestResult] = None,
) -> List[str]:
    """
    Fragment blocks up to `char_ceiling`, then the structured block.

    The structured block is always appended and does not count against the
    ceiling; the last fragment that would overflow is cut, later ones dropped.
    """
    blocks: List[str] = []
    used = 0
    for fragment in fragments:
        text = fragment.raw_text if lenient else _strict_text(fragment.raw_text)
        if not text.strip():
            continue
        room = char_ceiling - used
        if room <= 0:
            get_logger().debug("Evidence ceiling reached before %s", fragment.source_name)
            break
        if len(text) > room:
            text = text[:room] + TRUNCATION_MARK
        blocks.append(fragment_block(fragment, text))
        used += len(text)

    if harvest is not None and any(harvest.sections.values()):
        blocks.append(structured_block(harvest.sections))
    return blocks


class ContractorScorer:
    """Scores contractors one at a time against a fixed candidate list."""

    def __init__(
        self,
        client: OracleClient,
        candidates: Sequence[str],
        limits: LevelingLimits = LevelingLimits(),
    ):
        self.client = client
        self.candidates = list(candidates)
        self.limits = limits

    def _ask(
        self,
        bid: ContractorBid,
        fragments: Sequence[EvidenceFragment],
        harvest: Optional[HarvestResult],
        *,
        lenient: bool,
    ) -> ScoringResponse:
        blocks = [
            contractor_block(bid.contractor_id, bid.name),
            candidate_block(self.candidates),
            *build_evidence_blocks(
                fragments,
                char_ceiling=self.limits.evidence_char_ceiling,
                lenient=lenient,
                harvest=harvest,
            ),
        ]
        text = self.client.ask(
            scoring_system_prompt(len(self.candidates), lenient=lenient),
            blocks,
            label=f"scoring[{bid.contractor_id}{'/lenient' if lenient else ''}]",
        )
        return ScoringResponse.from_text(text)

    def score(
        self,
        bid: ContractorBid,
        fragments: Sequence[EvidenceFragment],
        harvest: Optional[HarvestResult] = None,
    ) -> ScoringOutcome:
        """
        Score one contractor.

        Rate-limit retries happen inside the oracle client; any other oracle
        error propagates to the caller and fails the job.
        """
        log = get_logger()
        if not fragments:
            log.warning("No evidence for %s; leaving every item not_specified", bid.contractor_id)
            return ScoringOutcome(bid.contractor_id, ScoringResponse(), skipped=True)

        self.client.take_tokens()
        response = self._ask(bid, fragments, harvest, lenient=False)
        lenient_used = False
        if not response.items:
            log.info("Strict pass returned no items for %s; retrying leniently", bid.contractor_id)
            lenient_used = True
            retry = self._ask(bid, fragments, harvest, lenient=True)
            if retry.items or not response.is_usable():
                response = retry
            if not response.is_usable():
                raise OracleResponseError(
                    f"Oracle returned nothing usable for contractor {bid.name} "
                    f"({bid.contractor_id}) after a lenient retry"
                )

        log.info(
            "Scored %s: %d items, %d unmapped, total=%s%s",
            bid.contractor_id,
            len(response.items),
            len(response.unmapped),
            response.total,
            " (lenient)" if lenient_used else "",
        )
        return ScoringOutcome(
            contractor_id=bid.contractor_id,
            response=response,
            tokens_used=self.client.take_tokens(),
            lenient_used=lenient_used,
        )
