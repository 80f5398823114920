import json

import pytest

from utils.core.errors import OracleRateLimitError, OracleResponseError
from tools.bid_level.bid_level_models import ContractorBid, EvidenceFragment, ScopeStatus
from tools.bid_level.bid_level_oracle import OracleClient
from tools.bid_level.bid_level_scope import HarvestResult
from tools.bid_level.bid_level_score import (
    TRUNCATION_MARK,
    ContractorScorer,
    build_evidence_blocks,
)

CANDIDATES = ["HVAC equipment", "Ductwork", "Testing & balancing"]
ACME = ContractorBid("c1", "Acme Mechanical", bid_ids=("b1",), document_keys=("acme/bid.pdf",))


@pytest.fixture
def fragments():
    return [
        EvidenceFragment(
            "acme/bid.pdf :: page 1 :: text",
            "Acme Mechanical\nPhone: (555) 123-4567\nDuctwork included\nTotal Base Bid: $98,000",
        )
    ]


def scorer_for(oracle, limits, sleeps=None):
    client = OracleClient(oracle, limits, sleep=(sleeps.append if sleeps is not None else lambda s: None))
    return ContractorScorer(client, CANDIDATES, limits)


class TestStrictPass:
    def test_scores_every_candidate(self, fragments, limits, scripted_oracle):
        oracle = scripted_oracle({"c1": {"Ductwork": "included"}}, totals={"c1": 98000})
        outcome = scorer_for(oracle, limits).score(ACME, fragments)

        assert not outcome.lenient_used
        assert not outcome.skipped
        assert len(outcome.response.items) == len(CANDIDATES)
        assert outcome.response.items[1].status == ScopeStatus.INCLUDED
        assert outcome.response.total == 98000
        assert outcome.tokens_used > 0
        assert len(oracle.scoring_calls) == 1

    def test_strict_evidence_drops_letterhead_only(self, fragments, limits, scripted_oracle):
        oracle = scripted_oracle()
        scorer_for(oracle, limits).score(ACME, fragments)

        sent = "\n".join(oracle.calls[0]["blocks"])
        assert "CONTRACTOR: Acme Mechanical (id: c1)" in sent
        assert "Phone:" not in sent
        assert "Ductwork included" in sent
        assert "Total Base Bid: $98,000" in sent


class TestLenientRetry:
    def test_empty_strict_answer_triggers_one_lenient_retry(
        self, fragments, limits, scripted_oracle
    ):
        lenient = json.dumps({"items": [{"candidate_index": 2, "status": "included"}]})
        oracle = scripted_oracle(raw_scoring=['{"items": []}', lenient])
        outcome = scorer_for(oracle, limits).score(ACME, fragments)

        assert outcome.lenient_used
        assert len(oracle.scoring_calls) == 2
        assert "generously" in oracle.scoring_calls[1]["system"]
        assert "Phone:" in "\n".join(oracle.scoring_calls[1]["blocks"])
        assert outcome.response.items[0].candidate_index == 2

    def test_strict_total_survives_an_empty_retry(self, fragments, limits, scripted_oracle):
        oracle = scripted_oracle(raw_scoring=['{"items": [], "total": "$98,000"}', '{"items": []}'])
        outcome = scorer_for(oracle, limits).score(ACME, fragments)
        assert outcome.response.total == 98000

    def test_nothing_usable_fails(self, fragments, limits, scripted_oracle):
        oracle = scripted_oracle(raw_scoring=["Sorry, I cannot help.", "{}"])
        with pytest.raises(OracleResponseError, match="c1"):
            scorer_for(oracle, limits).score(ACME, fragments)


class TestRateLimits:
    def test_three_rate_limits_then_success(self, fragments, limits, scripted_oracle):
        sleeps = []
        oracle = scripted_oracle(
            {"c1": {"Ductwork": "included"}},
            failures=[OracleRateLimitError("429 Too Many Requests")] * 3,
        )
        outcome = scorer_for(oracle, limits, sleeps).score(ACME, fragments)

        assert len(oracle.scoring_calls) == 4
        assert len(sleeps) == 3
        assert all(s <= limits.retry_max_seconds for s in sleeps)
        assert outcome.response.items[1].status == ScopeStatus.INCLUDED

    def test_persistent_rate_limit_gives_up(self, fragments, limits, scripted_oracle):
        oracle = scripted_oracle(failures=[OracleRateLimitError("429")] * 10)
        with pytest.raises(OracleRateLimitError, match="persisted"):
            scorer_for(oracle, limits).score(ACME, fragments)
        assert len(oracle.calls) == limits.rate_limit_retries + 1

    def test_other_errors_are_not_retried(self, fragments, limits, scripted_oracle):
        oracle = scripted_oracle(failures=[RuntimeError("backend exploded")])
        with pytest.raises(RuntimeError):
            scorer_for(oracle, limits).score(ACME, fragments)
        assert len(oracle.calls) == 1


def test_no_fragments_skips_the_oracle(limits, scripted_oracle):
    oracle = scripted_oracle()
    outcome = scorer_for(oracle, limits).score(ACME, [])
    assert outcome.skipped
    assert outcome.response.items == []
    assert oracle.calls == []


class TestEvidenceBlocks:
    def test_ceiling_truncates_then_drops(self):
        fragments = [
            EvidenceFragment(f"a.pdf :: page {i} :: text", "x" * 100) for i in range(1, 4)
        ]
        blocks = build_evidence_blocks(fragments, char_ceiling=150)

        assert len(blocks) == 2
        assert blocks[0].startswith("=== EXTRACT: a.pdf :: page 1 :: text ===")
        assert blocks[1].endswith(TRUNCATION_MARK)
        assert blocks[1].split("\n", 1)[1] == "x" * 50 + TRUNCATION_MARK

    def test_structured_block_is_appended_past_the_ceiling(self):
        harvest = HarvestResult()
        harvest.sections["exclusions"].append("Painting")
        fragments = [EvidenceFragment("a.pdf :: page 1 :: text", "x" * 100)]
        blocks = build_evidence_blocks(fragments, char_ceiling=100, harvest=harvest)

        assert blocks[-1].startswith("STRUCTURED QUALIFICATIONS")
        assert "EXCLUSIONS:\n- Painting" in blocks[-1]

    def test_blank_fragments_are_skipped(self):
        fragments = [
            EvidenceFragment("a.pdf :: page 1 :: text", "Phone: (555) 123-4567"),
            EvidenceFragment("a.pdf :: page 2 :: text", "Ductwork"),
        ]
        blocks = build_evidence_blocks(fragments, char_ceiling=1000)
        assert len(blocks) == 1
        assert "page 2" in blocks[0]
