import re
import json
import logging
from typing import Dict, List, Optional, Sequence

import pytest

from utils.core.log import set_logger
from utils.db.connection import reset_mock_db
from tools.bid_level.bid_level_config import LevelingLimits
from tools.bid_level.bid_level_dictionary import get_scope_dictionary

_CANDIDATE_LINE_RE = re.compile(r"^(\d+)\. (.+)$")
_CONTRACTOR_RE = re.compile(r"^CONTRACTOR: .* \(id: (?P<cid>[^)]+)\)$")


@pytest.fixture(autouse=True)
def test_logger():
    logger = logging.getLogger("tests.bid_level")
    logger.setLevel(logging.DEBUG)
    set_logger(logger, tool_name="pytest", job_id="test")
    return logger


@pytest.fixture(autouse=True)
def clean_mock_db():
    reset_mock_db()
    yield
    reset_mock_db()


@pytest.fixture
def limits():
    return LevelingLimits(retry_base_seconds=0.01, retry_max_seconds=0.02, retry_jitter_seconds=0.0)


@pytest.fixture
def hvac_dictionary():
    return get_scope_dictionary("23")


class ScriptedOracle:
    """
    Fake oracle that answers from per-contractor scripts.

    `statuses[contractor_id][candidate name]` gives the status for scoring
    calls; everything not scripted comes back not_specified. Aggregation
    calls return `aggregation` (a dict, or raw text). `failures` is a list of
    exceptions raised by the first calls, in order.
    """

    def __init__(
        self,
        statuses: Optional[Dict[str, Dict[str, str]]] = None,
        *,
        aggregation=None,
        totals: Optional[Dict[str, float]] = None,
        prices: Optional[Dict[str, Dict[str, float]]] = None,
        failures: Sequence[Exception] = (),
        raw_scoring: Optional[Sequence[str]] = None,
    ):
        self.statuses = statuses or {}
        self.aggregation = aggregation if aggregation is not None else {"scope_items": []}
        self.totals = totals or {}
        self.prices = prices or {}
        self.failures = list(failures)
        self.raw_scoring = list(raw_scoring) if raw_scoring is not None else None
        self.calls: List[Dict[str, object]] = []

    @staticmethod
    def _candidates(blocks: Sequence[str]) -> List[str]:
        for block in blocks:
            if block.startswith("CANDIDATE SCOPE ITEMS:"):
                out = []
                for line in block.splitlines()[1:]:
                    match = _CANDIDATE_LINE_RE.match(line)
                    if match:
                        out.append(match.group(2))
                return out
        return []

    @staticmethod
    def _contractor(blocks: Sequence[str]) -> Optional[str]:
        for block in blocks:
            match = _CONTRACTOR_RE.match(block)
            if match:
                return match.group("cid")
        return None

    def __call__(self, system_instruction: str, blocks: Sequence[str]) -> str:
        kind = "aggregation" if "consolidate" in system_instruction else "scoring"
        self.calls.append({"kind": kind, "system": system_instruction, "blocks": list(blocks)})
        if self.failures:
            raise self.failures.pop(0)
        if kind == "aggregation":
            if isinstance(self.aggregation, str):
                return self.aggregation
            return json.dumps(self.aggregation)

        if self.raw_scoring is not None:
            return self.raw_scoring.pop(0)

        cid = self._contractor(blocks)
        script = self.statuses.get(cid, {})
        prices = self.prices.get(cid, {})
        items = []
        for index, name in enumerate(self._candidates(blocks), start=1):
            status = script.get(name, "not_specified")
            items.append(
                {
                    "candidate_index": index,
                    "status": status,
                    "price": prices.get(name),
                    "evidence": f"{name} {status}" if status != "not_specified" else "",
                }
            )
        return json.dumps(
            {
                "items": items,
                "qualifications": {},
                "total": self.totals.get(cid),
                "unmapped": [],
            }
        )

    @property
    def scoring_calls(self) -> List[Dict[str, object]]:
        return [c for c in self.calls if c["kind"] == "scoring"]


@pytest.fixture
def scripted_oracle():
    return ScriptedOracle
