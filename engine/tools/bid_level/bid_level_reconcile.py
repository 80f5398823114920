"""
Deterministic reconciliation of an oracle scoring answer onto the fixed
candidate list. Whatever the oracle invents ends up in `unmapped`; the
returned items always line up one-to-one with the candidates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from utils.core.fuzzy_search import best_token_match, token_set
from tools.bid_level.bid_level_dictionary import ScopeDictionary
from tools.bid_level.bid_level_models import (
    STATUS_RANK,
    AlternateEntry,
    Qualifications,
    RawScoredItem,
    ScoredItem,
    ScoringResponse,
    UnmappedItem,
)
from tools.bid_level.bid_level_scope import Alternate

FUZZY_THRESHOLD = 0.2


@dataclass(frozen=True)
class Resolution:
    index: Optional[int]
    method: Optional[str] = None  # index | name | dictionary | fuzzy


@dataclass
class ReconciledContractor:
    contractor_id: str
    name: str
    items: List[ScoredItem]
    alternates: List[AlternateEntry] = field(default_factory=list)
    unmapped: List[UnmappedItem] = field(default_factory=list)
    qualifications: Qualifications = field(default_factory=Qualifications)
    total: Optional[float] = None


def _combine(current: ScoredItem, raw: RawScoredItem) -> ScoredItem:
    """included > excluded > not_specified; the first non-null price wins."""
    status = current.status
    if STATUS_RANK[raw.status] > STATUS_RANK[current.status]:
        status = raw.status
    price = current.price if current.price is not None else raw.price
    evidence = current.evidence
    if raw.evidence and raw.evidence not in evidence:
        evidence = f"{evidence} | {raw.evidence}" if evidence else raw.evidence
    return ScoredItem(scope_item=current.scope_item, status=status, price=price, evidence=evidence)


class Reconciler:
    def __init__(self, candidates: Sequence[str], dictionary: ScopeDictionary):
        self.candidates = list(candidates)
        self.dictionary = dictionary
        self._by_name = {}
        for idx, name in enumerate(self.candidates):
            self._by_name.setdefault(name.casefold(), idx)
        self._by_canonical = {}
        for idx, name in enumerate(self.candidates):
            canonical = dictionary.canonize(name) if dictionary else None
            if canonical:
                self._by_canonical.setdefault(canonical.casefold(), idx)
        self._tokens = [self._token_set(name) for name in self.candidates]

    def _token_set(self, text: str) -> frozenset[str]:
        return token_set(
            text,
            stopwords=self.dictionary.stopwords,
            drop_words=self.dictionary.brand_words,
        )

    def resolve(self, item: RawScoredItem) -> Resolution:
        """Index, then exact name, then dictionary, then token overlap."""
        n = len(self.candidates)
        if item.candidate_index is not None and 1 <= item.candidate_index <= n:
            return Resolution(item.candidate_index - 1, "index")
        name = (item.name or "").strip()
        if not name:
            return Resolution(None)

        idx = self._by_name.get(name.casefold())
        if idx is not None:
            return Resolution(idx, "name")

        canonical = self.dictionary.canonize(name) if self.dictionary else None
        if canonical:
            idx = self._by_name.get(canonical.casefold())
            if idx is None:
                idx = self._by_canonical.get(canonical.casefold())
            if idx is not None:
                return Resolution(idx, "dictionary")

        idx = best_token_match(
            self._token_set(name),
            self._tokens,
            threshold=FUZZY_THRESHOLD,
            query_text=name,
            candidate_texts=self.candidates,
        )
        if idx is not None:
            return Resolution(idx, "fuzzy")
        return Resolution(None)

    def reconcile(
        self,
        contractor_id: str,
        name: str,
        response: ScoringResponse,
        alternates: Sequence[Alternate] = (),
    ) -> ReconciledContractor:
        cells = [ScoredItem(scope_item=c) for c in self.candidates]
        unmapped: List[UnmappedItem] = []
        unmapped_seen: set[str] = set()

        def add_unmapped(entry: UnmappedItem) -> None:
            key = entry.name.casefold()
            if key not in unmapped_seen:
                unmapped_seen.add(key)
                unmapped.append(entry)

        for raw in response.items:
            resolution = self.resolve(raw)
            if resolution.index is None:
                label = raw.name or (
                    f"Candidate #{raw.candidate_index}" if raw.candidate_index is not None else ""
                )
                if label:
                    add_unmapped(UnmappedItem(name=label, evidence=raw.evidence))
                continue
            cells[resolution.index] = _combine(cells[resolution.index], raw)

        for entry in response.unmapped:
            add_unmapped(entry)

        qualifications = response.qualifications
        alternate_entries: List[AlternateEntry] = []
        seen_alternates: set[str] = set()
        reported = [self._token_set(text) for text in qualifications.alternates]
        missed: List[str] = []
        for alt in alternates:
            key = alt.label.casefold()
            if key in seen_alternates:
                continue
            seen_alternates.add(key)
            alternate_entries.append(AlternateEntry(description=alt.label, price=alt.price))
            if best_token_match(self._token_set(alt.description), reported) is None:
                missed.append(alt.source_line)
        if missed:
            qualifications = qualifications.merge(Qualifications(alternates=missed))

        return ReconciledContractor(
            contractor_id=contractor_id,
            name=name,
            items=cells,
            alternates=alternate_entries,
            unmapped=unmapped,
            qualifications=qualifications,
            total=response.total,
        )
