"""
Candidate scope extraction.

Harvests candidate scope lines from every contractor's evidence fragments,
separates alternates, drops junk (addresses, phone numbers, totals,
boilerplate), canonicalises against the division dictionary and finally
asks the oracle once to consolidate the vocabulary. The oracle pass is
advisory: any failure there falls back to the heuristic list.
"""

from __future__ import annotations

import re
import csv
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from utils.core.log import get_logger
from tools.bid_level.bid_level_config import LevelingLimits
from tools.bid_level.bid_level_dictionary import ScopeDictionary
from tools.bid_level.bid_level_models import (
    AggregationResponse,
    EvidenceFragment,
    dedupe_texts,
    parse_price,
)
from tools.bid_level.bid_level_oracle import OracleClient
from tools.bid_level.prompts_bid_level import aggregation_system_prompt

MAX_CANDIDATE_CHARS = 150
MAX_PROSE_WORDS = 30
MAX_ALLOWED_PROSE_WORDS = 45
MAX_DICTIONARY_LINE_WORDS = 20
AGGREGATION_EXCERPT_CHARS = 40_000

GENERIC_SCOPE = (
    "General conditions",
    "Demolition & existing conditions",
    "Equipment & materials",
    "Installation & labor",
    "Controls & integration",
    "Testing & commissioning",
    "Warranty & exclusions",
)


class Section(str, Enum):
    SCOPE = "scope"
    INCLUSIONS = "inclusions"
    EXCLUSIONS = "exclusions"
    ALLOWANCES = "allowances"
    ALTERNATES = "alternates"
    EQUIPMENT = "equipment"
    SERVICES = "services"


POSITIVE_SECTIONS = {Section.SCOPE, Section.INCLUSIONS, Section.EQUIPMENT}

# order matters: "Scope exclusions" must resolve to EXCLUSIONS
_SECTION_HEADS = (
    (
        Section.EXCLUSIONS,
        r"(?:(?:scope\s+)?exclusions?|excluded|excludes|not\s+included|we\s+exclude"
        r"|clarifications?\s+(?:and|&)\s+exclusions?)",
    ),
    (
        Section.INCLUSIONS,
        r"(?:(?:scope\s+)?inclusions?|included|includes|we\s+include"
        r"|(?:this|our)\s+(?:proposal|bid|quote)\s+includes)",
    ),
    (Section.ALLOWANCES, r"(?:allowances?)"),
    (
        Section.ALTERNATES,
        r"(?:(?:add(?:itive)?|deduct(?:ive)?|voluntary)\s+)?(?:alternates?|options?)",
    ),
    (Section.EQUIPMENT, r"(?:(?:major\s+)?equipment(?:\s+(?:schedule|list|summary))?)"),
    (
        Section.SCOPE,
        r"(?:(?:base\s+bid\s+)?scope(?:\s+of\s+work)?|work\s+(?:scope|included)"
        r"|description\s+of\s+work)",
    ),
    (
        Section.SERVICES,
        r"(?:services|general\s+conditions|terms(?:\s+(?:and|&)\s+conditions)?"
        r"|payment\s+terms|qualifications|clarifications|notes)",
    ),
)
_HEADER_RES = [
    (
        section,
        re.compile(
            r"^\s*(?:[\dA-Za-z]{1,3}[.)]\s+)?(?:section\s+\d+\s*[-:.]?\s*)?"
            r"(?P<head>" + pattern + r")\s*(?P<sep>[:\-–])?\s*(?P<rest>.*)$",
            re.IGNORECASE,
        ),
    )
    for section, pattern in _SECTION_HEADS
]

# letterhead and contact lines; also stripped from scoring evidence
_CONTACT_RES = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"[\w.+-]+@[\w-]+\.[\w.-]+",
        r"https?://|\bwww\.",
        r"(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]\d{3}[\s.-]\d{4}",
        r"^\s*(?:tel|phone|fax|cell|mobile|office)\b",
        r"\blic(?:ense)?\.?\s*(?:no\.?|#|number)|\bcslb\b|contractor'?s?\s+lic",
        r"^\s*\d{1,6}\s+(?:[a-z0-9.]+\s){1,4}(?:street|st|avenue|ave|boulevard|blvd|road|rd"
        r"|drive|dr|lane|ln|way|parkway|pkwy|court|ct|highway|hwy)\b\.?(?:\s*,|\s*$)",
        r"^\s*(?:suite|ste)\.?\s*#?\s*\d+\s*$",
        r"\bp\.?\s?o\.?\s+box\b",
        r"(?-i:\b[A-Z]{2}),?\s+\d{5}(?:-\d{4})?\s*$",
        r"^\s*(?:(?:dear|sincerely|regards|best\s+regards|respectfully|attn|attention"
        r"|to\s+whom|job\s+name|bid\s+date|estimator|prepared\s+(?:by|for))\b"
        r"|(?:cc|from|to|re|subject|date|project)\s*:)",
    )
]
_TOTALS_RE = re.compile(
    r"\b(?:base\s+bid|total\s+(?:amount|price|bid|cost|base\s+bid)|grand\s+total"
    r"|sub-?total|bid\s+(?:amount|price|total)|contract\s+(?:sum|amount|price)"
    r"|sales\s+tax)\b",
    re.IGNORECASE,
)
_JUNK_RES = _CONTACT_RES + [_TOTALS_RE] + [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^\s*(?:see|refer\s+to|reference|per)\s+(?:the\s+)?(?:plans?|drawings?|specs?"
        r"|specifications?|sheets?|details?)\b",
        r"\b(?:drawings?|sheets?|dwg)\s*#?\s*[a-z]{0,2}-?\d",
        r"^\s*page\s+\d+(?:\s+of\s+\d+)?\s*$",
        r"\bspec(?:ification)?s?\s+section\b|\bsection\s+\d{2}\s?\d{2}\s?\d{2}\b",
        r"\baddend(?:um|a)\b",
        r"^\s*(?:we\s+are\s+pleased|thank\s+you|thanks|please\s+(?:call|contact|feel|let)"
        r"|if\s+you\s+have|this\s+(?:proposal|quote|quotation|bid)\s+(?:is|will|shall|expires)"
        r"|(?:proposal|quote|quotation|prices?)\s+(?:is|are)\s+(?:valid|good)"
        r"|we\s+look\s+forward|accepted\s+by|acceptance|signature|authorized"
        r"|payment\s+(?:is\s+)?due|net\s+30)",
        r"^\s*(?:\d{1,2}[/-]\d{1,2}[/-]\d{2,4}|(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct"
        r"|nov|dec)[a-z]*\.?\s+\d{1,2},?\s+\d{4})\s*$",
        r"^[\s$\d,.()%\-]*$",
    )
]
_SCOPE_VERB_RE = re.compile(
    r"\b(?:furnish|install|provide|supply|replace|relocate|connect|includ(?:e|es|ed|ing))\b",
    re.IGNORECASE,
)
_NARRATIVE_START_RE = re.compile(r"^\s*(?:we|our|this|these|it|they)\b", re.IGNORECASE)

_ALT_WORD_RE = re.compile(r"\b(?:alt(?:ernate)?s?|options?)\b\.?", re.IGNORECASE)
_ALT_KIND_RE = re.compile(r"\b(?:add(?:itive)?|deduct(?:ive)?|voluntary)\b", re.IGNORECASE)
_DEDUCT_RE = re.compile(r"\b(?:deduct(?:ive)?|credit|subtract)\b", re.IGNORECASE)
_MONEY_RE = re.compile(r"-?\$\s*\(?\d[\d,]*(?:\.\d{1,2})?\)?|\(\s*\$?\s*\d[\d,]*(?:\.\d{1,2})?\s*\)")
_ALT_NOISE_RE = re.compile(
    r"\b(?:add(?:itive)?|deduct(?:ive)?|voluntary|alt(?:ernate)?s?|price|amount|options?)\b\.?"
    r"|(?:no\.?|#)\s*\d+\b|\(\s*\)",
    re.IGNORECASE,
)

_ENUM_RE = re.compile(
    r"^\s*(?:[-–—•*·▪●◦>]+"
    r"|\(?\d{1,3}[.)](?!\d)|\(?[a-zA-Z][.)](?=\s)|\(?[ivxlcdm]{1,5}[.)](?=\s)"
    r"|\d{1,3}(?:\.\d{1,3}){2,}\.?)\s*"
)
_STATUS_SUFFIX_RE = re.compile(
    r"\s*(?:[:\-–—]|\s)\s*\(?(?:excluded|included|not\s+included|by\s+others"
    r"|n\.?i\.?c\.?|incl\.?|excl\.?)\b.*$",
    re.IGNORECASE,
)
_LEADING_VERB_RE = re.compile(
    r"^(?:we\s+(?:will|shall)\s+)?(?:to\s+)?"
    r"(?:furnish(?:ed)?|install(?:ed)?|provide[sd]?|supply|supplied|include[sd]?|including|perform)"
    r"(?:\s*(?:,|and|&|/)\s*(?:furnish|install|provide|supply|perform)(?:ed)?)*\s+"
    r"(?:(?:all|new|the|a|an)\s+)*",
    re.IGNORECASE,
)
_TRAILING_QUALIFIER_RE = re.compile(
    r"\s+(?:throughout|as\s+(?:required|needed|shown|specified|indicated)|per\s+plans?"
    r"|per\s+specs?|complete)\b.*$",
    re.IGNORECASE,
)
_EXCLUDED_MARK_RE = re.compile(
    r"\b(?:excluded|not\s+included|by\s+others|n\.i\.c\.?|nic|by\s+owner)\b", re.IGNORECASE
)
_SPACES_RE = re.compile(r"\s+")
_LETTERS_RE = re.compile(r"[A-Za-z]{2,}")

_TABLE_HEADER_WORDS = {
    "description", "item", "items", "qty", "quantity", "unit", "units", "price",
    "amount", "total", "cost", "scope", "notes", "no", "#", "rate", "status",
    "included", "excluded", "remarks", "ext", "extended",
}
_STATUS_CELLS = {
    "included", "excluded", "incl", "excl", "yes", "no", "n/a", "na", "nic",
    "by others", "not included",
}
_NUMERIC_CELL_RE = re.compile(r"^[\s$\d,.()%\-]+$")


@dataclass(frozen=True)
class Alternate:
    description: str
    price: Optional[float]
    kind: str
    source_line: str

    @property
    def label(self) -> str:
        return f"Alternate: {self.description}"


@dataclass
class HarvestResult:
    """What one contractor's fragments yielded before canonicalisation."""

    candidates: List[str] = field(default_factory=list)
    alternates: List[Alternate] = field(default_factory=list)
    sections: Dict[str, List[str]] = field(
        default_factory=lambda: {
            "inclusions": [],
            "exclusions": [],
            "allowances": [],
            "alternates": [],
        }
    )


@dataclass
class ScopeExtraction:
    candidates: List[str]
    harvests: Dict[str, HarvestResult]
    source: str


def _collapse(text: str) -> str:
    return _SPACES_RE.sub(" ", text or "").strip()


def match_section(line: str) -> tuple[Optional[Section], str]:
    """
    (section, inline remainder) when `line` is a section heading.

    A heading either stands alone ("EXCLUSIONS") or is followed by a colon or
    dash and inline content ("Exclusions: permits, bonds").
    """
    stripped = line.strip()
    if not stripped or len(stripped) > 200:
        return None, ""
    for section, pattern in _HEADER_RES:
        match = pattern.match(stripped)
        if not match:
            continue
        rest = match.group("rest").strip()
        if not rest and len(stripped) <= 80:
            return section, ""
        if rest and match.group("sep"):
            return section, rest
    return None, ""


def is_junk(line: str) -> bool:
    text = _collapse(line)
    if not text or not _LETTERS_RE.search(text):
        return True
    if any(rx.search(text) for rx in _JUNK_RES):
        return True
    words = len(text.split())
    has_verb = bool(_SCOPE_VERB_RE.search(text))
    if words > MAX_PROSE_WORDS and not (has_verb and words <= MAX_ALLOWED_PROSE_WORDS):
        return True
    if _NARRATIVE_START_RE.match(text) and words > 12 and not has_verb:
        return True
    return False


def detect_alternate(line: str, *, in_section: bool = False) -> Optional[Alternate]:
    """Parse an add/deduct alternate, or None when the line is not one."""
    text = _collapse(line)
    if not text:
        return None
    has_word = bool(_ALT_WORD_RE.search(text))
    has_money = bool(_MONEY_RE.search(text))
    if in_section:
        if not (has_word or has_money):
            return None
        if not has_word and _TOTALS_RE.search(text):
            return None
    elif not (has_word and (has_money or _ALT_KIND_RE.search(text))):
        return None

    kind = "deduct" if _DEDUCT_RE.search(text) else "add"
    price = None
    money = _MONEY_RE.search(text)
    if money:
        price = parse_price(money.group())
        if price is not None and kind == "deduct":
            price = -abs(price)

    description = _ENUM_RE.sub("", text)
    description = _MONEY_RE.sub(" ", description)
    description = _ALT_NOISE_RE.sub(" ", description)
    description = re.sub(r"\s*[:\-–—=]+\s*", " ", description)
    description = _collapse(description).strip(" .,;:()")
    description = re.sub(r"^(?:for|to)\s+", "", description, flags=re.IGNORECASE)
    if not _LETTERS_RE.search(description):
        return None
    description = description[0].upper() + description[1:]
    return Alternate(description=description, price=price, kind=kind, source_line=text)


def clean_candidate(text: str) -> Optional[str]:
    """Strip numbering, bullets, verbs and status suffixes from a scope line."""
    s = _collapse(text)
    previous = None
    while s and s != previous:
        previous = s
        s = _ENUM_RE.sub("", s, count=1).strip()
    s = _STATUS_SUFFIX_RE.sub("", s)
    s = _LEADING_VERB_RE.sub("", s)
    s = _TRAILING_QUALIFIER_RE.sub("", s)
    s = _collapse(s).strip(" .,;:-–—*")
    if len(s) < 3 or not _LETTERS_RE.search(s):
        return None
    if len(s) > MAX_CANDIDATE_CHARS:
        s = s[:MAX_CANDIDATE_CHARS].rsplit(" ", 1)[0].rstrip(" ,;:-")
    return s[0].upper() + s[1:]


def _split_row(line: str) -> List[str]:
    try:
        return [c.strip() for c in next(csv.reader([line]))]
    except (csv.Error, StopIteration):
        return [c.strip() for c in line.split(",")]


def _is_tabular_fragment(fragment: EvidenceFragment, lines: Sequence[str]) -> bool:
    if ":: table" in fragment.source_name:
        return True
    body = [l for l in lines if l.strip()]
    if not body:
        return False
    rows = sum(1 for l in body if l.count(",") >= 2)
    return rows / len(body) >= 0.6


def _looks_like_row(line: str, cells: Sequence[str]) -> bool:
    if len(cells) < 2:
        return False
    return any(not c or _NUMERIC_CELL_RE.match(c) for c in cells[1:])


def _row_description(cells: Sequence[str]) -> Optional[str]:
    for cell in cells:
        lowered = cell.strip().lower()
        if not cell or _NUMERIC_CELL_RE.match(cell) or lowered in _STATUS_CELLS:
            continue
        if lowered in _TABLE_HEADER_WORDS or len(_LETTERS_RE.findall(cell)) == 0:
            continue
        return cell
    return None


def _is_header_row(cells: Sequence[str]) -> bool:
    filled = [c.strip().lower() for c in cells if c.strip()]
    return bool(filled) and all(c in _TABLE_HEADER_WORDS for c in filled)


class _Harvester:
    def __init__(self, dictionary: ScopeDictionary):
        self.dictionary = dictionary
        self.result = HarvestResult()
        self._seen: set[str] = set()
        self._alt_seen: set[str] = set()

    def _add_candidate(self, text: str) -> None:
        cleaned = clean_candidate(text)
        if cleaned and cleaned.casefold() not in self._seen:
            self._seen.add(cleaned.casefold())
            self.result.candidates.append(cleaned)

    def _add_alternate(self, alt: Alternate) -> None:
        key = alt.description.casefold()
        if key in self._alt_seen:
            return
        self._alt_seen.add(key)
        self.result.alternates.append(alt)
        self.result.sections["alternates"].append(alt.source_line)

    def _hint(self, key: str, text: str) -> None:
        text = _collapse(text)
        if text and text not in self.result.sections[key]:
            self.result.sections[key].append(text)

    def fragment(self, fragment: EvidenceFragment) -> None:
        lines = (fragment.raw_text or "").splitlines()
        tabular = _is_tabular_fragment(fragment, lines)
        section: Optional[Section] = None
        for raw in lines:
            line = _collapse(raw)
            if not line:
                continue
            heading, rest = match_section(line)
            if heading is not None:
                section = heading
                if not rest:
                    continue
                line = rest
            cells = _split_row(line) if "," in line else [line]
            if (tabular and len(cells) > 1) or _looks_like_row(line, cells):
                self._row(line, cells, section)
            else:
                self._line(line, section)

    def _line(self, line: str, section: Optional[Section]) -> None:
        alt = detect_alternate(line, in_section=section is Section.ALTERNATES)
        if alt is not None:
            self._add_alternate(alt)
            return
        if is_junk(line):
            return
        excluded_mark = bool(_EXCLUDED_MARK_RE.search(line))
        if section is Section.EXCLUSIONS or excluded_mark:
            self._hint("exclusions", line)
        elif section is Section.INCLUSIONS:
            self._hint("inclusions", line)
        elif section is Section.ALLOWANCES:
            self._hint("allowances", line)

        if section in POSITIVE_SECTIONS and not excluded_mark:
            self._add_candidate(line)
        elif (
            self.dictionary
            and len(line.split()) <= MAX_DICTIONARY_LINE_WORDS
            and self.dictionary.canonize(line)
        ):
            self._add_candidate(line)

    def _row(self, line: str, cells: Sequence[str], section: Optional[Section]) -> None:
        if _is_header_row(cells):
            return
        alt = detect_alternate(line, in_section=section is Section.ALTERNATES)
        if alt is not None:
            self._add_alternate(alt)
            return
        description = _row_description(cells)
        if not description or is_junk(description):
            return
        statuses = {c.strip().lower() for c in cells} & _STATUS_CELLS
        if statuses & {"excluded", "excl", "no", "nic", "by others", "not included"}:
            self._hint("exclusions", description)
        elif section is Section.INCLUSIONS or statuses & {"included", "incl", "yes"}:
            self._hint("inclusions", description)
        elif section is Section.ALLOWANCES:
            self._hint("allowances", line)
        if section not in (Section.EXCLUSIONS, Section.SERVICES, Section.ALLOWANCES):
            self._add_candidate(description)


def harvest(fragments: Iterable[EvidenceFragment], dictionary: ScopeDictionary) -> HarvestResult:
    """Candidates, alternates and section hints from one contractor's fragments."""
    harvester = _Harvester(dictionary)
    for fragment in fragments:
        harvester.fragment(fragment)
    return harvester.result


def canonicalize(candidates: Iterable[str], dictionary: ScopeDictionary) -> List[str]:
    """Map onto canonical names where the dictionary knows them; keep first-seen order."""
    out = []
    for text in candidates:
        name = dictionary.canonize(text) if dictionary else None
        out.append(name or text)
    return dedupe_texts(out)


class CandidateScopeExtractor:
    """Builds the one candidate scope list every contractor is scored against."""

    def __init__(
        self,
        dictionary: ScopeDictionary,
        *,
        client: Optional[OracleClient] = None,
        limits: LevelingLimits = LevelingLimits(),
    ):
        self.dictionary = dictionary
        self.client = client
        self.limits = limits

    def extract(
        self, fragments_by_contractor: Mapping[str, Sequence[EvidenceFragment]]
    ) -> ScopeExtraction:
        log = get_logger()
        harvests: Dict[str, HarvestResult] = {}
        raw: List[str] = []
        for contractor_id, fragments in fragments_by_contractor.items():
            result = harvest(fragments, self.dictionary)
            harvests[contractor_id] = result
            raw.extend(result.candidates)
            log.debug(
                "Harvested %d candidates, %d alternates for %s",
                len(result.candidates),
                len(result.alternates),
                contractor_id,
            )

        heuristic = canonicalize(dedupe_texts(raw), self.dictionary)
        oracle_items = self._aggregate(heuristic, fragments_by_contractor)

        candidates = dedupe_texts(oracle_items + heuristic)
        source = "oracle+heuristic" if oracle_items else "heuristic"
        if not candidates:
            log.warning("No candidate scope found; using generic scope list")
            candidates = list(GENERIC_SCOPE)
            source = "fallback"
        if len(candidates) > self.limits.max_candidates:
            log.info(
                "Capping candidate list at %d (had %d)", self.limits.max_candidates, len(candidates)
            )
            candidates = candidates[: self.limits.max_candidates]
        log.info("Candidate scope list: %d items (%s)", len(candidates), source)
        return ScopeExtraction(candidates=candidates, harvests=harvests, source=source)

    def _aggregate(
        self,
        heuristic: List[str],
        fragments_by_contractor: Mapping[str, Sequence[EvidenceFragment]],
    ) -> List[str]:
        if self.client is None:
            return []
        log = get_logger()
        blocks = ["CANDIDATE SCOPE LINES:\n" + "\n".join(f"- {c}" for c in heuristic)]
        if len(heuristic) < self.limits.aggregation_min_items:
            blocks.extend(self._excerpts(fragments_by_contractor))
        try:
            text = self.client.ask(
                aggregation_system_prompt(), blocks, label="aggregation"
            )
            response = AggregationResponse.from_text(text)
        except Exception as exc:
            log.warning("Scope aggregation failed, keeping heuristic list: %s", exc)
            return []

        items = []
        for entry in response.scope_items[: self.limits.aggregation_max_items]:
            cleaned = clean_candidate(entry)
            if not cleaned or cleaned.lower().startswith("alternate"):
                continue
            items.append(cleaned)
        items = canonicalize(items, self.dictionary)
        log.info("Oracle consolidated %d scope items", len(items))
        return items

    def _excerpts(
        self, fragments_by_contractor: Mapping[str, Sequence[EvidenceFragment]]
    ) -> List[str]:
        count = max(1, len(fragments_by_contractor))
        share = AGGREGATION_EXCERPT_CHARS // count
        blocks = []
        for contractor_id, fragments in fragments_by_contractor.items():
            text = "\n".join(f.raw_text for f in fragments)[:share]
            if text.strip():
                blocks.append(f"EXCERPTS ({contractor_id}):\n{text}")
        return blocks


def is_contact_noise(line: str) -> bool:
    return any(rx.search(line) for rx in _CONTACT_RES)
