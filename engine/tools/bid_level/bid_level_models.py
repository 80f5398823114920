"""
Pydantic models for the leveling pipeline.

Two families live here:

- Report models (`ScoredItem`, `Qualifications`, `ContractorSummary`,
  `LevelingReport`, ...) are the pipeline's own output and are strict.
- Oracle models (`RawScoredItem`, `ScoringResponse`, `AggregationResponse`)
  describe what the model is *asked* to return. They coerce defensively:
  prices from currency strings, status synonyms, scalars into lists, and
  every optional key defaults to empty.

Evidence fragments are plain frozen dataclasses; they are produced once by
the loader and only read afterwards.
"""

from __future__ import annotations

import re
import json
from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from utils.core.jsonval import parse_llm_json


class ScopeStatus(str, Enum):
    INCLUDED = "included"
    EXCLUDED = "excluded"
    NOT_SPECIFIED = "not_specified"


# included > excluded > not_specified
STATUS_RANK = {
    ScopeStatus.NOT_SPECIFIED: 0,
    ScopeStatus.EXCLUDED: 1,
    ScopeStatus.INCLUDED: 2,
}

_INCLUDED_WORDS = {
    "included", "include", "includes", "incl", "yes", "y", "true",
    "in scope", "provided", "by contractor", "furnished", "furnish and install",
}
_EXCLUDED_WORDS = {
    "excluded", "exclude", "excludes", "excl", "no", "n", "false", "nic",
    "n i c", "not included", "by others", "out of scope", "not in contract",
    "not provided", "by owner",
}
_PRICE_RE = re.compile(r"\d[\d,]*(?:\.\d+)?")


def parse_status(value: Any) -> ScopeStatus:
    """Map whatever the oracle wrote into one of the three statuses."""
    if isinstance(value, ScopeStatus):
        return value
    if isinstance(value, bool):
        return ScopeStatus.INCLUDED if value else ScopeStatus.EXCLUDED
    text = re.sub(r"[\s_.\-]+", " ", str(value or "")).strip().lower()
    if not text:
        return ScopeStatus.NOT_SPECIFIED
    if text in _EXCLUDED_WORDS:
        return ScopeStatus.EXCLUDED
    if text in _INCLUDED_WORDS:
        return ScopeStatus.INCLUDED
    if "not specified" in text or "unclear" in text or "unknown" in text:
        return ScopeStatus.NOT_SPECIFIED
    if "not incl" in text or "exclu" in text or "by others" in text:
        return ScopeStatus.EXCLUDED
    if "includ" in text:
        return ScopeStatus.INCLUDED
    return ScopeStatus.NOT_SPECIFIED


def parse_price(value: Any) -> Optional[float]:
    """
    Numeric price from a number or a currency string.

    "(1,200)", "-$1,200" and "deduct $1,200" are negative; words such as
    "Included" or "N/A" yield None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    match = _PRICE_RE.search(text)
    if not match:
        return None
    try:
        amount = float(match.group().replace(",", ""))
    except ValueError:
        return None
    lowered = text.lower()
    negative = (
        text.startswith("-")
        or text.startswith("(")
        or "-$" in text
        or "deduct" in lowered
        or "credit" in lowered
    )
    return -amount if negative else amount


def _as_text_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (str, int, float)):
        value = [value]
    if isinstance(value, dict):
        value = list(value.values())
    out: List[str] = []
    for entry in value:
        if isinstance(entry, dict):
            text = (
                entry.get("text")
                or entry.get("description")
                or entry.get("name")
                or json.dumps(entry, sort_keys=True)
            )
        else:
            text = entry
        text = " ".join(str(text or "").split())
        if text:
            out.append(text)
    return out


def dedupe_texts(values: List[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for v in values:
        key = v.casefold()
        if key not in seen:
            seen.add(key)
            out.append(v)
    return out


@dataclass(frozen=True)
class EvidenceFragment:
    """One table, page of text or sheet extracted from one document."""

    source_name: str
    raw_text: str


@dataclass(frozen=True)
class ContractorBid:
    """All documents one contractor submitted for the division."""

    contractor_id: str
    name: str
    bid_ids: tuple[str, ...] = ()
    document_keys: tuple[str, ...] = ()


# Report models
class ScoredItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scope_item: str = Field(description="Candidate scope item this row belongs to")
    status: ScopeStatus = Field(default=ScopeStatus.NOT_SPECIFIED)
    price: Optional[float] = Field(default=None, description="Price, negative for deducts")
    evidence: str = Field(default="", description="Quoted text supporting the status")


class MatrixCell(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: ScopeStatus = ScopeStatus.NOT_SPECIFIED
    price: Optional[float] = None


class UnmappedItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    evidence: str = ""


class AlternateEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str
    price: Optional[float] = None


class Qualifications(BaseModel):
    """Free-text qualifications of one contractor, not tied to scope items."""

    model_config = ConfigDict(extra="ignore")

    includes: List[str] = Field(default_factory=list)
    excludes: List[str] = Field(default_factory=list)
    allowances: List[str] = Field(default_factory=list)
    alternates: List[str] = Field(default_factory=list)
    payment_terms: List[str] = Field(default_factory=list)
    fine_print: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return {}
        data = dict(data)
        for alias, field in (
            ("inclusions", "includes"),
            ("exclusions", "excludes"),
            ("allowance", "allowances"),
            ("options", "alternates"),
            ("terms", "payment_terms"),
            ("clarifications", "fine_print"),
            ("notes", "fine_print"),
        ):
            if alias in data and field not in data:
                data[field] = data.pop(alias)
        return data

    @field_validator(
        "includes", "excludes", "allowances", "alternates", "payment_terms", "fine_print",
        mode="before",
    )
    @classmethod
    def _texts(cls, value: Any) -> List[str]:
        return dedupe_texts(_as_text_list(value))

    def merge(self, other: "Qualifications") -> "Qualifications":
        """Per-field union, first-seen order, case-insensitive dedupe."""
        merged = {
            name: dedupe_texts(getattr(self, name) + getattr(other, name))
            for name in Qualifications.model_fields
        }
        return Qualifications(**merged)

    def is_empty(self) -> bool:
        return not any(getattr(self, name) for name in Qualifications.model_fields)


class ContractorSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contractor_id: str
    name: str
    total: Optional[float] = None
    total_source: Optional[str] = Field(
        default=None, description="'reported', 'derived' or None when unknown"
    )


class ContractorStats(BaseModel):
    included: int = 0
    excluded: int = 0
    not_specified: int = 0


class ReportSummary(BaseModel):
    lowest_bidder: Optional[str] = None
    highest_bidder: Optional[str] = None
    coverage: Dict[str, ContractorStats] = Field(default_factory=dict)


class Recommendation(BaseModel):
    """Suggested award, derived from coverage and totals. Advisory only."""

    selected_contractor_id: Optional[str] = None
    rationale: str = ""
    next_steps: str = ""


class LevelingReport(BaseModel):
    """Division-level leveling matrix. Never mutated once merged."""

    division_code: Optional[str] = None
    subdivision_id: Optional[str] = None
    generated_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc)
        .isoformat(timespec="seconds")
        .replace("+00:00", "Z")
    )
    scope_items: List[str] = Field(default_factory=list)
    matrix: Dict[str, Dict[str, MatrixCell]] = Field(default_factory=dict)
    qualifications: Dict[str, Qualifications] = Field(default_factory=dict)
    contractors: List[ContractorSummary] = Field(default_factory=list)
    unmapped: Dict[str, List[UnmappedItem]] = Field(default_factory=dict)
    alternates: Dict[str, List[AlternateEntry]] = Field(default_factory=dict)
    summary: ReportSummary = Field(default_factory=ReportSummary)
    recommendation: Optional[Recommendation] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def to_json(self, indent: int = 2) -> str:
        return self.model_dump_json(indent=indent)


# Oracle response models
class RawScoredItem(BaseModel):
    """One entry of the scoring answer, before reconciliation."""

    model_config = ConfigDict(extra="ignore")

    candidate_index: Optional[int] = None
    name: Optional[str] = None
    status: ScopeStatus = ScopeStatus.NOT_SPECIFIED
    price: Optional[float] = None
    evidence: str = ""

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"name": data}
        if not isinstance(data, dict):
            return {}
        index = next(
            (data[k] for k in ("candidate_index", "index", "idx", "candidate") if k in data),
            None,
        )
        name = next(
            (
                data[k]
                for k in ("name", "scope_item", "candidate_scope_item", "item", "description")
                if data.get(k)
            ),
            None,
        )
        try:
            index = int(str(index).strip().lstrip("#")) if index is not None else None
        except ValueError:
            if name is None and isinstance(index, str):
                name = index
            index = None
        evidence = data.get("evidence") or data.get("quote") or data.get("source") or ""
        if isinstance(evidence, list):
            evidence = " | ".join(str(e) for e in evidence if e)
        return {
            "candidate_index": index,
            "name": " ".join(str(name).split()) if name else None,
            "status": parse_status(data.get("status")),
            "price": parse_price(data.get("price", data.get("amount"))),
            "evidence": str(evidence).strip(),
        }


class ScoringResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    items: List[RawScoredItem] = Field(default_factory=list)
    qualifications: Qualifications = Field(default_factory=Qualifications)
    total: Optional[float] = None
    unmapped: List[UnmappedItem] = Field(default_factory=list)

    @field_validator("items", mode="before")
    @classmethod
    def _items(cls, value: Any) -> List[Any]:
        if isinstance(value, dict):
            value = list(value.values())
        if not isinstance(value, list):
            return []
        return [v for v in value if isinstance(v, (dict, str))]

    @field_validator("qualifications", mode="before")
    @classmethod
    def _quals(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @field_validator("total", mode="before")
    @classmethod
    def _total(cls, value: Any) -> Optional[float]:
        return parse_price(value)

    @field_validator("unmapped", mode="before")
    @classmethod
    def _unmapped(cls, value: Any) -> List[Dict[str, str]]:
        if not isinstance(value, list):
            return []
        out = []
        for entry in value:
            if isinstance(entry, str) and entry.strip():
                out.append({"name": entry.strip()})
            elif isinstance(entry, dict) and (entry.get("name") or entry.get("item")):
                out.append(
                    {
                        "name": str(entry.get("name") or entry.get("item")).strip(),
                        "evidence": str(entry.get("evidence") or "").strip(),
                    }
                )
        return out

    @classmethod
    def from_text(cls, text: str | None) -> "ScoringResponse":
        """Parse an oracle answer; invalid JSON yields the empty response."""
        data = parse_llm_json(text, label="scoring")
        if data is None:
            return cls()
        return cls.model_validate(data)

    def is_usable(self) -> bool:
        return bool(self.items) or self.total is not None or not self.qualifications.is_empty()


class AggregationResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    scope_items: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return {}
        value = data.get("scope_items", data.get("items", data.get("scope", [])))
        return {"scope_items": _as_text_list(value) if isinstance(value, list) else []}

    @classmethod
    def from_text(cls, text: str | None) -> "AggregationResponse":
        data = parse_llm_json(text, label="aggregation")
        if data is None:
            return cls()
        return cls.model_validate(data)
