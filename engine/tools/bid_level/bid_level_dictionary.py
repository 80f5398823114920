"""
Canonical scope dictionaries.

A `ScopeDictionary` maps wording variants ("AHU", "rooftop unit", "RTU") onto
one canonical display string ("HVAC equipment"). Dictionaries are immutable
configuration, built once and passed into the extractor and reconciler, so
several divisions can be leveled side by side.

Only Division 23 (HVAC) ships a vocabulary. Every other division gets an
empty dictionary and relies on the oracle aggregation pass plus fuzzy
matching.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Optional

_NORMALIZE_RE = re.compile(r"[^a-z0-9\s.\-]")
_SPACES_RE = re.compile(r"\s+")
_DIVISION_RE = re.compile(r"(\d{2})")

MIN_SUBSTRING_KEY = 3

DEFAULT_STOPWORDS = frozenset(
    {
        "a", "an", "and", "the", "of", "for", "to", "in", "on", "at", "by",
        "with", "per", "all", "as", "or", "be", "is", "are", "new", "existing",
        "furnish", "install", "installation", "provide", "provided", "supply",
        "complete", "including", "include", "included", "system", "systems",
        "work", "works", "item", "items", "labor", "material", "materials",
        "required", "throughout", "each", "ea", "ls", "lot", "qty", "type",
        "ton", "tons", "cfm", "mbh", "btu", "kw", "hp", "lf", "sf",
    }
)

DEFAULT_BRAND_WORDS = frozenset(
    {
        "carrier", "trane", "daikin", "lennox", "york", "mitsubishi", "lg",
        "samsung", "fujitsu", "rheem", "goodman", "aaon", "mcquay", "greenheck",
        "titus", "price", "krueger", "honeywell", "johnson", "siemens", "alerton",
        "distech", "schneider", "armacell", "owens", "corning", "jci",
    }
)


def normalize(text: str) -> str:
    """Lowercase, strip punctuation other than '.' and '-', collapse spaces."""
    text = _NORMALIZE_RE.sub(" ", (text or "").lower())
    return _SPACES_RE.sub(" ", text).strip()


@dataclass(frozen=True)
class CanonicalScope:
    name: str
    synonyms: tuple[str, ...] = ()


class ScopeDictionary:
    """Synonym index for one division."""

    def __init__(
        self,
        division: str,
        items: Iterable[CanonicalScope],
        *,
        stopwords: Iterable[str] = DEFAULT_STOPWORDS,
        brand_words: Iterable[str] = DEFAULT_BRAND_WORDS,
    ):
        self.division = division
        self.items: tuple[CanonicalScope, ...] = tuple(items)
        self.stopwords = frozenset(stopwords)
        self.brand_words = frozenset(brand_words)

        index: dict[str, str] = {}
        for item in self.items:
            for phrase in (item.name, *item.synonyms):
                key = normalize(phrase)
                if key and key not in index:
                    index[key] = item.name
        self._index = index
        # longest key first so "controls integration" beats "controls"
        self._patterns = [
            (
                re.compile(r"(?<![a-z0-9])" + re.escape(key) + r"(?:e?s)?(?![a-z0-9])"),
                name,
            )
            for key, name in sorted(index.items(), key=lambda kv: (-len(kv[0]), kv[0]))
            if len(key) >= MIN_SUBSTRING_KEY
        ]

    def __len__(self) -> int:
        return len(self.items)

    def __bool__(self) -> bool:
        return bool(self.items)

    @property
    def canonical_names(self) -> list[str]:
        return [item.name for item in self.items]

    def canonize(self, phrase: str) -> Optional[str]:
        """
        Canonical name for `phrase`, or None.

        Exact match on a normalised name or synonym first, then the longest
        known synonym appearing in the phrase as whole words.
        """
        n = normalize(phrase)
        if not n:
            return None
        hit = self._index.get(n)
        if hit:
            return hit
        for pattern, name in self._patterns:
            if pattern.search(n):
                return name
        return None


DIV23_SCOPE = (
    CanonicalScope(
        "HVAC equipment",
        (
            "ahu", "air handling unit", "air handler", "hvac unit", "package unit",
            "packaged unit", "rooftop unit", "rtu", "fan coil", "heat pump",
            "condensing unit", "split system",
        ),
    ),
    CanonicalScope("VRF/VRV system", ("vrf", "vrv", "variable refrigerant", "multi split")),
    CanonicalScope("Ductwork", ("duct", "ducting", "ductwork", "sheet metal")),
    CanonicalScope(
        "Air distribution",
        (
            "diffuser", "register", "grille", "vav", "variable air volume",
            "terminal unit", "air device",
        ),
    ),
    CanonicalScope(
        "Temperature controls",
        ("controls", "bms", "ddc", "thermostat", "building automation", "ems"),
    ),
    CanonicalScope(
        "Testing & balancing",
        ("testing and balancing", "test and balance", "tab", "air balance", "water balance"),
    ),
    CanonicalScope("Mechanical insulation", ("insulation", "duct wrap", "pipe insulation")),
    CanonicalScope("Condensate piping", ("condensate", "condensate drain")),
    CanonicalScope("Refrigerant piping", ("refrigerant piping", "line set", "lineset")),
    CanonicalScope("Controls integration", ("controls integration", "bms integration")),
    CanonicalScope("Demolition", ("demo", "demolition", "remove existing", "removal of existing")),
    CanonicalScope("Crane & rigging", ("crane", "rigging", "hoisting")),
    CanonicalScope("Startup & commissioning", ("startup", "start up", "start-up", "commissioning")),
    CanonicalScope("Shop drawings", ("shop drawing", "submittal", "submittals")),
    CanonicalScope("Title 24 documentation", ("title 24", "energy compliance", "comcheck")),
    CanonicalScope("Seismic bracing", ("seismic", "seismic restraints", "restraint")),
    CanonicalScope(
        "BIM/3D coordination", ("bim", "3d coordination", "navisworks", "clash detection")
    ),
    CanonicalScope("Permits & inspections", ("permit", "inspection", "ahj")),
    CanonicalScope(
        "Controls programming", ("controls programming", "sequence of operations")
    ),
)

_BUNDLED = {"23": DIV23_SCOPE}


def division_key(division: str | None) -> Optional[str]:
    """Two-digit CSI division from codes like '23', '23 00 00', 'Division 23'."""
    if not division:
        return None
    match = _DIVISION_RE.search(str(division))
    return match.group(1) if match else None


@lru_cache(maxsize=None)
def get_scope_dictionary(division: str | None) -> ScopeDictionary:
    """Bundled dictionary for the division, or an empty one (generic flow)."""
    key = division_key(division) or "generic"
    return ScopeDictionary(key, _BUNDLED.get(key, ()))
