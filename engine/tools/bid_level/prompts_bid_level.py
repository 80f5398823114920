from typing import Sequence

from tools.bid_level.bid_level_models import EvidenceFragment


def aggregation_system_prompt(min_items: int = 20, max_items: int = 40) -> str:
    """Instruction for the one-shot vocabulary consolidation pass."""
    return f"""
You consolidate construction bid scope for a single trade division.
You receive CANDIDATE SCOPE lines harvested from several contractors' proposals,
and sometimes short EXCERPTS of the proposals themselves.

Return ONE unified scope vocabulary of {min_items}-{max_items} items that a
leveling matrix can compare contractors against.

Rules:
- Every item is a short noun phrase (2-6 words), e.g. "Ductwork", "Testing & balancing".
- No verbs, no prices, no quantities, no contractor names, no brand names.
- Merge wording variants into one item; do not list the same scope twice.
- Do not include totals, taxes, bonds, payment terms or general business prose.
- Do not invent scope that none of the lines or excerpts mention.
- Keep "Alternate: ..." items out; alternates are tracked separately.

Respond with JSON only:
{{"scope_items": ["Ductwork", "HVAC equipment", "..."]}}
""".strip()


def scoring_system_prompt(candidate_count: int, *, lenient: bool = False) -> str:
    """Instruction for classifying one contractor against the candidate list."""
    strictness = (
        """
- Read the raw text generously: tables, notes and clarifications all count.
- When a line plausibly covers a candidate, report it with the quoted evidence.
""".strip()
        if lenient
        else """
- Only mark "included" when the text states the work is part of this bid.
- Only mark "excluded" when the text explicitly excludes it ("excluded", "by others", "not included", "NIC").
- Silence is "not_specified". Never infer "excluded" from absence.
""".strip()
    )
    return f"""
You level a contractor's bid against a fixed list of {candidate_count} CANDIDATE SCOPE ITEMS.

Return exactly one entry in "items" for every candidate index from 1 to {candidate_count}.
Use the candidate's index; never invent new item names inside "items".
{strictness}
- "evidence" quotes the words from the documents that justify the status (empty when not_specified).
- "price" is a number when the bid prices that scope separately, else null. Deducts are negative.

Scope the contractor mentions that matches NO candidate goes to "unmapped" with its evidence.
Also extract the contractor's qualifications and the base bid total (null when absent).

Respond with JSON only:
{{
  "items": [
    {{"candidate_index": 1, "status": "included|excluded|not_specified", "price": null, "evidence": "..."}}
  ],
  "qualifications": {{
    "includes": [], "excludes": [], "allowances": [], "alternates": [],
    "payment_terms": [], "fine_print": []
  }},
  "total": null,
  "unmapped": [{{"name": "...", "evidence": "..."}}]
}}
""".strip()


def candidate_block(candidates: Sequence[str]) -> str:
    lines = [f"{i}. {name}" for i, name in enumerate(candidates, start=1)]
    return "CANDIDATE SCOPE ITEMS:\n" + "\n".join(lines)


def contractor_block(contractor_id: str, name: str) -> str:
    return f"CONTRACTOR: {name} (id: {contractor_id})"


def fragment_block(fragment: EvidenceFragment, text: str | None = None) -> str:
    return f"=== EXTRACT: {fragment.source_name} ===\n{fragment.raw_text if text is None else text}"


def structured_block(sections: dict[str, list[str]]) -> str:
    """Render detected section lines after the free text."""
    parts = ["STRUCTURED QUALIFICATIONS (detected headings):"]
    for title, lines in sections.items():
        if not lines:
            continue
        parts.append(f"{title.upper()}:")
        parts.extend(f"- {line}" for line in lines)
    return "\n".join(parts)
