from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from utils.core.log import get_logger
from tools.bid_level.bid_level_models import (
    ContractorStats,
    ContractorSummary,
    LevelingReport,
    MatrixCell,
    Qualifications,
    Recommendation,
    ReportSummary,
    ScopeStatus,
    UnmappedItem,
    AlternateEntry,
    dedupe_texts,
)
from tools.bid_level.bid_level_reconcile import ReconciledContractor

MAX_LISTED_ITEMS = 5


def contractor_total(contractor: ReconciledContractor) -> tuple[Optional[float], Optional[str]]:
    """Reported total, else the sum of included item prices, else None."""
    if contractor.total is not None:
        return contractor.total, "reported"
    prices = [
        item.price
        for item in contractor.items
        if item.status == ScopeStatus.INCLUDED and item.price is not None
    ]
    if prices:
        return round(sum(prices), 2), "derived"
    return None, None


def _summary(
    scope_items: Sequence[str],
    matrix: Dict[str, Dict[str, MatrixCell]],
    contractors: Sequence[ContractorSummary],
) -> ReportSummary:
    priced = [c for c in contractors if c.total is not None]
    lowest = min(priced, key=lambda c: c.total) if priced else None
    highest = max(priced, key=lambda c: c.total) if priced else None

    coverage: Dict[str, ContractorStats] = {}
    for c in contractors:
        stats = ContractorStats()
        for item in scope_items:
            status = matrix[item][c.contractor_id].status
            setattr(stats, status.value, getattr(stats, status.value) + 1)
        coverage[c.contractor_id] = stats
    return ReportSummary(
        lowest_bidder=lowest.contractor_id if lowest else None,
        highest_bidder=highest.contractor_id if highest else None,
        coverage=coverage,
    )


def _listing(items: Sequence[str]) -> str:
    shown = ", ".join(items[:MAX_LISTED_ITEMS])
    more = len(items) - MAX_LISTED_ITEMS
    return f"{shown} and {more} more" if more > 0 else shown


def recommend(
    candidates: Sequence[str],
    matrix: Dict[str, Dict[str, MatrixCell]],
    contractors: Sequence[ContractorSummary],
) -> Optional[Recommendation]:
    """
    Pick the bid that includes the most candidate scope items, breaking ties
    on the lowest known total. Alternate rows never count towards coverage.

    Returns None when no contractor was leveled.
    """
    if not contractors:
        return None
    rows = [item for item in dedupe_texts(list(candidates)) if item in matrix]

    def items_with(cid: str, status: ScopeStatus) -> List[str]:
        return [item for item in rows if matrix[item][cid].status == status]

    included = {c.contractor_id: len(items_with(c.contractor_id, ScopeStatus.INCLUDED)) for c in contractors}
    best_count = max(included.values())
    best = [c for c in contractors if included[c.contractor_id] == best_count]
    priced = [c for c in best if c.total is not None]
    if best_count == 0 and not priced:
        return Recommendation(
            rationale="No bid clearly includes any candidate scope item.",
            next_steps="Clarify scope with every contractor before comparing bids.",
        )
    chosen = min(priced, key=lambda c: c.total) if priced else best[0]

    rationale = f"{chosen.name} includes {best_count} of {len(rows)} scope items"
    if chosen.total is None:
        rationale += " but no total could be determined"
    else:
        rationale += f" at ${chosen.total:,.2f}"
        if len(priced) > 1:
            rationale += ", the lowest total among the best-covered bids"
    rationale += "."

    cid = chosen.contractor_id
    steps = []
    open_items = items_with(cid, ScopeStatus.NOT_SPECIFIED)
    excluded = items_with(cid, ScopeStatus.EXCLUDED)
    if open_items:
        steps.append(f"Clarify not specified items with {chosen.name}: {_listing(open_items)}.")
    if excluded:
        steps.append(f"Cover excluded items elsewhere: {_listing(excluded)}.")
    if chosen.total is None:
        steps.append(f"Request a base bid total from {chosen.name}.")
    if not steps:
        steps.append(f"Confirm scope and pricing with {chosen.name} before award.")
    return Recommendation(selected_contractor_id=cid, rationale=rationale, next_steps=" ".join(steps))


def merge_reports(
    candidates: Sequence[str],
    reconciled: Sequence[ReconciledContractor],
    *,
    division_code: Optional[str] = None,
    subdivision_id: Optional[str] = None,
) -> LevelingReport:
    """
    Fold every contractor's reconciled answer into one leveling report.

    Every (scope item, contractor) pair gets a cell; pairs a contractor
    never answered stay not_specified with no price.
    """
    log = get_logger()

    extra_rows: List[str] = []
    for contractor in reconciled:
        extra_rows.extend(item.scope_item for item in contractor.items)
        extra_rows.extend(alt.description for alt in contractor.alternates)
    scope_items = dedupe_texts(list(candidates) + extra_rows)
    added = len(scope_items) - len(dedupe_texts(list(candidates)))
    if added:
        log.info("Report carries %d rows beyond the candidate list (alternates)", added)

    contractor_ids = dedupe_texts([c.contractor_id for c in reconciled])
    matrix: Dict[str, Dict[str, MatrixCell]] = {
        item: {cid: MatrixCell() for cid in contractor_ids} for item in scope_items
    }
    row_of = {item.casefold(): item for item in scope_items}
    candidate_rows = {item.casefold() for item in candidates}

    qualifications: Dict[str, Qualifications] = {}
    unmapped: Dict[str, List[UnmappedItem]] = {}
    alternates: Dict[str, List[AlternateEntry]] = {}
    summaries: Dict[str, ContractorSummary] = {}

    for contractor in reconciled:
        cid = contractor.contractor_id
        for item in contractor.items:
            matrix[row_of[item.scope_item.casefold()]][cid] = MatrixCell(
                status=item.status, price=item.price
            )
        for alt in contractor.alternates:
            # a scored candidate row keeps the contractor's answer
            if alt.description.casefold() in candidate_rows:
                continue
            matrix[row_of[alt.description.casefold()]][cid] = MatrixCell(
                status=ScopeStatus.INCLUDED, price=alt.price
            )

        previous = qualifications.get(cid)
        qualifications[cid] = (
            previous.merge(contractor.qualifications) if previous else contractor.qualifications
        )
        unmapped.setdefault(cid, []).extend(contractor.unmapped)
        alternates.setdefault(cid, []).extend(contractor.alternates)

        total, source = contractor_total(contractor)
        if cid not in summaries or summaries[cid].total is None:
            summaries[cid] = ContractorSummary(
                contractor_id=cid, name=contractor.name, total=total, total_source=source
            )

    contractors = [summaries[cid] for cid in contractor_ids]
    report = LevelingReport(
        division_code=division_code,
        subdivision_id=subdivision_id,
        scope_items=scope_items,
        matrix=matrix,
        qualifications=qualifications,
        contractors=contractors,
        unmapped=unmapped,
        alternates=alternates,
        summary=_summary(scope_items, matrix, contractors),
        recommendation=recommend(candidates, matrix, contractors),
    )
    log.info(
        "Merged report: %d scope items x %d contractors", len(scope_items), len(contractors)
    )
    return report
