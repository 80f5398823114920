import pytest

from tools.bid_level.bid_level_merge import contractor_total, merge_reports
from tools.bid_level.bid_level_models import (
    AlternateEntry,
    Qualifications,
    ScopeStatus,
    ScoredItem,
    UnmappedItem,
)
from tools.bid_level.bid_level_reconcile import ReconciledContractor

CANDIDATES = ["HVAC equipment", "Ductwork"]


def item(scope, status, price=None):
    return ScoredItem(scope_item=scope, status=status, price=price)


@pytest.fixture
def acme():
    return ReconciledContractor(
        contractor_id="c1",
        name="Acme Mechanical",
        items=[
            item("HVAC equipment", ScopeStatus.INCLUDED, 5000),
            item("Ductwork", ScopeStatus.INCLUDED, 1000),
        ],
        alternates=[AlternateEntry(description="Alternate: Delete VFDs", price=-4200)],
        qualifications=Qualifications(excludes=["Painting"]),
        unmapped=[UnmappedItem(name="Crane", evidence="Crane by Acme")],
    )


@pytest.fixture
def best():
    return ReconciledContractor(
        contractor_id="c2",
        name="Best Air",
        items=[
            item("HVAC equipment", ScopeStatus.INCLUDED),
            item("Ductwork", ScopeStatus.EXCLUDED),
        ],
        qualifications=Qualifications(excludes=["Permits"]),
        total=9000,
    )


class TestContractorTotal:
    def test_reported_total_wins(self, best):
        assert contractor_total(best) == (9000, "reported")

    def test_derived_total_skips_alternates(self, acme):
        assert contractor_total(acme) == (6000, "derived")

    def test_unknown_total(self):
        bare = ReconciledContractor("c3", "Cool Co", items=[item("Ductwork", ScopeStatus.EXCLUDED, 700)])
        assert contractor_total(bare) == (None, None)


class TestMergeReports:
    def test_full_matrix(self, acme, best):
        report = merge_reports(CANDIDATES, [acme, best], division_code="23")

        assert report.division_code == "23"
        assert report.scope_items == ["HVAC equipment", "Ductwork", "Alternate: Delete VFDs"]
        for scope in report.scope_items:
            assert set(report.matrix[scope]) == {"c1", "c2"}

    def test_cells(self, acme, best):
        report = merge_reports(CANDIDATES, [acme, best])

        assert report.matrix["Ductwork"]["c1"].status == ScopeStatus.INCLUDED
        assert report.matrix["Ductwork"]["c1"].price == 1000
        assert report.matrix["Ductwork"]["c2"].status == ScopeStatus.EXCLUDED
        assert report.matrix["Alternate: Delete VFDs"]["c1"].price == -4200
        assert report.matrix["Alternate: Delete VFDs"]["c2"].status == ScopeStatus.NOT_SPECIFIED
        assert report.matrix["Alternate: Delete VFDs"]["c2"].price is None

    def test_contractor_summaries(self, acme, best):
        report = merge_reports(CANDIDATES, [acme, best])
        summaries = {c.contractor_id: c for c in report.contractors}

        assert (summaries["c1"].total, summaries["c1"].total_source) == (6000, "derived")
        assert (summaries["c2"].total, summaries["c2"].total_source) == (9000, "reported")
        assert report.summary.lowest_bidder == "c1"
        assert report.summary.highest_bidder == "c2"

    def test_coverage(self, acme, best):
        report = merge_reports(CANDIDATES, [acme, best])
        coverage = report.summary.coverage

        assert (coverage["c1"].included, coverage["c1"].excluded, coverage["c1"].not_specified) == (3, 0, 0)
        assert (coverage["c2"].included, coverage["c2"].excluded, coverage["c2"].not_specified) == (1, 1, 1)

    def test_side_tables(self, acme, best):
        report = merge_reports(CANDIDATES, [acme, best])

        assert report.qualifications["c1"].excludes == ["Painting"]
        assert report.qualifications["c2"].excludes == ["Permits"]
        assert [u.name for u in report.unmapped["c1"]] == ["Crane"]
        assert report.unmapped["c2"] == []
        assert report.alternates["c1"][0].price == -4200

    def test_repeated_contractor_unions_qualifications(self, acme):
        again = ReconciledContractor(
            contractor_id="c1",
            name="Acme Mechanical",
            items=[item("HVAC equipment", ScopeStatus.INCLUDED)],
            qualifications=Qualifications(excludes=["painting", "Bonds"]),
            total=12000,
        )
        report = merge_reports(CANDIDATES, [acme, again])

        assert [c.contractor_id for c in report.contractors] == ["c1"]
        assert report.qualifications["c1"].excludes == ["Painting", "Bonds"]
        assert report.contractors[0].total == 6000

    def test_no_priced_contractors(self):
        silent = ReconciledContractor(
            "c1", "Acme", items=[item(c, ScopeStatus.NOT_SPECIFIED) for c in CANDIDATES]
        )
        report = merge_reports(CANDIDATES, [silent])

        assert report.summary.lowest_bidder is None
        assert report.summary.highest_bidder is None
        assert report.summary.coverage["c1"].not_specified == 2

    def test_serialises_to_plain_json(self, acme, best):
        data = merge_reports(CANDIDATES, [acme, best], subdivision_id="sub-9").to_dict()

        assert data["subdivision_id"] == "sub-9"
        assert data["matrix"]["Ductwork"]["c2"] == {"status": "excluded", "price": None}
        assert data["generated_at"].endswith("Z")

    def test_alternate_never_overwrites_a_candidate_row(self, acme):
        candidates = CANDIDATES + ["Alternate: Delete VFDs"]
        acme.items.append(item("Alternate: Delete VFDs", ScopeStatus.EXCLUDED))
        report = merge_reports(candidates, [acme])

        assert report.matrix["Alternate: Delete VFDs"]["c1"].status == ScopeStatus.EXCLUDED
        assert report.matrix["Alternate: Delete VFDs"]["c1"].price is None
        assert report.alternates["c1"][0].price == -4200


class TestRecommendation:
    def test_best_coverage_wins_over_lower_total(self, acme, best):
        best.total = 3000
        rec = merge_reports(CANDIDATES, [acme, best]).recommendation

        assert rec.selected_contractor_id == "c1"
        assert rec.rationale == "Acme Mechanical includes 2 of 2 scope items at $6,000.00."
        assert rec.next_steps == "Confirm scope and pricing with Acme Mechanical before award."

    def test_lowest_total_breaks_coverage_ties(self, acme):
        cheaper = ReconciledContractor(
            "c2", "Best Air", items=[item(c, ScopeStatus.INCLUDED) for c in CANDIDATES], total=5500
        )
        rec = merge_reports(CANDIDATES, [acme, cheaper]).recommendation

        assert rec.selected_contractor_id == "c2"
        assert "lowest total" in rec.rationale

    def test_next_steps_name_open_items(self):
        partial = ReconciledContractor(
            "c1",
            "Acme",
            items=[
                item("HVAC equipment", ScopeStatus.INCLUDED),
                item("Ductwork", ScopeStatus.NOT_SPECIFIED),
            ],
        )
        rec = merge_reports(CANDIDATES, [partial]).recommendation

        assert rec.selected_contractor_id == "c1"
        assert "no total" in rec.rationale
        assert rec.next_steps == (
            "Clarify not specified items with Acme: Ductwork. Request a base bid total from Acme."
        )

    def test_nothing_to_recommend(self):
        silent = ReconciledContractor(
            "c1", "Acme", items=[item(c, ScopeStatus.NOT_SPECIFIED) for c in CANDIDATES]
        )
        assert merge_reports(CANDIDATES, [silent]).recommendation.selected_contractor_id is None
        assert merge_reports(CANDIDATES, []).recommendation is None

    def test_serialised(self, acme, best):
        data = merge_reports(CANDIDATES, [acme, best]).to_dict()
        assert data["recommendation"]["selected_contractor_id"] == "c1"
