import pytest

from tools.bid_level.bid_level_dictionary import get_scope_dictionary
from tools.bid_level.bid_level_models import RawScoredItem, ScopeStatus, ScoringResponse
from tools.bid_level.bid_level_reconcile import Reconciler
from tools.bid_level.bid_level_scope import Alternate

CANDIDATES = ["HVAC equipment", "Ductwork", "Testing & balancing"]

VFD_DEDUCT = Alternate(
    description="Delete VFDs on supply fans",
    price=-4200.0,
    kind="deduct",
    source_line="DEDUCT ALTERNATE #1: Delete VFDs on supply fans $4,200",
)


@pytest.fixture
def reconciler(hvac_dictionary):
    return Reconciler(CANDIDATES, hvac_dictionary)


def raw(**fields):
    return RawScoredItem.model_validate(fields)


class TestResolve:
    def test_by_index(self, reconciler):
        resolution = reconciler.resolve(raw(candidate_index=2, status="included"))
        assert (resolution.index, resolution.method) == (1, "index")

    def test_by_exact_name(self, reconciler):
        resolution = reconciler.resolve(raw(name="ductwork"))
        assert (resolution.index, resolution.method) == (1, "name")

    def test_by_dictionary(self, reconciler):
        resolution = reconciler.resolve(raw(name="40 ton AHU"))
        assert (resolution.index, resolution.method) == (0, "dictionary")

    def test_out_of_range_index_falls_back_to_name(self, reconciler):
        resolution = reconciler.resolve(raw(candidate_index=7, name="Ductwork"))
        assert (resolution.index, resolution.method) == (1, "name")

    def test_by_token_overlap(self):
        generic = Reconciler(["Ductwork", "Fire alarm interface wiring"], get_scope_dictionary("26"))
        resolution = generic.resolve(raw(name="Fire alarm wiring"))
        assert (resolution.index, resolution.method) == (1, "fuzzy")

    def test_unresolvable(self, reconciler):
        assert reconciler.resolve(raw(name="Landscaping")).index is None
        assert reconciler.resolve(raw(candidate_index=9)).index is None


class TestReconcile:
    def test_exactly_one_item_per_candidate(self, reconciler):
        result = reconciler.reconcile("c1", "Acme", ScoringResponse())
        assert [item.scope_item for item in result.items] == CANDIDATES
        assert all(item.status == ScopeStatus.NOT_SPECIFIED for item in result.items)
        assert all(item.price is None for item in result.items)

    def test_included_beats_excluded(self, reconciler):
        response = ScoringResponse.model_validate(
            {
                "items": [
                    {"candidate_index": 2, "status": "excluded", "evidence": "Ductwork by others"},
                    {"name": "sheet metal", "status": "included", "evidence": "Sheet metal ducts"},
                    {"candidate_index": 2, "status": "not_specified"},
                ]
            }
        )
        ductwork = reconciler.reconcile("c1", "Acme", response).items[1]
        assert ductwork.status == ScopeStatus.INCLUDED
        assert ductwork.evidence == "Ductwork by others | Sheet metal ducts"

    def test_first_price_wins(self, reconciler):
        response = ScoringResponse.model_validate(
            {
                "items": [
                    {"candidate_index": 1, "status": "included", "price": None},
                    {"candidate_index": 1, "status": "included", "price": "$12,000"},
                    {"name": "RTU", "status": "included", "price": 15000},
                ]
            }
        )
        assert reconciler.reconcile("c1", "Acme", response).items[0].price == 12000

    def test_unresolved_items_become_unmapped(self, reconciler):
        response = ScoringResponse.model_validate(
            {
                "items": [
                    {"name": "Landscaping", "status": "included", "evidence": "Planting"},
                    {"candidate_index": 9, "status": "included"},
                ],
                "unmapped": ["landscaping", "Crane"],
            }
        )
        result = reconciler.reconcile("c1", "Acme", response)
        assert [u.name for u in result.unmapped] == ["Landscaping", "Candidate #9", "Crane"]
        assert len(result.items) == len(CANDIDATES)

    def test_is_idempotent(self, reconciler):
        response = ScoringResponse.model_validate(
            {
                "items": [{"candidate_index": 1, "status": "included", "price": 5000}],
                "qualifications": {"excludes": ["Painting"]},
                "total": 98000,
            }
        )
        first = reconciler.reconcile("c1", "Acme", response, [VFD_DEDUCT])
        second = reconciler.reconcile("c1", "Acme", response, [VFD_DEDUCT])
        assert first == second


class TestAlternates:
    def test_alternates_are_listed_with_price(self, reconciler):
        result = reconciler.reconcile("c1", "Acme", ScoringResponse(), [VFD_DEDUCT, VFD_DEDUCT])
        assert len(result.alternates) == 1
        assert result.alternates[0].description == "Alternate: Delete VFDs on supply fans"
        assert result.alternates[0].price == -4200

    def test_missed_alternate_goes_into_qualifications(self, reconciler):
        result = reconciler.reconcile("c1", "Acme", ScoringResponse(), [VFD_DEDUCT])
        assert result.qualifications.alternates == [VFD_DEDUCT.source_line]

    def test_reported_alternate_is_not_duplicated(self, reconciler):
        response = ScoringResponse.model_validate(
            {"qualifications": {"alternates": ["Deduct VFDs on supply fans -$4,200"]}}
        )
        result = reconciler.reconcile("c1", "Acme", response, [VFD_DEDUCT])
        assert result.qualifications.alternates == ["Deduct VFDs on supply fans -$4,200"]
