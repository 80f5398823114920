import pytest

from tools.bid_level.bid_level_dictionary import get_scope_dictionary
from tools.bid_level.bid_level_models import EvidenceFragment
from tools.bid_level.bid_level_oracle import OracleClient
from tools.bid_level.bid_level_scope import (
    GENERIC_SCOPE,
    MAX_CANDIDATE_CHARS,
    CandidateScopeExtractor,
    Section,
    clean_candidate,
    detect_alternate,
    harvest,
    is_contact_noise,
    is_junk,
    match_section,
)

PROPOSAL = """ABC Mechanical
1234 Main Street, Suite 200
Phone: (555) 123-4567
SCOPE OF WORK
1. Furnish and install new rooftop units
2. Ductwork and fittings
3. Testing and balancing
EXCLUSIONS:
Permits and fees
Painting
ALTERNATES
DEDUCT ALTERNATE #1: Delete VFDs on supply fans $4,200
ADD ALTERNATE NO. 2 - Provide premium efficiency motors $7,600
Total Base Bid: $125,000
"""


@pytest.fixture
def proposal():
    return EvidenceFragment("acme/proposal.pdf :: page 1 :: text", PROPOSAL)


class TestJunkFilter:
    @pytest.mark.parametrize(
        "line",
        [
            "1234 Main Street, Suite 200",
            "Phone: (555) 123-4567",
            "estimating@abcmech.com",
            "www.abcmech.com",
            "CSLB Lic. No. 123456",
            "Los Angeles, CA 90012",
            "Sincerely,",
            "Re: Office tenant improvement",
            "Total Base Bid: $125,000",
            "See drawings M-101 for layout",
            "Page 2 of 5",
            "Per spec section 23 05 00",
            "Addendum 2 acknowledged",
            "This proposal is valid for 30 days",
            "$125,000.00",
        ],
    )
    def test_noise_is_junk(self, line):
        assert is_junk(line)

    @pytest.mark.parametrize(
        "line",
        [
            "Ductwork and fittings",
            "Furnish and install rooftop units",
            "Supply air diffusers",
            "Testing and balancing",
            "Furnish and install 3 way control valves",
            "3 way control valves",
            "Install 2 split systems in suite 200",
            "Ductwork - lump sum $12,500",
        ],
    )
    def test_scope_is_kept(self, line):
        assert not is_junk(line)

    @pytest.mark.parametrize("line", ["500 Industrial Way", "Suite 200", "1234 Main St."])
    def test_street_lines_are_junk(self, line):
        assert is_junk(line)

    def test_scope_lines_that_look_like_addresses_are_harvested(self):
        text = (
            "SCOPE OF WORK\n"
            "Furnish and install 3 way control valves\n"
            "Install 2 split systems in suite 200\n"
            "Provide exhaust fans\n"
        )
        result = harvest(
            [EvidenceFragment("acme/scope.pdf :: page 1 :: text", text)], get_scope_dictionary("26")
        )
        assert len(result.candidates) == 3
        assert "Exhaust fans" in result.candidates

    def test_long_narrative_is_junk(self):
        prose = " ".join(["word"] * 40)
        assert is_junk(prose)

    def test_contact_noise_only_covers_letterhead(self):
        assert is_contact_noise("Phone: (555) 123-4567")
        assert not is_contact_noise("Total Base Bid: $125,000")


class TestSections:
    def test_standalone_heading(self):
        assert match_section("SCOPE OF WORK") == (Section.SCOPE, "")
        assert match_section("EXCLUSIONS:") == (Section.EXCLUSIONS, "")

    def test_inline_heading(self):
        assert match_section("Exclusions: permits, bonds") == (Section.EXCLUSIONS, "permits, bonds")

    def test_scope_exclusions_resolve_to_exclusions(self):
        assert match_section("Scope Exclusions")[0] is Section.EXCLUSIONS

    def test_plain_line_is_not_a_heading(self):
        assert match_section("Ductwork and fittings") == (None, "")


class TestAlternates:
    def test_deduct_alternate_is_negative(self):
        alt = detect_alternate("DEDUCT ALTERNATE #1: Delete VFDs on supply fans $4,200")
        assert alt is not None
        assert alt.price == -4200
        assert alt.kind == "deduct"
        assert alt.description == "Delete VFDs on supply fans"
        assert alt.label == "Alternate: Delete VFDs on supply fans"

    def test_add_alternate_is_positive(self):
        alt = detect_alternate("ADD ALTERNATE NO. 2 - Provide premium efficiency motors $7,600")
        assert alt is not None
        assert alt.price == 7600
        assert alt.kind == "add"
        assert "$" not in alt.description

    def test_plain_scope_is_not_an_alternate(self):
        assert detect_alternate("Ductwork and fittings") is None
        assert detect_alternate("Options for owner review") is None

    def test_totals_inside_alternates_section_are_not_alternates(self):
        assert detect_alternate("Total Base Bid: $125,000", in_section=True) is None


class TestCleanCandidate:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("1. Ductwork and fittings", "Ductwork and fittings"),
            ("a. Ductwork and fittings", "Ductwork and fittings"),
            ("(iv) Seismic bracing", "Seismic bracing"),
            ("23.05.13 Motor requirements", "Motor requirements"),
            ("- furnish and install new rooftop units", "Rooftop units"),
            ("Provide U.L. listed fire dampers", "U.L. listed fire dampers"),
            ("1.5 ton split system", "1.5 ton split system"),
            ("Ductwork - excluded", "Ductwork"),
            ("Install ductwork throughout", "Ductwork"),
        ],
    )
    def test_cleanup(self, raw, expected):
        assert clean_candidate(raw) == expected

    def test_too_short(self):
        assert clean_candidate("x") is None
        assert clean_candidate("12") is None

    def test_length_cap(self):
        cleaned = clean_candidate("Ductwork " * 40)
        assert cleaned is not None
        assert len(cleaned) <= MAX_CANDIDATE_CHARS


class TestHarvest:
    def test_positive_section_lines_become_candidates(self, proposal, hvac_dictionary):
        result = harvest([proposal], hvac_dictionary)
        assert "Rooftop units" in result.candidates
        assert "Ductwork and fittings" in result.candidates
        assert "Testing and balancing" in result.candidates
        assert "Painting" not in result.candidates
        assert not any("Main Street" in c for c in result.candidates)

    def test_sections_are_recorded(self, proposal, hvac_dictionary):
        result = harvest([proposal], hvac_dictionary)
        assert "Painting" in result.sections["exclusions"]
        assert len(result.sections["alternates"]) == 2

    def test_alternates_are_kept_apart(self, proposal, hvac_dictionary):
        result = harvest([proposal], hvac_dictionary)
        prices = sorted(alt.price for alt in result.alternates)
        assert prices == [-4200, 7600]
        assert not any("Alternate" in c or "VFD" in c for c in result.candidates)

    def test_table_rows(self, hvac_dictionary):
        table = EvidenceFragment(
            "best/bid.xlsx :: Pricing",
            "Description,Qty,Price\n"
            "Linear slot diffusers,24,\"$12,000\"\n"
            "Fire dampers,,excluded\n",
        )
        result = harvest([table], hvac_dictionary)
        assert "Linear slot diffusers" in result.candidates
        assert "Fire dampers" in result.sections["exclusions"]
        assert "Description" not in result.candidates

    def test_dictionary_lines_outside_sections(self, hvac_dictionary):
        text = EvidenceFragment("a.pdf :: page 1 :: text", "Install ductwork throughout")
        assert harvest([text], hvac_dictionary).candidates == ["Ductwork"]


class TestCandidateScopeExtractor:
    def test_heuristic_list_is_canonical(self, proposal, hvac_dictionary):
        extraction = CandidateScopeExtractor(hvac_dictionary).extract({"acme": [proposal]})
        assert extraction.source == "heuristic"
        assert extraction.candidates[:3] == ["HVAC equipment", "Ductwork", "Testing & balancing"]
        assert len({c.casefold() for c in extraction.candidates}) == len(extraction.candidates)
        assert "acme" in extraction.harvests

    def test_oracle_items_lead(self, proposal, hvac_dictionary, limits, scripted_oracle):
        oracle = scripted_oracle(
            aggregation={"scope_items": ["Sheet metal ductwork", "Alternate: VFDs", "Crane"]}
        )
        extractor = CandidateScopeExtractor(
            hvac_dictionary, client=OracleClient(oracle, limits), limits=limits
        )
        extraction = extractor.extract({"acme": [proposal]})
        assert extraction.source == "oracle+heuristic"
        assert extraction.candidates[:2] == ["Ductwork", "Crane & rigging"]
        assert "HVAC equipment" in extraction.candidates
        assert not any(c.startswith("Alternate") for c in extraction.candidates)

    def test_oracle_failure_keeps_heuristic_list(
        self, proposal, hvac_dictionary, limits, scripted_oracle
    ):
        oracle = scripted_oracle(failures=[ValueError("upstream timeout")])
        extractor = CandidateScopeExtractor(
            hvac_dictionary, client=OracleClient(oracle, limits), limits=limits
        )
        extraction = extractor.extract({"acme": [proposal]})
        assert extraction.source == "heuristic"
        assert "Ductwork" in extraction.candidates

    def test_invalid_json_keeps_heuristic_list(
        self, proposal, hvac_dictionary, limits, scripted_oracle
    ):
        oracle = scripted_oracle(aggregation="I could not find any scope, sorry.")
        extractor = CandidateScopeExtractor(
            hvac_dictionary, client=OracleClient(oracle, limits), limits=limits
        )
        assert extractor.extract({"acme": [proposal]}).source == "heuristic"

    def test_excerpts_sent_when_heuristics_are_thin(
        self, proposal, hvac_dictionary, limits, scripted_oracle
    ):
        oracle = scripted_oracle()
        extractor = CandidateScopeExtractor(
            hvac_dictionary, client=OracleClient(oracle, limits), limits=limits
        )
        extractor.extract({"acme": [proposal]})
        blocks = oracle.calls[0]["blocks"]
        assert any(b.startswith("EXCERPTS (acme)") for b in blocks)

    def test_generic_fallback(self, hvac_dictionary):
        junk = EvidenceFragment("a.pdf :: page 1 :: text", "Sincerely,\nPhone: (555) 123-4567")
        extraction = CandidateScopeExtractor(hvac_dictionary).extract({"acme": [junk]})
        assert extraction.source == "fallback"
        assert extraction.candidates == list(GENERIC_SCOPE)

    def test_candidate_cap(self, hvac_dictionary):
        from tools.bid_level.bid_level_config import LevelingLimits

        lines = "\n".join(f"Scope item number {chr(65 + i // 26)}{chr(65 + i % 26)}" for i in range(30))
        fragment = EvidenceFragment("a.pdf :: page 1 :: text", "SCOPE OF WORK\n" + lines)
        extractor = CandidateScopeExtractor(hvac_dictionary, limits=LevelingLimits(max_candidates=10))
        assert len(extractor.extract({"acme": [fragment]}).candidates) == 10
