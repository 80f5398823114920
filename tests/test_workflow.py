import logging

import pytest

from utils.core.log import set_logger
from utils.core.errors import NoInputError, OracleRateLimitError
from utils.db.job_queue import (
    JobStatus,
    claim_next_job,
    enqueue_processing_job,
    get_latest_level_report,
    get_processing_job,
)
from utils.db.worker import run_next_job
from tools.bid_level.bid_level import _do_level_workflow, scoring_progress
from tools.bid_level.bid_level_models import ScopeStatus
from tools.bid_level.job_processors import process_bid_level_job

DOCUMENTS = {
    "acme/bid.pdf": b"%PDF acme",
    "best/bid.pdf": b"%PDF best",
}

PAGES = {
    b"%PDF acme": "SCOPE OF WORK\nInstall ductwork throughout\nRooftop units",
    b"%PDF best": "SCOPE OF WORK\nRooftop units\nEXCLUSIONS:\nDuctwork: excluded, by others",
}

META = {
    "contractors": [{"id": "c1", "name": "Acme Mechanical"}, {"id": "c2", "name": "Best Air"}],
    "bids": [
        {"bid_id": "b1", "contractor_id": "c1", "documents": ["acme/bid.pdf"]},
        {"bid_id": "b2", "contractor_id": "c2", "documents": ["best/bid.pdf"]},
    ],
}

DUCTWORK_SCRIPT = {
    "c1": {"Ductwork": "included", "HVAC equipment": "included"},
    "c2": {"Ductwork": "excluded", "HVAC equipment": "included"},
}


def fake_pdf_extractor(data, filename):
    return {"pages": [{"number": 1, "text_blocks": [PAGES.get(data, "")], "tables": []}]}


def no_listing(job_id, prefix, company_id):
    return []


def use_test_logger():
    # contextvars set by sync fixtures are not always visible inside the test's task
    set_logger(logging.getLogger("tests.bid_level"), tool_name="pytest", job_id="test")


async def level(**kwargs):
    use_test_logger()
    return await _do_level_workflow(**kwargs)


async def next_job(**overrides):
    use_test_logger()
    return await run_next_job(**overrides)


class Pacer:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def collaborators(limits):
    return {
        "fetch_bytes": DOCUMENTS.__getitem__,
        "list_subdirectories": no_listing,
        "list_files": no_listing,
        "pdf_extractor": fake_pdf_extractor,
        "limits": limits,
        "sleep": lambda seconds: None,
        "pace": Pacer(),
    }


async def test_ductwork_included_vs_excluded(collaborators, scripted_oracle):
    oracle = scripted_oracle(DUCTWORK_SCRIPT, totals={"c2": 91000})
    report = await level(
        job_id="job-1", division_code="23", meta=META, oracle=oracle, **collaborators
    )

    assert "Ductwork" in report.scope_items
    assert report.matrix["Ductwork"]["c1"].status == ScopeStatus.INCLUDED
    assert report.matrix["Ductwork"]["c2"].status == ScopeStatus.EXCLUDED
    assert [c.contractor_id for c in report.contractors] == ["c1", "c2"]
    assert report.contractors[0].name == "Acme Mechanical"
    assert report.contractors[1].total == 91000
    for scope in report.scope_items:
        assert set(report.matrix[scope]) == {"c1", "c2"}
    assert len(oracle.scoring_calls) == 2


async def test_progress_and_pacing(collaborators, scripted_oracle):
    events = []
    await level(
        job_id="job-1",
        division_code="23",
        meta=META,
        oracle=scripted_oracle(DUCTWORK_SCRIPT),
        progress_callback=events.append,
        **collaborators,
    )

    assert [e["progress"] for e in events] == [10, 20, 58, 95]
    assert events[0]["batches_total"] == 2
    assert [e.get("batches_done") for e in events if e["stage"] == "score"] == [1, 2]
    pacer = collaborators["pace"]
    assert len(pacer.delays) == 1
    assert pacer.delays[0] >= collaborators["limits"].pacing_min_seconds


def test_scoring_progress_is_capped():
    assert scoring_progress(0, 4) == 20
    assert scoring_progress(4, 4) == 95
    assert scoring_progress(1, 0) == 95


async def test_rate_limits_are_absorbed(collaborators, scripted_oracle):
    sleeps = []
    collaborators["sleep"] = sleeps.append
    oracle = scripted_oracle(DUCTWORK_SCRIPT, failures=[OracleRateLimitError("429")] * 3)
    report = await level(
        job_id="job-1", division_code="23", meta=META, oracle=oracle, **collaborators
    )

    assert len(sleeps) == 3
    assert report.matrix["Ductwork"]["c2"].status == ScopeStatus.EXCLUDED


async def test_no_documents(collaborators, scripted_oracle):
    meta = {"bids": [{"bid_id": "b1", "contractor_id": "c1", "documents": []}]}
    with pytest.raises(NoInputError, match="No documents"):
        await level(
            job_id="job-1", division_code="23", meta=meta, oracle=scripted_oracle(), **collaborators
        )


async def test_no_bids(collaborators, scripted_oracle):
    with pytest.raises(NoInputError, match="No bids"):
        await level(
            job_id="job-1", division_code="23", meta={}, oracle=scripted_oracle(), **collaborators
        )


async def test_unreadable_documents(collaborators, scripted_oracle):
    collaborators["pdf_extractor"] = lambda data, filename: {"pages": []}
    collaborators["fetch_bytes"] = {"acme/bid.pdf": b"%PDF empty a", "best/bid.pdf": b"%PDF empty b"}.__getitem__
    with pytest.raises(NoInputError, match="No readable content"):
        await level(
            job_id="job-1", division_code="23", meta=META, oracle=scripted_oracle(), **collaborators
        )


class TestJobProcessor:
    async def test_success_stores_report_then_marks_job(self, collaborators, scripted_oracle):
        use_test_logger()
        pid = enqueue_processing_job("job-1", division_code="23", meta=META)
        job = claim_next_job()

        result = await process_bid_level_job(
            job, oracle=scripted_oracle(DUCTWORK_SCRIPT), **collaborators
        )

        assert result["status"] == "success"
        stored = get_processing_job(pid)
        assert stored["status"] == JobStatus.SUCCESS.value
        assert (stored["progress"], stored["batches_total"], stored["batches_done"]) == (100, 2, 2)
        row = get_latest_level_report("job-1", "23")
        assert row["id"] == result["report_id"]
        assert row["report"]["matrix"]["Ductwork"]["c2"]["status"] == "excluded"

    async def test_empty_input_fails_without_a_report(self, collaborators, scripted_oracle):
        use_test_logger()
        meta = {"bids": [{"bid_id": "b1", "contractor_id": "c1", "documents": []}]}
        pid = enqueue_processing_job("job-2", division_code="23", meta=meta)
        job = claim_next_job()

        with pytest.raises(NoInputError):
            await process_bid_level_job(job, oracle=scripted_oracle(), **collaborators)

        stored = get_processing_job(pid)
        assert stored["status"] == JobStatus.FAILED.value
        assert stored["error"].startswith("No documents")
        assert get_latest_level_report("job-2", "23") is None


class TestRunNextJob:
    async def test_idle_queue(self):
        assert await next_job() is None

    async def test_failed_job_is_reported_not_raised(self, collaborators, scripted_oracle):
        use_test_logger()
        pid = enqueue_processing_job("job-3", division_code="23", meta={})
        result = await next_job(oracle=scripted_oracle(), **collaborators)

        assert result["status"] == "failed"
        assert result["processing_job_id"] == pid
        assert "No bids" in result["error"]

    async def test_processes_the_oldest_job(self, collaborators, scripted_oracle):
        use_test_logger()
        first = enqueue_processing_job("job-1", division_code="23", meta=META)
        enqueue_processing_job("job-1", division_code="26", meta=META)

        result = await next_job(oracle=scripted_oracle(DUCTWORK_SCRIPT), **collaborators)

        assert result == {"status": "success", "processing_job_id": first, "report_id": result["report_id"]}
        assert get_processing_job(first)["status"] == JobStatus.SUCCESS.value
