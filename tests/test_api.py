import pytest

from utils.db.job_queue import save_level_report


@pytest.fixture
def client():
    from api import app

    app.config.update(TESTING=True)
    return app.test_client()


def test_ping(client):
    resp = client.get("/ping", query_string={"jobId": "job-1"})
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["status"] == "pong"
    assert body["error"] == ""


class TestQueueing:
    @pytest.mark.parametrize(
        "payload, error",
        [
            ({"division": "23"}, "jobId is required"),
            ({"jobId": "job-1"}, "division or subdivisionId is required"),
            ({"jobId": "job-1", "division": "23", "meta": ["bids"]}, "meta must be an object"),
        ],
    )
    def test_bad_requests(self, client, payload, error):
        resp = client.post("/bid-level", json={"userId": "u1", **payload})
        body = resp.get_json()
        assert resp.status_code == 400
        assert body == {"userId": "u1", "status": "error", "error": error, "tokens": 0, "toolData": {}}

    def test_post_queues_and_get_polls(self, client):
        resp = client.post(
            "/bid-level",
            json={"jobId": "job-1", "division": "23", "userId": "u1", "userName": "pat", "meta": {}},
        )
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["status"] == "queued"
        processing_id = body["toolData"]["processing_job_id"]

        resp = client.get("/bid-level", query_string={"processingJobId": processing_id})
        body = resp.get_json()
        assert body["status"] == "queued"
        assert body["toolData"]["progress"] == 0
        assert body["toolData"]["division_code"] == "23"

    def test_subdivision_is_enough(self, client):
        resp = client.post("/bid-level", json={"jobId": "job-1", "subdivisionId": "sub-1"})
        assert resp.get_json()["status"] == "queued"

    def test_get_requires_processing_job_id(self, client):
        resp = client.get("/bid-level")
        assert resp.status_code == 400

    def test_unknown_processing_job(self, client):
        resp = client.get("/bid-level", query_string={"processingJobId": "nope"})
        body = resp.get_json()
        assert body["status"] == "error"
        assert "nope" in body["error"]


class TestReport:
    def test_missing_report(self, client):
        resp = client.get("/bid-level/report", query_string={"jobId": "job-1", "division": "23"})
        body = resp.get_json()
        assert body["status"] == "error"
        assert body["error"].startswith("No report found")

    def test_latest_report(self, client, test_logger):
        save_level_report(
            processing_job_id=None, job_id="job-1", division_code="23",
            subdivision_id=None, report={"scope_items": ["Ductwork"]},
        )
        resp = client.get("/bid-level/report", query_string={"jobId": "job-1", "division": "23"})
        body = resp.get_json()
        assert body["status"] == "success"
        assert body["toolData"]["report"] == {"scope_items": ["Ductwork"]}

    def test_report_needs_a_division(self, client):
        resp = client.get("/bid-level/report", query_string={"jobId": "job-1"})
        assert resp.status_code == 400


def test_worker_with_empty_queue(client):
    resp = client.post("/bid-level/worker", json={})
    body = resp.get_json()
    assert body["status"] == "idle"
    assert body["toolData"] == {"message": "No queued jobs"}
