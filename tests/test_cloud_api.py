import pytest
from fastapi.testclient import TestClient

from pipecore.cloud import main
from pipecore.config import Settings
from pipecore.model import JobKind, JobResult
from pipecore.runner import Orchestrator
from pipecore.scheduler import RunHandle


@pytest.fixture
def client(fakes, tracker):
    orchestrator = Orchestrator(settings=Settings(max_workers=2), executors=fakes, tracker=tracker)
    main.app.dependency_overrides[main.get_orchestrator] = lambda: orchestrator
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def _pipeline(**ship):
    return {
        "name": "api-release",
        "jobs": {
            "test": {"kind": "ci"},
            "ship": {
                "kind": "deploy",
                "needs": ["test"],
                "with": {"environment": "prod", "app-name": "api", "version": "${{ context.version }}", **ship},
                "secrets": ["deploy-token"],
            },
        },
    }


def test_create_run_then_read_results(client, fakes):
    fakes[JobKind.CI].on("test", {"test-result": "passed"})

    created = client.post("/runs", json={
        "pipeline": _pipeline(),
        "context": {"branch": "main", "extra": {"version": "2.1.0"}},
        "secrets": {"deploy-token": "abc"},
    })
    assert created.status_code == 202
    run_id = created.json()["run_id"]

    # TestClient runs background tasks before returning
    body = client.get(f"/runs/{run_id}").json()
    assert body["pipeline"] == "api-release"
    assert body["status"] == "success"
    assert body["cancelled"] is False
    jobs = {j["job_name"]: j for j in body["jobs"]}
    assert jobs["test"]["outputs"] == {"test-result": "passed"}
    assert jobs["ship"]["status"] == "success"
    assert fakes[JobKind.DEPLOY].calls["ship"]["inputs"]["version"] == "2.1.0"
    assert fakes[JobKind.DEPLOY].calls["ship"]["ctx"].pipeline.run_id == run_id


def test_failed_job_error_is_returned(client, fakes):
    fakes[JobKind.CI].on("test", JobResult.failure("TestsFailed", "3 failed", details={"count": 3}))
    run_id = client.post("/runs", json={"pipeline": _pipeline(), "secrets": {"deploy-token": "abc"}}).json()["run_id"]

    body = client.get(f"/runs/{run_id}").json()
    jobs = {j["job_name"]: j for j in body["jobs"]}
    assert body["status"] == "failure"
    assert jobs["test"]["error"] == {"kind": "TestsFailed", "message": "3 failed", "details": {"count": 3}}
    assert jobs["ship"]["status"] == "skipped"


def test_invalid_declaration_is_rejected_with_every_problem(client):
    pipeline = {"jobs": {"a": {"kind": "ci", "needs": ["b"]}, "b": {"kind": "ci", "needs": ["a"]},
                         "c": {"kind": "deploy"}}}
    resp = client.post("/runs", json={"pipeline": pipeline})

    assert resp.status_code == 422
    kinds = {p["kind"] for p in resp.json()["detail"]["problems"]}
    assert kinds == {"cycle-detected", "schema-violation"}


def test_unknown_kind_is_rejected(client):
    resp = client.post("/runs", json={"pipeline": {"jobs": {"x": {"kind": "fax"}}}})
    assert resp.status_code == 422
    assert "Unknown job kind" in resp.json()["detail"]["message"]


def test_unknown_run_is_404(client):
    assert client.get("/runs/does-not-exist").status_code == 404
    assert client.post("/runs/does-not-exist/cancel").status_code == 404


def test_cancel_active_and_finished_runs(client):
    run_id = client.post("/runs", json={"pipeline": {"jobs": {"t": {"kind": "ci"}}}}).json()["run_id"]

    finished = client.post(f"/runs/{run_id}/cancel")
    assert finished.status_code == 409
    assert finished.json()["detail"] == "Run already success"

    handle = RunHandle()
    main._active["live-run"] = handle
    try:
        resp = client.post("/runs/live-run/cancel")
    finally:
        main._active.pop("live-run", None)
    assert resp.json() == {"run_id": "live-run", "status": "cancelling"}
    assert handle.cancelled


def test_current_deployment(client, tracker):
    assert client.get("/deployments/prod/api").status_code == 404

    record = tracker.begin("prod", "api", "1.4.0")
    tracker.complete(record, True, url="https://api.example.com")

    body = client.get("/deployments/prod/api").json()
    assert body["version"] == "1.4.0"
    assert body["state"] == "success"
    assert body["url"] == "https://api.example.com"
    assert [h["state"] for h in body["history"]] == ["pending", "in_progress", "success"]
